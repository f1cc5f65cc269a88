from .facade import ObjectStore, Operation, build_default_adapters
from .transfer_engine import ObjectStream, RetryPolicy, TransferEngine, iter_chunks

__all__ = [
    "ObjectStore",
    "Operation",
    "build_default_adapters",
    "ObjectStream",
    "RetryPolicy",
    "TransferEngine",
    "iter_chunks",
]
