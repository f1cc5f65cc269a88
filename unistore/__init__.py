"""Provider-agnostic object storage."""

from unistore.common.errors import StorageError
from unistore.domain.address import ResourceAddress, Scheme, resolve
from unistore.domain.control import CancellationToken, TransferControl
from unistore.domain.models import BucketInfo, ByteRange, ObjectDescriptor, OperationResult
from unistore.services.facade import ObjectStore, Operation

__version__ = "0.1.0"

__all__ = [
    "BucketInfo",
    "ByteRange",
    "CancellationToken",
    "ObjectDescriptor",
    "ObjectStore",
    "Operation",
    "OperationResult",
    "ResourceAddress",
    "Scheme",
    "StorageError",
    "TransferControl",
    "resolve",
]
