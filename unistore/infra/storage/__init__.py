"""Object storage abstraction layer.

This module provides a protocol-based abstraction for object storage backends,
with adapters for local files, S3, R2, Google Cloud Storage, SFTP and FTP.
"""

from .client import (
    CORE_CAPABILITIES,
    Capability,
    ConnectionSlots,
    ReadStream,
    StorageAdapter,
    WriteStream,
)
from .errors import ErrorMapping, ErrorNormalizer, normalize_error

__all__ = [
    "CORE_CAPABILITIES",
    "Capability",
    "ConnectionSlots",
    "ErrorMapping",
    "ErrorNormalizer",
    "ReadStream",
    "StorageAdapter",
    "WriteStream",
    "normalize_error",
]
