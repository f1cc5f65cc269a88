"""Unified resource identifiers and their normalization.

A resource identifier has the shape ``scheme://bucket-or-host/key``. Parsing
is pure: no I/O, no adapter lookups beyond the scheme set passed in.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable

from unistore.common.errors import InvalidPathError, UnsupportedSchemeError

SEPARATOR = "/"
SCHEME_DELIMITER = "://"


class Scheme(str, enum.Enum):
    LOCAL = "local"
    S3 = "s3"
    GCS = "gcs"
    SFTP = "sftp"
    FTP = "ftp"
    R2 = "r2"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class ResourceAddress:
    """A normalized, scheme-qualified pointer to an object or a prefix."""

    scheme: Scheme
    bucket_or_host: str
    key: str

    def __str__(self) -> str:
        return f"{self.scheme.value}{SCHEME_DELIMITER}{self.bucket_or_host}/{self.key}"

    @property
    def is_prefix(self) -> bool:
        return not self.key or self.key.endswith(SEPARATOR)

    @property
    def name(self) -> str:
        return self.key.rstrip(SEPARATOR).rsplit(SEPARATOR, 1)[-1]

    def child(self, key: str) -> "ResourceAddress":
        """Address of a provider-reported ``key`` in the same bucket.

        The key is kept exactly as the provider listed it; normalization
        applies to identifiers parsed by :func:`resolve` only.
        """
        return ResourceAddress(
            scheme=self.scheme,
            bucket_or_host=self.bucket_or_host,
            key=key,
        )


def normalize_key(raw: str) -> str:
    """Collapse separators and dot segments; reject escapes above the root."""
    if "\x00" in raw:
        raise InvalidPathError("Object key must not contain NUL bytes")
    trailing = raw.endswith(SEPARATOR)
    segments: list[str] = []
    for segment in raw.split(SEPARATOR):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not segments:
                raise InvalidPathError(
                    f"Path escapes the bucket root: {raw!r}", detail=raw
                )
            segments.pop()
            continue
        segments.append(segment)
    key = SEPARATOR.join(segments)
    if key and trailing:
        key += SEPARATOR
    return key


def _coerce_scheme(raw: str, allowed: Iterable[Scheme] | None) -> Scheme:
    try:
        scheme = Scheme(raw.lower())
    except ValueError:
        raise UnsupportedSchemeError(f"Unsupported scheme: {raw!r}", detail=raw) from None
    if allowed is not None and scheme not in set(allowed):
        raise UnsupportedSchemeError(
            f"No adapter registered for scheme: {scheme.value!r}", detail=raw
        )
    return scheme


def resolve(uri: str, schemes: Iterable[Scheme] | None = None) -> ResourceAddress:
    """Parse ``uri`` into a :class:`ResourceAddress`.

    Args:
        uri: Identifier in ``scheme://bucket-or-host/key`` form.
        schemes: Schemes that have a registered adapter. ``None`` accepts
            every known scheme.

    Raises:
        UnsupportedSchemeError: The scheme is unknown or not registered.
        InvalidPathError: The identifier is malformed or the key escapes the
            bucket root.
    """
    if not isinstance(uri, str) or SCHEME_DELIMITER not in uri:
        raise InvalidPathError(f"Not a resource identifier: {uri!r}", detail=str(uri))
    raw_scheme, remainder = uri.split(SCHEME_DELIMITER, 1)
    if not raw_scheme:
        raise InvalidPathError(f"Missing scheme in {uri!r}", detail=uri)
    scheme = _coerce_scheme(raw_scheme, schemes)

    bucket, _, raw_key = remainder.partition(SEPARATOR)
    bucket = bucket.strip()
    if not bucket or bucket in (".", ".."):
        raise InvalidPathError(f"Missing bucket or host in {uri!r}", detail=uri)
    return ResourceAddress(scheme=scheme, bucket_or_host=bucket, key=normalize_key(raw_key))
