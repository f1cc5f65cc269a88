"""Rolling checksums computed while an upload streams through the engine."""

from __future__ import annotations

import base64
import hashlib


class ChecksumDigest:
    """Whole-object MD5 plus the MD5 of every part, in upload order."""

    def __init__(self) -> None:
        self._whole = hashlib.md5()
        self._parts: list[bytes] = []
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._whole.update(chunk)
        self._parts.append(hashlib.md5(chunk).digest())
        self.size += len(chunk)

    @property
    def part_count(self) -> int:
        return len(self._parts)

    def md5_hex(self) -> str:
        return self._whole.hexdigest()

    def md5_base64(self) -> str:
        return base64.b64encode(self._whole.digest()).decode("ascii")

    def multipart_etag(self) -> str:
        """ETag S3 assigns to a multipart upload: md5 of part md5s, ``-N``."""
        combined = hashlib.md5(b"".join(self._parts)).hexdigest()
        return f"{combined}-{len(self._parts)}"


def normalize_etag(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip().strip('"')
