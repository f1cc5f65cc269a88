from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

MIB = 1024 * 1024
# S3 rejects multipart parts below 5 MiB (except the last one)
MIN_CHUNK_SIZE = 5 * MIB
ADDRESSING_STYLES: tuple[str, ...] = ("auto", "path", "virtual")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass
class Settings:
    """Tunables for transfers and adapters, plus logging and metrics switches.

    Provider secrets are not settings; they are resolved per call by
    :class:`unistore.infra.credentials.CredentialResolver`.
    """

    STORAGE_CHUNK_SIZE: int = MIN_CHUNK_SIZE
    STORAGE_MAX_ATTEMPTS: int = 5
    STORAGE_RETRY_BASE_DELAY: float = 0.2
    STORAGE_RETRY_MAX_DELAY: float = 10.0
    STORAGE_RETRY_JITTER: float = 0.1
    STORAGE_VERIFY_CHECKSUMS: bool = True
    STORAGE_LIST_PAGE_SIZE: int = 1000
    STORAGE_PRESIGN_EXPIRES_IN: int = 900
    STORAGE_LOCAL_ROOT: str = "."
    STORAGE_MAX_CONNECTIONS: int = 10
    STORAGE_CONNECT_TIMEOUT: float = 10.0
    STORAGE_POOL_TIMEOUT: float = 30.0
    S3_ADDRESSING_STYLE: str = "auto"
    S3_USE_SSL: bool = True
    ENABLE_METRICS: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    def __post_init__(self) -> None:
        if self.STORAGE_CHUNK_SIZE < MIN_CHUNK_SIZE:
            raise ValueError(
                f"STORAGE_CHUNK_SIZE must be at least {MIN_CHUNK_SIZE} bytes."
            )
        if self.STORAGE_MAX_ATTEMPTS < 1:
            raise ValueError("STORAGE_MAX_ATTEMPTS must be >= 1.")
        if self.STORAGE_RETRY_BASE_DELAY < 0 or self.STORAGE_RETRY_MAX_DELAY < 0:
            raise ValueError("Retry delays must not be negative.")
        if not 0 <= self.STORAGE_RETRY_JITTER <= 1:
            raise ValueError("STORAGE_RETRY_JITTER must be within [0, 1].")
        if not 1 <= self.STORAGE_LIST_PAGE_SIZE <= 1000:
            raise ValueError("STORAGE_LIST_PAGE_SIZE must be within [1, 1000].")
        if self.STORAGE_MAX_CONNECTIONS < 1:
            raise ValueError("STORAGE_MAX_CONNECTIONS must be >= 1.")
        if self.STORAGE_POOL_TIMEOUT < 0:
            raise ValueError("STORAGE_POOL_TIMEOUT must not be negative.")
        self.S3_ADDRESSING_STYLE = self.S3_ADDRESSING_STYLE.strip().lower()
        if self.S3_ADDRESSING_STYLE not in ADDRESSING_STYLES:
            raise ValueError(
                "S3_ADDRESSING_STYLE must be one of: " + ", ".join(ADDRESSING_STYLES)
            )
        self.LOG_LEVEL = self.LOG_LEVEL.strip().upper()
        if self.LOG_LEVEL not in LOG_LEVELS:
            raise ValueError("LOG_LEVEL must be one of: " + ", ".join(LOG_LEVELS))

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        env = os.environ
        return cls(
            STORAGE_CHUNK_SIZE=_as_int(
                env.get("STORAGE_CHUNK_SIZE"), cls.STORAGE_CHUNK_SIZE
            ),
            STORAGE_MAX_ATTEMPTS=_as_int(
                env.get("STORAGE_MAX_ATTEMPTS"), cls.STORAGE_MAX_ATTEMPTS
            ),
            STORAGE_RETRY_BASE_DELAY=_as_float(
                env.get("STORAGE_RETRY_BASE_DELAY"), cls.STORAGE_RETRY_BASE_DELAY
            ),
            STORAGE_RETRY_MAX_DELAY=_as_float(
                env.get("STORAGE_RETRY_MAX_DELAY"), cls.STORAGE_RETRY_MAX_DELAY
            ),
            STORAGE_RETRY_JITTER=_as_float(
                env.get("STORAGE_RETRY_JITTER"), cls.STORAGE_RETRY_JITTER
            ),
            STORAGE_VERIFY_CHECKSUMS=_as_bool(
                env.get("STORAGE_VERIFY_CHECKSUMS"), cls.STORAGE_VERIFY_CHECKSUMS
            ),
            STORAGE_LIST_PAGE_SIZE=_as_int(
                env.get("STORAGE_LIST_PAGE_SIZE"), cls.STORAGE_LIST_PAGE_SIZE
            ),
            STORAGE_PRESIGN_EXPIRES_IN=_as_int(
                env.get("STORAGE_PRESIGN_EXPIRES_IN"), cls.STORAGE_PRESIGN_EXPIRES_IN
            ),
            STORAGE_LOCAL_ROOT=env.get("STORAGE_LOCAL_ROOT", cls.STORAGE_LOCAL_ROOT),
            STORAGE_MAX_CONNECTIONS=_as_int(
                env.get("STORAGE_MAX_CONNECTIONS"), cls.STORAGE_MAX_CONNECTIONS
            ),
            STORAGE_CONNECT_TIMEOUT=_as_float(
                env.get("STORAGE_CONNECT_TIMEOUT"), cls.STORAGE_CONNECT_TIMEOUT
            ),
            STORAGE_POOL_TIMEOUT=_as_float(
                env.get("STORAGE_POOL_TIMEOUT"), cls.STORAGE_POOL_TIMEOUT
            ),
            S3_ADDRESSING_STYLE=env.get("S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE),
            S3_USE_SSL=_as_bool(env.get("S3_USE_SSL"), cls.S3_USE_SSL),
            ENABLE_METRICS=_as_bool(env.get("ENABLE_METRICS"), cls.ENABLE_METRICS),
            LOG_LEVEL=env.get("LOG_LEVEL", cls.LOG_LEVEL),
            LOG_JSON=_as_bool(env.get("LOG_JSON"), cls.LOG_JSON),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
