import json
import logging
from logging.config import dictConfig
from typing import Any

from unistore.common.config import get_settings

SENSITIVE_KEYS = {
    "password",
    "passwd",
    "pwd",
    "secret",
    "secret_access_key",
    "access_key_id",
    "session_token",
    "token",
    "private_key",
    "private_key_path",
    "service_account_info",
    "authorization",
    "credential",
    "credentials",
}


def setup_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """Configure the ``unistore`` logger; unset arguments come from ``LOG_LEVEL`` and ``LOG_JSON``."""
    settings = get_settings()
    if level is None:
        level = settings.LOG_LEVEL
    if json_format is None:
        json_format = settings.LOG_JSON
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "mask_secrets": {
                    "()": SecretMaskingFilter,
                },
            },
            "formatters": {
                "json": {
                    "()": JsonFormatter,
                },
                "plain": {
                    "format": "%(levelname)s %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_format else "plain",
                    "filters": ["mask_secrets"],
                },
            },
            "loggers": {
                "unistore": {
                    "handlers": ["console"],
                    "level": level,
                    "propagate": False,
                }
            },
        }
    )


def mask_mapping(obj: Any) -> Any:
    if isinstance(obj, dict):
        masked: dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and k.lower() in SENSITIVE_KEYS:
                masked[k] = "***"
            else:
                masked[k] = mask_mapping(v)
        return masked
    if isinstance(obj, list):
        return [mask_mapping(x) for x in obj]
    return obj


class SecretMaskingFilter(logging.Filter):
    """Masks sensitive keys in the structured ``extra`` payload."""

    def filter(self, record: logging.LogRecord) -> bool:
        payload = getattr(record, "extra", None)
        if isinstance(payload, dict):
            record.extra = mask_mapping(payload)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
