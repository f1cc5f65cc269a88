"""Per-call credential resolution from environment-variable slots.

Variable names are part of each adapter's published contract:

========  ==========================================================
scheme    variables
========  ==========================================================
s3        S3_ACCESS_KEY_ID*, S3_SECRET_ACCESS_KEY*, S3_SESSION_TOKEN,
          S3_REGION, S3_ENDPOINT_URL
r2        R2_ACCOUNT_ID*, R2_ACCESS_KEY_ID*, R2_SECRET_ACCESS_KEY*,
          R2_ENDPOINT_URL
gcs       GCS_CREDENTIALS_PATH* (service-account JSON), GCS_PROJECT,
          GCS_ANONYMOUS (drops the path requirement)
sftp      SFTP_USERNAME*, SFTP_PASSWORD | SFTP_PRIVATE_KEY_PATH*,
          SFTP_PORT
ftp       FTP_USERNAME, FTP_PASSWORD, FTP_PORT, FTP_TLS
local     (none)
========  ==========================================================

``*`` marks required fields. Every scheme also honours
``<SCHEME>_CREDENTIALS_PATH`` (a JSON object keyed by lower-case field name,
environment wins) and ``<SCHEME>_CREDENTIALS_EXPIRES_AT`` (ISO-8601).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from unistore.common.errors import (
    ExpiredCredentialError,
    MissingCredentialError,
    UnreadableCredentialError,
)
from unistore.domain.address import Scheme

logger = logging.getLogger("unistore.credentials")


@dataclass(frozen=True, slots=True)
class CredentialSpec:
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    # at least one field of each group must be present
    one_of: tuple[tuple[str, ...], ...] = ()
    # a true flag here lifts the ``required`` check
    waiver: str | None = None


CREDENTIAL_SPECS: dict[Scheme, CredentialSpec] = {
    Scheme.LOCAL: CredentialSpec(),
    Scheme.S3: CredentialSpec(
        required=("access_key_id", "secret_access_key"),
        optional=("session_token", "region", "endpoint_url"),
    ),
    Scheme.R2: CredentialSpec(
        required=("account_id", "access_key_id", "secret_access_key"),
        optional=("endpoint_url",),
    ),
    Scheme.GCS: CredentialSpec(
        required=("credentials_path",),
        optional=("project", "anonymous"),
        waiver="anonymous",
    ),
    Scheme.SFTP: CredentialSpec(
        required=("username",),
        optional=("port",),
        one_of=(("password", "private_key_path"),),
    ),
    Scheme.FTP: CredentialSpec(
        optional=("username", "password", "port", "tls"),
    ),
}


@dataclass(frozen=True)
class Credential:
    """Resolved secrets for one provider, valid for the call that asked."""

    provider_scheme: Scheme
    fields: Mapping[str, Any] = field(default_factory=dict)
    source: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def __repr__(self) -> str:
        masked = ", ".join(f"{name}=***" for name in sorted(self.fields))
        return (
            f"Credential(provider_scheme={self.provider_scheme.value!r}, "
            f"fields={{{masked}}}, source={self.source!r})"
        )

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("Credential objects must not be serialized")

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def require(self, name: str) -> Any:
        value = self.fields.get(name)
        if value in (None, ""):
            raise MissingCredentialError(
                f"Credential field {name!r} is required for {self.provider_scheme.value}",
                detail=_env_name(self.provider_scheme, name),
            )
        return value


def _env_name(scheme: Scheme, name: str) -> str:
    return f"{scheme.value.upper()}_{name.upper()}"


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in {"1", "true", "t", "yes", "y", "on"}


def _read_json(path_value: str, variable: str) -> dict[str, Any]:
    path = Path(path_value).expanduser()
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise UnreadableCredentialError(
            f"Cannot read credentials file referenced by {variable}", detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise UnreadableCredentialError(
            f"Credentials file referenced by {variable} is not valid JSON",
            detail=str(exc),
        ) from exc
    if not isinstance(document, dict):
        raise UnreadableCredentialError(
            f"Credentials file referenced by {variable} must hold a JSON object"
        )
    return document


class CredentialResolver:
    """Resolves :class:`Credential` values on every call.

    Nothing is cached, so rotated secrets are picked up by the next call.
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        specs: Mapping[Scheme, CredentialSpec] | None = None,
    ) -> None:
        self._environ = environ
        self._specs = dict(specs or CREDENTIAL_SPECS)

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def resolve(self, scheme: Scheme) -> Credential:
        spec = self._specs.get(scheme, CredentialSpec())
        env = self.environ
        prefix = scheme.value.upper()
        sources: list[str] = []
        values: dict[str, Any] = {}

        # GCS: the path points at a service-account document, not a field map
        file_variable = f"{prefix}_CREDENTIALS_PATH"
        file_path = env.get(file_variable)
        if file_path:
            document = _read_json(file_path, file_variable)
            sources.append(file_variable)
            if scheme is Scheme.GCS:
                values["credentials_path"] = file_path
                values["service_account_info"] = document
            else:
                for name in spec.required + spec.optional + _flatten(spec.one_of):
                    if document.get(name) not in (None, ""):
                        values[name] = document[name]

        for name in spec.required + spec.optional + _flatten(spec.one_of):
            variable = _env_name(scheme, name)
            value = env.get(variable)
            if value not in (None, "") and name != "credentials_path":
                values[name] = value
                sources.append(variable)

        self._check_expiry(scheme, env)
        self._check_required(scheme, spec, values)

        logger.debug(
            "credential_resolved scheme=%s sources=%s",
            scheme.value,
            ",".join(sources) or "-",
            extra={"extra": {"scheme": scheme.value, "sources": sources}},
        )
        return Credential(provider_scheme=scheme, fields=values, source=",".join(sources))

    @staticmethod
    def _check_expiry(scheme: Scheme, env: Mapping[str, str]) -> None:
        variable = f"{scheme.value.upper()}_CREDENTIALS_EXPIRES_AT"
        raw = env.get(variable)
        if not raw:
            return
        try:
            expires_at = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise UnreadableCredentialError(
                f"{variable} is not an ISO-8601 timestamp", detail=raw
            ) from exc
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            raise ExpiredCredentialError(
                f"Credentials for {scheme.value} expired at {expires_at.isoformat()}",
                detail=variable,
            )

    @staticmethod
    def _check_required(
        scheme: Scheme, spec: CredentialSpec, values: Mapping[str, Any]
    ) -> None:
        if spec.waiver and _as_bool(values.get(spec.waiver, False)):
            return
        missing = [name for name in spec.required if values.get(name) in (None, "")]
        for group in spec.one_of:
            if not any(values.get(name) not in (None, "") for name in group):
                missing.append("|".join(group))
        if missing:
            variables = ", ".join(
                "|".join(_env_name(scheme, part) for part in name.split("|"))
                for name in missing
            )
            raise MissingCredentialError(
                f"Missing credentials for {scheme.value}: {variables}",
                detail=variables,
            )


def _flatten(groups: tuple[tuple[str, ...], ...]) -> tuple[str, ...]:
    return tuple(name for group in groups for name in group)
