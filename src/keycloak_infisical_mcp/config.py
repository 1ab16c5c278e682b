"""Process configuration: environment variables layered over an optional YAML file.

Every option can be given either in ``settings.yaml`` (nested sections
``keycloak``, ``infisical``, ``integration``, ``server``, ``http``) or as an
environment variable; the environment wins.  The resulting ``Settings`` is
frozen.  Per-session credentials are derived from it by
``Settings.keycloak_credential()`` / ``Settings.infisical_credential()``.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import os
import pathlib
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

TRANSPORTS = ("stdio", "http")


class ConfigError(Exception):
    """Raised when the configuration is malformed."""


class CredentialKind(enum.Enum):
    PASSWORD_GRANT = "password_grant"
    CLIENT_CREDENTIALS = "client_credentials"
    STATIC_TOKEN = "static_token"


class AuthPriority(enum.Enum):
    """Which Infisical credential shape wins when both are configured."""

    CLIENT_CREDENTIALS = "client-credentials"
    TOKEN = "token"


@dataclasses.dataclass(frozen=True)
class Credential:
    """One backend's credential for one session.

    Attributes:
        kind:            Grant semantics the broker must follow.
        secret_material: Grant-specific fields (``username``/``password``,
                         ``client_id``/``client_secret`` or ``token``).
        endpoint_base:   Base URL of the backend.
    """

    kind: CredentialKind
    secret_material: Mapping[str, str]
    endpoint_base: str

    def __repr__(self) -> str:
        # secret_material stays out of reprs and log lines.
        return f"Credential(kind={self.kind.value}, endpoint_base={self.endpoint_base!r})"


# (environment variable, yaml section, yaml key)
_OPTIONS: dict[str, tuple[str, str, str]] = {
    "keycloak_url": ("KEYCLOAK_URL", "keycloak", "url"),
    "keycloak_username": ("KEYCLOAK_USERNAME", "keycloak", "username"),
    "keycloak_password": ("KEYCLOAK_PASSWORD", "keycloak", "password"),
    "keycloak_client_id": ("KEYCLOAK_CLIENT_ID", "keycloak", "client_id"),
    "keycloak_client_secret": ("KEYCLOAK_CLIENT_SECRET", "keycloak", "client_secret"),
    "keycloak_auth_realm": ("KEYCLOAK_AUTH_REALM", "keycloak", "auth_realm"),
    "keycloak_realm": ("KEYCLOAK_REALM", "keycloak", "realm"),
    "infisical_url": ("INFISICAL_URL", "infisical", "url"),
    "infisical_client_id": ("INFISICAL_CLIENT_ID", "infisical", "client_id"),
    "infisical_client_secret": ("INFISICAL_CLIENT_SECRET", "infisical", "client_secret"),
    "infisical_token": ("INFISICAL_TOKEN", "infisical", "token"),
    "infisical_auth_priority": ("INFISICAL_AUTH_PRIORITY", "infisical", "auth_priority"),
    "infisical_project_id": ("INFISICAL_PROJECT_ID", "infisical", "project_id"),
    "infisical_environment": ("INFISICAL_ENVIRONMENT_SLUG", "infisical", "environment"),
    "infisical_org_id": ("INFISICAL_ORG_ID", "infisical", "org_id"),
    "integration_enabled": ("INTEGRATION_ENABLED", "integration", "enabled"),
    "integration_secret_prefix": ("INTEGRATION_SECRET_PREFIX", "integration", "secret_prefix"),
    "integration_folder_path": ("INTEGRATION_FOLDER_PATH", "integration", "folder_path"),
    "integration_project_name": ("INTEGRATION_PROJECT_NAME", "integration", "project_name"),
    "integration_project_id": ("INTEGRATION_PROJECT_ID", "integration", "project_id"),
    "integration_environment": ("INTEGRATION_ENVIRONMENT", "integration", "environment"),
    "integration_tag_slugs": ("INTEGRATION_TAG_SLUGS", "integration", "tag_slugs"),
    "transport": ("MCP_TRANSPORT", "server", "transport"),
    "host": ("MCP_HOST", "server", "host"),
    "port": ("MCP_PORT", "server", "port"),
    "allowed_hosts": ("MCP_ALLOWED_HOSTS", "server", "allowed_hosts"),
    "dns_rebinding_protection": (
        "MCP_ENABLE_DNS_REBINDING_PROTECTION", "server", "dns_rebinding_protection",
    ),
    "http_timeout_seconds": ("HTTP_TIMEOUT_SECONDS", "http", "timeout_seconds"),
    "token_safety_margin_seconds": (
        "TOKEN_SAFETY_MARGIN_SECONDS", "http", "token_safety_margin_seconds",
    ),
}


@dataclasses.dataclass(frozen=True)
class Settings:
    """Immutable process configuration."""

    keycloak_url: str | None = None
    keycloak_username: str | None = None
    keycloak_password: str | None = None
    keycloak_client_id: str = "admin-cli"
    keycloak_client_secret: str | None = None
    keycloak_auth_realm: str = "master"
    keycloak_realm: str = "master"

    infisical_url: str | None = None
    infisical_client_id: str | None = None
    infisical_client_secret: str | None = None
    infisical_token: str | None = None
    infisical_auth_priority: AuthPriority = AuthPriority.CLIENT_CREDENTIALS
    infisical_project_id: str | None = None
    infisical_environment: str = "dev"
    infisical_org_id: str | None = None

    integration_enabled: bool = True
    integration_secret_prefix: str = "KEYCLOAK_"
    integration_folder_path: str = "/keycloak"
    integration_project_name: str = "Keycloak Secrets"
    integration_project_id: str | None = None
    integration_environment: str | None = None
    integration_tag_slugs: tuple[str, ...] = ("keycloak", "auto-generated")

    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 8000
    allowed_hosts: tuple[str, ...] = ()
    dns_rebinding_protection: bool = True

    http_timeout_seconds: float = 30.0
    token_safety_margin_seconds: int = 60

    # -- derived credentials -------------------------------------------------

    def keycloak_credential(self) -> Credential | None:
        """Return the Keycloak admin credential, or ``None`` if not configured.

        A username/password pair uses the password grant; otherwise a
        ``client_secret`` selects the service-account (client credentials)
        grant.
        """
        if not self.keycloak_url:
            return None
        base = self.keycloak_url.rstrip("/")
        if self.keycloak_username and self.keycloak_password:
            return Credential(
                kind=CredentialKind.PASSWORD_GRANT,
                secret_material={
                    "username": self.keycloak_username,
                    "password": self.keycloak_password,
                    "client_id": self.keycloak_client_id,
                    "realm": self.keycloak_auth_realm,
                },
                endpoint_base=base,
            )
        if self.keycloak_client_secret:
            return Credential(
                kind=CredentialKind.CLIENT_CREDENTIALS,
                secret_material={
                    "client_id": self.keycloak_client_id,
                    "client_secret": self.keycloak_client_secret,
                    "realm": self.keycloak_auth_realm,
                },
                endpoint_base=base,
            )
        return None

    def infisical_credential(self) -> Credential | None:
        """Return the Infisical credential, or ``None`` if not configured.

        When both Universal Auth (client id/secret) and a static token are
        set, ``infisical_auth_priority`` decides which one is used.
        """
        if not self.infisical_url:
            return None
        base = self.infisical_url.rstrip("/")
        universal = None
        if self.infisical_client_id and self.infisical_client_secret:
            universal = Credential(
                kind=CredentialKind.CLIENT_CREDENTIALS,
                secret_material={
                    "client_id": self.infisical_client_id,
                    "client_secret": self.infisical_client_secret,
                },
                endpoint_base=base,
            )
        static = None
        if self.infisical_token:
            static = Credential(
                kind=CredentialKind.STATIC_TOKEN,
                secret_material={"token": self.infisical_token},
                endpoint_base=base,
            )
        if universal and static:
            chosen = universal if self.infisical_auth_priority is AuthPriority.CLIENT_CREDENTIALS else static
            logger.info(
                "Both Infisical credential shapes configured, using %s (priority=%s)",
                chosen.kind.value,
                self.infisical_auth_priority.value,
            )
            return chosen
        if static is not None:
            logger.warning(
                "Infisical static tokens are deprecated; prefer Universal Auth "
                "(INFISICAL_CLIENT_ID / INFISICAL_CLIENT_SECRET)"
            )
        return universal or static

    @property
    def integration_target_environment(self) -> str:
        return self.integration_environment or self.infisical_environment


def load_settings(
    env: Mapping[str, str] | None = None,
    config_path: str | pathlib.Path | None = None,
) -> Settings:
    """Build ``Settings`` from *config_path* (optional YAML) and *env*.

    Raises ``ConfigError`` on unreadable files or malformed values.
    """
    if env is None:
        env = os.environ
    file_data = _load_yaml(config_path) if config_path else {}

    raw: dict[str, Any] = {}
    for field_name, (env_name, section, key) in _OPTIONS.items():
        value = env.get(env_name)
        if value is None or value == "":
            value = (file_data.get(section) or {}).get(key)
        if value is not None and value != "":
            raw[field_name] = value

    settings = Settings(**{name: _coerce(name, value) for name, value in raw.items()})
    if settings.transport not in TRANSPORTS:
        raise ConfigError(f"Invalid value for transport: {settings.transport!r} (expected one of {TRANSPORTS})")
    return settings


# -- private helpers ---------------------------------------------------------

_FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(Settings)}


def _coerce(name: str, value: Any) -> Any:
    declared = _FIELD_TYPES[name]
    try:
        if declared == "bool":
            return _to_bool(value)
        if declared == "int":
            return int(value)
        if declared == "float":
            return float(value)
        if declared == "AuthPriority":
            return AuthPriority(str(value).strip().lower())
        if declared == "tuple[str, ...]":
            items = value if isinstance(value, (list, tuple)) else str(value).split(",")
            return tuple(str(item).strip() for item in items if str(item).strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
    return str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(text)


def _load_yaml(config_path: str | pathlib.Path) -> dict[str, Any]:
    path = pathlib.Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path) as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping at the top level")
    return data
