"""Propagation of Keycloak-generated credentials into Infisical.

Pattern: Discover-or-Create Provisioning
-----------------------------------------
Before the first secret is written, the automation needs an Infisical
project and folder to write into.  The project is located by name
(``"Keycloak Secrets"`` by default) and created when absent:

    UNRESOLVED -> list projects -> found             -> RESOLVED
    UNRESOLVED -> list -> missing -> create -> re-list -> RESOLVED | FAILED
    RESOLVED   -> ensure folder ("already exists" is fine) -> READY
    FAILED     -> later propagations short-circuit, discovery is not retried

Resolution happens at most once per session.  Concurrent first uses share a
single in-flight task, so they converge on one project id and at most one
create call.

Propagation itself runs as a detached task.  The Keycloak response has
already been returned by then; the outcome is recorded in a bounded
``PropagationRecord`` log that the status tool exposes.  A propagation
failure is logged and never reaches the triggering operation.
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import datetime
import enum
import logging
from typing import Any, Awaitable, Callable, Coroutine

from keycloak_infisical_mcp.backends.base import operation
from keycloak_infisical_mcp.backends.infisical import InfisicalClient
from keycloak_infisical_mcp.backends.keycloak import KeycloakClient, is_confidential
from keycloak_infisical_mcp.config import Settings
from keycloak_infisical_mcp.errors import (
    InternalError,
    OperationResult,
    RemoteRejected,
    ServerError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "KEYCLOAK_"
DEFAULT_PROJECT_NAME = "Keycloak Secrets"
DEFAULT_FOLDER_PATH = "/keycloak"
DEFAULT_TAG_SLUGS = ("keycloak", "auto-generated")
_MAX_RECORDS = 50


class Category(enum.Enum):
    CLIENT = "CLIENT"
    USER = "USER"
    IDP = "IDP"
    REALM = "REALM"

    @property
    def suffix(self) -> str:
        return "PASSWORD" if self is Category.USER else "SECRET"


def secret_key(category: Category, identifier: str, prefix: str = DEFAULT_PREFIX) -> str:
    """``<PREFIX><CATEGORY>_<IDENTIFIER>_<SUFFIX>``, e.g. ``KEYCLOAK_CLIENT_my-app_SECRET``."""
    return f"{prefix}{category.value}_{identifier}_{category.suffix}"


class ProvisioningState(enum.Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    READY = "ready"
    FAILED = "failed"


@dataclasses.dataclass
class AutomationConfig:
    """Runtime-mutable automation settings, read at each propagation."""

    enabled: bool = True
    project_name: str = DEFAULT_PROJECT_NAME
    project_id: str | None = None
    environment: str = "dev"
    secret_prefix: str = DEFAULT_PREFIX
    folder_path: str = DEFAULT_FOLDER_PATH
    tag_ids: list[str] = dataclasses.field(default_factory=list)
    tag_slugs: list[str] = dataclasses.field(default_factory=lambda: list(DEFAULT_TAG_SLUGS))

    @classmethod
    def from_settings(cls, settings: Settings) -> AutomationConfig:
        return cls(
            enabled=settings.integration_enabled,
            project_name=settings.integration_project_name,
            project_id=settings.integration_project_id,
            environment=settings.integration_target_environment,
            secret_prefix=settings.integration_secret_prefix,
            folder_path=settings.integration_folder_path,
            tag_slugs=list(settings.integration_tag_slugs),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "projectName": self.project_name,
            "projectId": self.project_id,
            "environment": self.environment,
            "secretPrefix": self.secret_prefix,
            "folderPath": self.folder_path,
            "tagIds": list(self.tag_ids),
            "tagSlugs": list(self.tag_slugs),
        }


# tool parameter name -> AutomationConfig attribute
_CONFIG_FIELDS = {
    "enabled": "enabled",
    "projectName": "project_name",
    "projectId": "project_id",
    "environment": "environment",
    "secretPrefix": "secret_prefix",
    "folderPath": "folder_path",
    "tagIds": "tag_ids",
    "tagSlugs": "tag_slugs",
}


@dataclasses.dataclass(frozen=True)
class ProvisioningTarget:
    project_id: str
    folder_path: str


@dataclasses.dataclass(frozen=True)
class PropagationRecord:
    """Outcome of one propagation attempt."""

    secret_key: str
    category: str
    realm: str
    status: str  # stored | failed | skipped
    detail: str
    at: datetime.datetime
    error: ServerError | None = dataclasses.field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "secretKey": self.secret_key,
            "category": self.category,
            "realm": self.realm,
            "status": self.status,
            "detail": self.detail,
            "at": self.at.isoformat(),
        }


class CrossServiceAutomation:
    """Copies generated Keycloak credentials into Infisical for one session."""

    backend = "integration"

    def __init__(
        self,
        keycloak: KeycloakClient,
        infisical: InfisicalClient,
        config: AutomationConfig | None = None,
        session_id: str = "",
    ) -> None:
        self._keycloak = keycloak
        self._infisical = infisical
        self._config = config or AutomationConfig()
        self._session_id = session_id

        self._state = ProvisioningState.UNRESOLVED
        self._project_id: str | None = None
        self._failure: str | None = None
        self._ready_folders: set[tuple[str, str, str]] = set()
        # (project, slug) -> tag id; None once the slug could not be resolved
        self._tag_ids: dict[tuple[str, str], str | None] = {}
        self._inflight: dict[Any, asyncio.Task[Any]] = {}
        self._pending: set[asyncio.Task[Any]] = set()
        self._records: collections.deque[PropagationRecord] = collections.deque(maxlen=_MAX_RECORDS)

    # -- configuration --------------------------------------------------------

    @property
    def config(self) -> AutomationConfig:
        return self._config

    @property
    def state(self) -> ProvisioningState:
        return self._state

    @property
    def records(self) -> list[PropagationRecord]:
        return list(self._records)

    def update_config(self, **changes: Any) -> AutomationConfig:
        for name, value in changes.items():
            if not hasattr(self._config, name):
                raise ValidationError(f"Unknown integration option: {name}", fields=[name])
            setattr(self._config, name, value)
        return self._config

    def secret_key(self, category: Category, identifier: str) -> str:
        return secret_key(category, identifier, self._config.secret_prefix)

    # -- provisioning ---------------------------------------------------------

    async def resolve_target(self) -> ProvisioningTarget | None:
        """Return the (project, folder) to write into, resolving it once.

        ``None`` means discovery failed for this session.
        """
        config = self._config
        if config.project_id:
            return ProvisioningTarget(config.project_id, config.folder_path)
        if self._state is ProvisioningState.FAILED:
            return None
        if self._project_id is None:
            await self._single_flight("project", self._discover_project)
        if self._project_id is None:
            return None
        return ProvisioningTarget(self._project_id, config.folder_path)

    async def ensure_folder(self, project_id: str, environment: str, folder_path: str) -> OperationResult:
        """Create every segment of *folder_path*; existing folders count as success."""
        key = (project_id, environment, folder_path)
        if key in self._ready_folders:
            return OperationResult.success({"folderPath": folder_path}, "Folder ready")
        return await self._single_flight(key, lambda: self._create_folders(*key))

    async def _discover_project(self) -> None:
        name = self._config.project_name
        listed = await self._infisical.list_projects({})
        if not listed.ok:
            self._fail(f"could not list projects: {listed.error.message if listed.error else 'unknown'}")
            return

        project_id = _find_project(listed.payload, name)
        if project_id is None:
            logger.info("[%s] Infisical project '%s' not found, creating it", self._session_id, name)
            created = await self._infisical.create_project({
                "projectName": name,
                "projectDescription": "Credentials generated by Keycloak, stored automatically",
            })
            if not created.ok:
                self._fail(f"could not create project '{name}': {created.error.message if created.error else 'unknown'}")
                return
            relisted = await self._infisical.list_projects({})
            if relisted.ok:
                project_id = _find_project(relisted.payload, name)
            if project_id is None:
                self._fail(f"project '{name}' was created but does not appear in the project list")
                return

        self._project_id = project_id
        self._state = ProvisioningState.RESOLVED
        logger.info("[%s] Provisioning project resolved: %s (%s)", self._session_id, name, project_id)

    async def _create_folders(self, project_id: str, environment: str, folder_path: str) -> OperationResult:
        parent = "/"
        for segment in [part for part in folder_path.split("/") if part]:
            result = await self._infisical.create_folder({
                "projectId": project_id,
                "environment": environment,
                "name": segment,
                "path": parent,
            })
            if not result.ok and not _already_exists(result):
                return result
            parent = f"{parent.rstrip('/')}/{segment}"
        self._ready_folders.add((project_id, environment, folder_path))
        if self._state is ProvisioningState.RESOLVED:
            self._state = ProvisioningState.READY
        return OperationResult.success({"folderPath": folder_path}, "Folder ready")

    async def resolve_tags(self, project_id: str, slugs: list[str]) -> list[str]:
        """Map tag slugs to tag ids in *project_id*, creating missing tags.

        A slug that cannot be listed or created is logged and left off; the
        secret is still written without it.
        """
        if any((project_id, slug) not in self._tag_ids for slug in slugs):
            await self._single_flight(("tags", project_id), lambda: self._load_tags(project_id, slugs))
        resolved = (self._tag_ids.get((project_id, slug)) for slug in slugs)
        return [tag_id for tag_id in resolved if tag_id]

    async def _load_tags(self, project_id: str, slugs: list[str]) -> None:
        listed = await self._infisical.list_secret_tags({"projectId": project_id})
        existing = _tag_index(listed.payload) if listed.ok else {}
        for slug in slugs:
            if (project_id, slug) in self._tag_ids:
                continue
            tag_id = existing.get(slug)
            if tag_id is None:
                created = await self._infisical.create_secret_tag({
                    "projectId": project_id,
                    "slug": slug,
                    "name": slug,
                })
                if created.ok:
                    tag_id = _tag_id(created.payload)
                else:
                    logger.warning(
                        "[%s] Could not create secret tag '%s': %s", self._session_id, slug, created.summary
                    )
            self._tag_ids[(project_id, slug)] = tag_id

    def _fail(self, reason: str) -> None:
        self._state = ProvisioningState.FAILED
        self._failure = reason
        logger.warning("[%s] Provisioning target unavailable: %s", self._session_id, reason)

    async def _single_flight(self, key: Any, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    # -- triggers -------------------------------------------------------------

    def on_identity_result(
        self, operation: str, args: dict[str, Any], result: OperationResult
    ) -> asyncio.Task[PropagationRecord] | None:
        """Schedule propagation for a completed Keycloak write, if it qualifies."""
        if not result.ok:
            return None
        payload = result.payload if isinstance(result.payload, dict) else {}
        realm = payload.get("realm") or args.get("realm") or self._keycloak.default_realm

        if operation == "create_user" and args.get("password"):
            return self._schedule(self.propagate(
                Category.USER, args["username"], args["password"], realm, "initial password",
            ))
        if operation == "create_client" and payload.get("secret") and is_confidential(payload):
            return self._schedule(self.propagate(
                Category.CLIENT, payload.get("clientId") or args["clientId"], payload["secret"], realm, "client secret",
            ))
        if operation == "create_identity_provider":
            client_secret = (args.get("config") or {}).get("clientSecret")
            if client_secret:
                return self._schedule(self.propagate(
                    Category.IDP, args["alias"], client_secret, realm, "identity provider client secret",
                ))
        return None

    async def propagate(
        self,
        category: Category | None,
        identifier: str,
        value: str,
        realm: str,
        reason: str,
        key: str | None = None,
    ) -> PropagationRecord:
        """Write one secret into the provisioning target.  Never raises."""
        config = self._config
        if key is None:
            assert category is not None
            key = self.secret_key(category, identifier)
        label = category.value if category else "MANUAL"
        try:
            if not config.enabled:
                return self._record(key, label, realm, "skipped", "integration disabled")

            target = await self.resolve_target()
            if target is None:
                return self._record(key, label, realm, "failed", f"no provisioning target: {self._failure}")

            folder = await self.ensure_folder(target.project_id, config.environment, target.folder_path)
            if not folder.ok:
                return self._record(key, label, realm, "failed", f"folder: {folder.summary}", folder.error)

            tag_ids = [*config.tag_ids, *await self.resolve_tags(target.project_id, config.tag_slugs)]
            subject = f"Keycloak {category.value.lower()} '{identifier}'" if category else identifier
            created = await self._infisical.create_secret({
                "projectId": target.project_id,
                "environment": config.environment,
                "secretName": key,
                "secretValue": value,
                "secretPath": target.folder_path,
                "secretComment": f"{reason.capitalize()} for {subject} in realm '{realm}'",
                "secretMetadata": [
                    {"key": "realm", "value": realm},
                    {"key": "reason", "value": reason},
                    {"key": "source", "value": "keycloak"},
                ],
                "tagIds": tag_ids or None,
            })
            if not created.ok:
                return self._record(key, label, realm, "failed", created.summary, created.error)
            return self._record(key, label, realm, "stored", f"{target.project_id}:{target.folder_path}")
        except Exception as exc:  # detached task boundary
            logger.exception("[%s] Propagation of %s crashed", self._session_id, key)
            return self._record(key, label, realm, "failed", f"unexpected error: {exc!r}")

    def _schedule(self, coro: Coroutine[Any, Any, PropagationRecord]) -> asyncio.Task[PropagationRecord]:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _record(
        self, key: str, category: str, realm: str, status: str, detail: str, error: ServerError | None = None
    ) -> PropagationRecord:
        record = PropagationRecord(
            secret_key=key,
            category=category,
            realm=realm,
            status=status,
            detail=detail,
            at=datetime.datetime.now(datetime.UTC),
            error=error,
        )
        self._records.append(record)
        if status == "failed":
            logger.warning("[%s] Propagation of %s failed: %s", self._session_id, key, detail)
        else:
            logger.info("[%s] Propagation of %s %s", self._session_id, key, status)
        return record

    async def drain(self) -> None:
        """Wait for every scheduled propagation to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- tool handlers --------------------------------------------------------

    @operation
    async def configure(self, args: dict[str, Any]) -> OperationResult:
        changes = {attr: args[param] for param, attr in _CONFIG_FIELDS.items() if param in args}
        try:
            self.update_config(**changes)
        except ValidationError as exc:
            return OperationResult.failure(exc)
        if self._config.enabled:
            await self.resolve_target()
        return OperationResult.success(
            self._status_payload(), f"Integration {'enabled' if self._config.enabled else 'disabled'}"
        )

    @operation
    async def get_status(self, args: dict[str, Any]) -> OperationResult:
        return OperationResult.success(self._status_payload(), "Integration status")

    @operation
    async def store_existing_secret(self, args: dict[str, Any]) -> OperationResult:
        """Manually push a secret; the outcome is returned to the caller."""
        value = args.get("secretValue")
        realm = args.get("realm") or self._keycloak.default_realm
        context = args.get("context") or "manual storage"
        category = Category(args["category"]) if args.get("category") else None

        if category is not None:
            identifier = args.get("identifier") or args.get("secretName")
            if not identifier or not value:
                return OperationResult.failure(ValidationError(
                    "identifier and secretValue are required", fields=["identifier", "secretValue"],
                ))
            record = await self.propagate(category, identifier, value, realm, context)
        else:
            name = args.get("secretName")
            if not name or not value:
                return OperationResult.failure(ValidationError(
                    "secretName and secretValue are required", fields=["secretName", "secretValue"],
                ))
            record = await self.propagate(
                None, name, value, realm, context, key=f"{self._config.secret_prefix}{name}",
            )

        if record.status == "failed":
            return OperationResult.failure(record.error or InternalError(record.detail))
        return OperationResult.success(record.to_dict(), f"Secret {record.secret_key} {record.status}")

    def _status_payload(self) -> dict[str, Any]:
        target_project = self._config.project_id or self._project_id
        return {
            "enabled": self._config.enabled,
            "config": self._config.to_dict(),
            "provisioning": {
                "state": self._state.value,
                "projectId": target_project,
                "folderPath": self._config.folder_path,
                "error": self._failure,
            },
            "pendingPropagations": len(self._pending),
            "recentPropagations": [record.to_dict() for record in self._records],
        }


def _find_project(payload: Any, name: str) -> str | None:
    if isinstance(payload, dict):
        projects = payload.get("workspaces") or payload.get("projects") or []
    elif isinstance(payload, list):
        projects = payload
    else:
        projects = []
    for project in projects:
        if isinstance(project, dict) and project.get("name") == name:
            return project.get("id") or project.get("_id")
    return None


def _tag_index(payload: Any) -> dict[str, str]:
    if isinstance(payload, dict):
        tags = payload.get("workspaceTags") or payload.get("tags") or []
    elif isinstance(payload, list):
        tags = payload
    else:
        tags = []
    index = {}
    for tag in tags:
        if isinstance(tag, dict) and tag.get("slug"):
            tag_id = tag.get("id") or tag.get("_id")
            if tag_id:
                index[tag["slug"]] = tag_id
    return index


def _tag_id(payload: Any) -> str | None:
    if isinstance(payload, dict):
        tag = payload.get("workspaceTag") or payload.get("tag") or payload
        if isinstance(tag, dict):
            return tag.get("id") or tag.get("_id")
    return None


def _already_exists(result: OperationResult) -> bool:
    error = result.error
    if not isinstance(error, RemoteRejected):
        return False
    if error.status_code == 409:
        return True
    return error.status_code == 400 and "already exist" in str(error.body).lower()
