"""Capability registry: the session-filtered tool and resource tables.

Pattern: Capability Filtering at Discovery Time
-----------------------------------------------
The registry holds every descriptor the server knows about.  What a given
session sees is filtered by the backends configured for it: a session
without Infisical credentials is never shown ``infisical_*`` tools, and
dispatching one is refused with ``UnknownCapability`` exactly as if the name
did not exist.  The filter is applied both at listing time and at dispatch
time, so a client cannot reach a hidden capability by guessing its name.

Dispatch is uniform for tools and resources:

  1. validate the arguments against the descriptor's pydantic model
     (failure -> ``ValidationError`` result, no remote call);
  2. admit the call on the session and invoke ``target.method``;
  3. convert an unexpected exception into an ``InternalError`` result;
  4. hand successful Keycloak writes to the session's automation.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from typing import Any, Iterable, Mapping

import pydantic

from keycloak_infisical_mcp.auth.session import INFISICAL, INTEGRATION, KEYCLOAK, Session
from keycloak_infisical_mcp.backends.infisical import InfisicalClient
from keycloak_infisical_mcp.backends.keycloak import KeycloakClient
from keycloak_infisical_mcp.errors import (
    CatalogError,
    InternalError,
    OperationResult,
    ServerError,
    UnknownCapability,
    ValidationError,
)
from keycloak_infisical_mcp.integration.automation import CrossServiceAutomation
from keycloak_infisical_mcp.policy import infisical_catalog, integration_catalog, keycloak_catalog
from keycloak_infisical_mcp.policy.descriptors import CapabilityDescriptor, ResourceDescriptor
from keycloak_infisical_mcp.policy.params import Params

logger = logging.getLogger(__name__)

HANDLER_TYPES: dict[str, type] = {
    KEYCLOAK: KeycloakClient,
    INFISICAL: InfisicalClient,
    INTEGRATION: CrossServiceAutomation,
}

DEFAULT_CAPABILITIES = keycloak_catalog.TOOLS + infisical_catalog.TOOLS + integration_catalog.TOOLS
DEFAULT_RESOURCES = keycloak_catalog.RESOURCES + infisical_catalog.RESOURCES

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class CapabilityRegistry:
    """Immutable after construction; shared by every session."""

    def __init__(
        self,
        capabilities: Iterable[CapabilityDescriptor] = DEFAULT_CAPABILITIES,
        resources: Iterable[ResourceDescriptor] = DEFAULT_RESOURCES,
    ) -> None:
        self._capabilities: dict[str, CapabilityDescriptor] = {}
        for descriptor in capabilities:
            if descriptor.name in self._capabilities:
                raise CatalogError(f"Duplicate capability '{descriptor.name}'")
            self._capabilities[descriptor.name] = descriptor

        self._resources = tuple(resources)
        self._patterns = [(_compile(descriptor.uri_template), descriptor) for descriptor in self._resources]

        self._check_complete()
        self._schemas = {
            name: descriptor.params.model_json_schema(by_alias=True)
            for name, descriptor in self._capabilities.items()
        }
        logger.debug(
            "Capability registry ready: %d tools, %d resources", len(self._capabilities), len(self._resources)
        )

    def _check_complete(self) -> None:
        """Every descriptor must name an ``@operation`` handler on its target type."""
        descriptors: list[CapabilityDescriptor | ResourceDescriptor] = [
            *self._capabilities.values(), *self._resources,
        ]
        for descriptor in descriptors:
            label = getattr(descriptor, "name", None) or descriptor.uri_template
            handler_type = HANDLER_TYPES.get(descriptor.target)
            if handler_type is None:
                raise CatalogError(f"{label}: unknown target '{descriptor.target}'")
            handler = getattr(handler_type, descriptor.method, None)
            if not callable(handler):
                raise CatalogError(
                    f"{label}: {handler_type.__name__} has no handler '{descriptor.method}'"
                )
            if not getattr(handler, "is_operation", False):
                raise CatalogError(
                    f"{label}: {handler_type.__name__}.{descriptor.method} is not an operation"
                )

    # -- discovery ------------------------------------------------------------

    def list_capabilities(self, session: Session) -> list[CapabilityDescriptor]:
        return [d for d in self._capabilities.values() if d.requires <= session.backends]

    def list_resources(self, session: Session) -> list[ResourceDescriptor]:
        return [d for d in self._resources if d.requires <= session.backends]

    def input_schema(self, name: str) -> dict[str, Any]:
        return self._schemas[name]

    # -- dispatch -------------------------------------------------------------

    async def dispatch(self, session: Session, name: str, args: Mapping[str, Any] | None) -> OperationResult:
        descriptor = self._capabilities.get(name)
        if descriptor is None or not descriptor.requires <= session.backends:
            raise UnknownCapability(name)
        return await self._invoke(session, name, descriptor.target, descriptor.method, descriptor.params, args)

    async def read_resource(self, session: Session, uri: str) -> OperationResult:
        """Match *uri* against the resource templates and dispatch it.

        Path placeholders and query parameters are merged into one argument
        dict; path values win on conflict.
        """
        base, _, query = uri.partition("?")
        base = base.rstrip("/")
        for pattern, descriptor in self._patterns:
            match = pattern.fullmatch(base)
            if match is None or not descriptor.requires <= session.backends:
                continue
            args: dict[str, Any] = dict(urllib.parse.parse_qsl(query))
            args.update({key: urllib.parse.unquote(value) for key, value in match.groupdict().items()})
            return await self._invoke(session, uri, descriptor.target, descriptor.method, descriptor.params, args)
        raise UnknownCapability(uri)

    async def _invoke(
        self,
        session: Session,
        label: str,
        target: str,
        method: str,
        model: type[Params],
        args: Mapping[str, Any] | None,
    ) -> OperationResult:
        try:
            params = model.model_validate(dict(args or {}))
        except pydantic.ValidationError as exc:
            return OperationResult.failure(_invalid(exc))
        call_args = params.to_args()

        async with session.operation():
            handler = getattr(session.component(target), method)
            try:
                result = await handler(call_args)
            except ServerError as exc:
                result = OperationResult.failure(exc)
            except Exception:
                logger.exception("[%s] Unexpected error in %s", session.session_id, label)
                return OperationResult.failure(InternalError(f"Unexpected error while handling {label}"))

        if target == KEYCLOAK and result.ok and session.automation is not None:
            try:
                session.automation.on_identity_result(method, call_args, result)
            except Exception:
                logger.exception("[%s] Could not schedule propagation for %s", session.session_id, label)
        return result


def _compile(template: str) -> re.Pattern[str]:
    parts = _PLACEHOLDER.split(template)
    # split() alternates literal text and placeholder names
    regex = "".join(
        f"(?P<{part}>[^/?]+)" if index % 2 else re.escape(part) for index, part in enumerate(parts)
    )
    return re.compile(regex)


def _invalid(exc: pydantic.ValidationError) -> ValidationError:
    fields: list[str] = []
    problems: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<arguments>"
        fields.append(location)
        problems.append(f"{location}: {error['msg']}")
    return ValidationError(f"Invalid parameters: {'; '.join(problems)}", fields=fields)
