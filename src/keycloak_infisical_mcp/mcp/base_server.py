"""MCP server bound to one session.

Pattern: Session-Filtered Tool Registry
----------------------------------------
The server itself holds no tool definitions.  Listing and dispatch both go
through the shared ``CapabilityRegistry`` with the session this server was
created for, so what a client can see and what it can call are always the
same set: the capabilities whose backends the session has credentials for.

The session is re-resolved on every request.  Once the ``SessionManager``
has started destroying it, further requests fail with ``SessionNotFound``
instead of reaching a half-closed client.

Failure results never raise out of the protocol layer as transport errors.
They are reported as MCP error results carrying the JSON form of the
``ServerError``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.types import Resource, ResourceTemplate, TextContent, Tool
from pydantic import AnyUrl

from keycloak_infisical_mcp.auth.session import Session
from keycloak_infisical_mcp.auth.session_manager import STDIO_SESSION_ID, SessionManager
from keycloak_infisical_mcp.errors import OperationResult, ServerError
from keycloak_infisical_mcp.policy.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

SERVER_NAME = "keycloak-infisical-mcp"
JSON_MIME_TYPE = "application/json"


class CapabilityFailed(Exception):
    """Carries a failure result out of an MCP handler.

    The MCP SDK turns an exception raised by a handler into an error result
    whose text is ``str(exc)``; here that text is the error as JSON.
    """

    def __init__(self, error: ServerError) -> None:
        super().__init__(json.dumps(error.to_dict(), default=str))
        self.error = error


class SessionServer:
    """One low-level MCP ``Server`` serving one session."""

    def __init__(self, manager: SessionManager, registry: CapabilityRegistry, session_id: str) -> None:
        self._manager = manager
        self._registry = registry
        self._session_id = session_id
        self._server: Server = Server(SERVER_NAME)
        self.setup_handlers()

    @property
    def server(self) -> Server:
        return self._server

    @property
    def session_id(self) -> str:
        return self._session_id

    def _session(self) -> Session:
        try:
            return self._manager.resolve(self._session_id)
        except ServerError as exc:
            raise CapabilityFailed(exc) from exc

    # -- listing --------------------------------------------------------------

    def visible_tools(self) -> list[Tool]:
        session = self._session()
        return [
            Tool(
                name=descriptor.name,
                description=descriptor.description,
                inputSchema=self._registry.input_schema(descriptor.name),
            )
            for descriptor in self._registry.list_capabilities(session)
        ]

    def visible_resources(self) -> list[Resource]:
        session = self._session()
        return [
            Resource(
                uri=AnyUrl(descriptor.uri_template),
                name=descriptor.name,
                description=descriptor.description,
                mimeType=JSON_MIME_TYPE,
            )
            for descriptor in self._registry.list_resources(session)
            if not descriptor.is_template
        ]

    def visible_templates(self) -> list[ResourceTemplate]:
        session = self._session()
        return [
            ResourceTemplate(
                uriTemplate=descriptor.uri_template,
                name=descriptor.name,
                description=descriptor.description,
                mimeType=JSON_MIME_TYPE,
            )
            for descriptor in self._registry.list_resources(session)
            if descriptor.is_template
        ]

    # -- dispatch -------------------------------------------------------------

    async def call(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        session = self._session()
        try:
            result = await self._registry.dispatch(session, name, arguments or {})
        except ServerError as exc:
            logger.info("[%s] %s refused: %s", self._session_id, name, exc.message)
            raise CapabilityFailed(exc) from exc
        return [TextContent(type="text", text=_render(result))]

    async def read(self, uri: str) -> list[ReadResourceContents]:
        session = self._session()
        try:
            result = await self._registry.read_resource(session, uri)
        except ServerError as exc:
            logger.info("[%s] %s refused: %s", self._session_id, uri, exc.message)
            raise CapabilityFailed(exc) from exc
        return [ReadResourceContents(content=_render(result), mime_type=JSON_MIME_TYPE)]

    # -- protocol wiring ------------------------------------------------------

    def setup_handlers(self) -> None:
        server = self._server

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return self.visible_tools()

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            return await self.call(name, arguments)

        @server.list_resources()
        async def list_resources() -> list[Resource]:
            return self.visible_resources()

        @server.list_resource_templates()
        async def list_resource_templates() -> list[ResourceTemplate]:
            return self.visible_templates()

        @server.read_resource()
        async def read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
            return await self.read(str(uri))


def _render(result: OperationResult) -> str:
    """Success payloads as JSON; failures raise ``CapabilityFailed``."""
    if not result.ok:
        assert result.error is not None
        raise CapabilityFailed(result.error)
    return json.dumps(result.to_dict(), indent=2, default=str)


async def run_stdio(manager: SessionManager, registry: CapabilityRegistry) -> None:
    """Serve the single stdio session until the client disconnects."""
    from mcp.server.stdio import stdio_server

    manager.create_session(session_id=STDIO_SESSION_ID)
    session_server = SessionServer(manager, registry, STDIO_SESSION_ID)
    server = session_server.server
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await manager.destroy(STDIO_SESSION_ID)
