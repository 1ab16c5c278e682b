"""Multi-session Streamable HTTP front end.

Pattern: One Transport, One Server, One Session
------------------------------------------------
Every client that completes an ``initialize`` handshake over ``POST /mcp``
gets its own ``Session`` (credentials, brokers, clients), its own low-level
MCP ``Server`` and its own ``StreamableHTTPServerTransport``.  Later
requests are routed by the ``mcp-session-id`` header:

  - no header, ``initialize`` POST  -> new session, id returned in the header
  - no header, anything else        -> 400
  - unknown id                      -> 404
  - ``DELETE /mcp``                 -> transport terminates, session destroyed

The server loop of each session runs in the application's task group.  When
it ends (DELETE, client gone, shutdown) the session is destroyed, which
waits for in-flight operations and pending secret propagations.
"""

from __future__ import annotations

import contextlib
import datetime
import json
import logging
from typing import Any, AsyncIterator

import anyio
import anyio.abc
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.server.transport_security import TransportSecuritySettings
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from keycloak_infisical_mcp.auth.session_manager import SessionManager
from keycloak_infisical_mcp.config import Settings
from keycloak_infisical_mcp.errors import SessionNotFound
from keycloak_infisical_mcp.mcp.base_server import SessionServer
from keycloak_infisical_mcp.policy.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = ("127.0.0.1", "localhost")


def security_settings(settings: Settings) -> TransportSecuritySettings:
    """Host/origin allow-lists for DNS-rebinding protection.

    Localhost names, the bind host and ``MCP_ALLOWED_HOSTS`` are accepted,
    each with or without a port.
    """
    hosts: list[str] = []
    for host in (*_LOCAL_HOSTS, settings.host, *settings.allowed_hosts):
        for candidate in (host, f"{host}:*", f"{host}:{settings.port}"):
            if host and candidate not in hosts:
                hosts.append(candidate)
    origins = [f"{scheme}://{host}" for host in hosts for scheme in ("http", "https")]
    return TransportSecuritySettings(
        enable_dns_rebinding_protection=settings.dns_rebinding_protection,
        allowed_hosts=hosts,
        allowed_origins=origins,
    )


class SessionRouter:
    """ASGI app behind ``/mcp``: routes requests to per-session transports."""

    def __init__(self, manager: SessionManager, registry: CapabilityRegistry) -> None:
        self._manager = manager
        self._registry = registry
        self._security = security_settings(manager.settings)
        self._transports: dict[str, StreamableHTTPServerTransport] = {}
        self._task_group: anyio.abc.TaskGroup | None = None

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Own the task group that runs every session's server loop."""
        async with anyio.create_task_group() as task_group:
            self._task_group = task_group
            try:
                yield
            finally:
                task_group.cancel_scope.cancel()
        self._task_group = None
        await self._manager.close_all()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id:
            transport = self._transports.get(session_id)
            if transport is None:
                await _error(404, "Session not found")(scope, receive, send)
                return
            await transport.handle_request(scope, receive, send)
            return

        if request.method != "POST":
            await _error(400, "Missing session ID")(scope, receive, send)
            return
        body = await request.body()
        if not _is_initialize(body):
            await _error(400, "Missing session ID; send initialize first")(scope, receive, send)
            return

        transport = await self._start_session()
        await transport.handle_request(scope, _replay(body, receive), send)

    async def _start_session(self) -> StreamableHTTPServerTransport:
        if self._task_group is None:
            raise RuntimeError("SessionRouter.run() must be entered before serving requests")

        session = self._manager.create_session()
        session_id = session.session_id
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=False,
            security_settings=self._security,
        )
        self._transports[session_id] = transport
        server = SessionServer(self._manager, self._registry, session_id).server

        async def serve(*, task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
            try:
                async with transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await server.run(
                        read_stream, write_stream, server.create_initialization_options(), stateless=False
                    )
            except Exception:
                logger.exception("[%s] MCP server loop crashed", session_id)
            finally:
                with anyio.CancelScope(shield=True):
                    await self._release(session_id)

        await self._task_group.start(serve)
        return transport

    async def _release(self, session_id: str) -> None:
        self._transports.pop(session_id, None)
        with contextlib.suppress(SessionNotFound):
            await self._manager.destroy(session_id)


def create_app(
    settings: Settings,
    manager: SessionManager | None = None,
    registry: CapabilityRegistry | None = None,
) -> Starlette:
    manager = manager or SessionManager(settings)
    registry = registry or CapabilityRegistry()
    router = SessionRouter(manager, registry)

    keycloak_configured = settings.keycloak_credential() is not None
    infisical_configured = settings.infisical_credential() is not None

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "healthy",
            "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
            "mode": "http",
            "activeSessions": manager.active_count,
            "backends": {"keycloak": keycloak_configured, "infisical": infisical_configured},
            "integration": keycloak_configured and infisical_configured and settings.integration_enabled,
        })

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with router.run():
            logger.info("HTTP transport ready on http://%s:%d/mcp", settings.host, settings.port)
            yield
        logger.info("HTTP transport stopped")

    return Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/mcp", endpoint=router),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["*"],
                expose_headers=[MCP_SESSION_ID_HEADER],
            ),
        ],
        lifespan=lifespan,
    )


# -- private helpers ---------------------------------------------------------


def _is_initialize(body: bytes) -> bool:
    try:
        message = json.loads(body)
    except ValueError:
        return False
    messages = message if isinstance(message, list) else [message]
    return any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages)


def _replay(body: bytes, receive: Receive) -> Receive:
    """Hand the already-consumed body to the transport, then defer to *receive*."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _error(status: int, message: str) -> JSONResponse:
    payload: dict[str, Any] = {"jsonrpc": "2.0", "id": None, "error": {"code": -32000, "message": message}}
    return JSONResponse(payload, status_code=status)
