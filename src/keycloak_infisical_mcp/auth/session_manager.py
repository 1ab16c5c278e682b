"""Registry of live sessions.

Every session gets freshly constructed components: one ``httpx.AsyncClient``
per backend, a token broker per configured credential, a client per broker,
and the cross-service automation when both backends are present.  Nothing is
shared between sessions, so tokens never leak across connections.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from typing import Any

import httpx

from keycloak_infisical_mcp.auth.session import INFISICAL, KEYCLOAK, Session
from keycloak_infisical_mcp.auth.token_broker import build_broker
from keycloak_infisical_mcp.backends.infisical import InfisicalClient
from keycloak_infisical_mcp.backends.keycloak import KeycloakClient
from keycloak_infisical_mcp.config import Settings
from keycloak_infisical_mcp.errors import SessionNotFound
from keycloak_infisical_mcp.integration.automation import AutomationConfig, CrossServiceAutomation

logger = logging.getLogger(__name__)

STDIO_SESSION_ID = "stdio"


class SessionManager:
    """Creates, resolves and destroys sessions.

    ``transport`` is passed to every ``httpx.AsyncClient``; tests use it to
    substitute an ``httpx.MockTransport`` for the network.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._sessions: dict[str, Session] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def create_session(self, settings: Settings | None = None, session_id: str | None = None) -> Session:
        settings = settings or self._settings
        session_id = session_id or uuid.uuid4().hex
        if session_id in self._sessions:
            raise ValueError(f"Session id already in use: {session_id}")

        session = Session(session_id=session_id, created_at=datetime.datetime.now(datetime.UTC))
        margin = settings.token_safety_margin_seconds

        keycloak_credential = settings.keycloak_credential()
        if keycloak_credential is not None:
            http = self._http_client(f"{keycloak_credential.endpoint_base}/admin", settings)
            session.keycloak_broker = build_broker(KEYCLOAK, keycloak_credential, http, safety_margin=margin)
            session.keycloak = KeycloakClient(session.keycloak_broker, http, default_realm=settings.keycloak_realm)

        infisical_credential = settings.infisical_credential()
        if infisical_credential is not None:
            http = self._http_client(f"{infisical_credential.endpoint_base}/api", settings)
            session.infisical_broker = build_broker(INFISICAL, infisical_credential, http, safety_margin=margin)
            session.infisical = InfisicalClient(
                session.infisical_broker,
                http,
                default_project_id=settings.infisical_project_id,
                default_environment=settings.infisical_environment,
                default_org_id=settings.infisical_org_id,
            )

        if session.keycloak is not None and session.infisical is not None:
            session.automation = CrossServiceAutomation(
                session.keycloak,
                session.infisical,
                AutomationConfig.from_settings(settings),
                session_id=session_id,
            )

        self._sessions[session_id] = session
        logger.info("[%s] Session created with backends %s", session_id, sorted(session.backends) or "none")
        return session

    def resolve(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None or session.is_closing:
            raise SessionNotFound(session_id)
        return session

    async def destroy(self, session_id: str) -> None:
        """Forget the session, then release it once in-flight work finishes."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        await session.close()

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.destroy(session_id)

    def _http_client(self, base_url: str, settings: Settings) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {"base_url": base_url, "timeout": httpx.Timeout(settings.http_timeout_seconds)}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)
