"""Shared fixtures for tests."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from keycloak_infisical_mcp.auth.session_manager import SessionManager
from keycloak_infisical_mcp.config import Settings
from keycloak_infisical_mcp.policy.registry import CapabilityRegistry

KEYCLOAK_URL = "http://keycloak.test"
INFISICAL_URL = "http://infisical.test"
KEYCLOAK_TOKEN_URL = f"{KEYCLOAK_URL}/realms/master/protocol/openid-connect/token"
INFISICAL_LOGIN_URL = f"{INFISICAL_URL}/api/v1/auth/universal-auth/login"
INFISICAL_RENEW_URL = f"{INFISICAL_URL}/api/v1/auth/universal-auth/renew"

Responder = Callable[[httpx.Request], httpx.Response]


class FakeRemote:
    """In-process stand-in for the Keycloak and Infisical HTTP APIs.

    Routes are keyed by ``(method, url-without-query)``.  A route holds a
    queue of responders; the last one repeats once the queue is drained.
    Unrouted requests get a 404.  Every request is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Responder]] = {}

    def on(
        self,
        method: str,
        url: str,
        json_body: Any = None,
        status: int = 200,
        headers: dict[str, str] | None = None,
        responder: Responder | None = None,
    ) -> None:
        if responder is None:
            responder = _static(status, json_body, headers)
        self._routes.setdefault((method.upper(), url), []).append(responder)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, _without_query(request.url))
        queue = self._routes.get(key)
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {key[0]} {key[1]}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests(self, method: str, url: str) -> list[httpx.Request]:
        return [
            r for r in self.calls
            if r.method == method.upper() and _without_query(r.url) == url
        ]

    def count(self, method: str, url: str) -> int:
        return len(self.requests(method, url))


def _without_query(url: httpx.URL) -> str:
    return str(url).split("?", 1)[0]


def _static(status: int, json_body: Any, headers: dict[str, str] | None) -> Responder:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=json_body, headers=headers)

    return respond


def body_of(request: httpx.Request) -> Any:
    return json.loads(request.content)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def remote() -> FakeRemote:
    fake = FakeRemote()
    fake.on("POST", KEYCLOAK_TOKEN_URL, {"access_token": "kc-token", "token_type": "Bearer", "expires_in": 300})
    fake.on("POST", INFISICAL_LOGIN_URL, {"accessToken": "inf-token", "tokenType": "Bearer", "expiresIn": 7200})
    return fake


@pytest.fixture
def settings() -> Settings:
    return Settings(
        keycloak_url=KEYCLOAK_URL,
        keycloak_username="admin",
        keycloak_password="admin-password",
        infisical_url=INFISICAL_URL,
        infisical_client_id="machine-id",
        infisical_client_secret="machine-secret",
        infisical_project_id="proj-default",
    )


@pytest.fixture
def keycloak_only_settings() -> Settings:
    return Settings(keycloak_url=KEYCLOAK_URL, keycloak_username="admin", keycloak_password="admin-password")


@pytest.fixture
def manager(settings: Settings, remote: FakeRemote) -> SessionManager:
    return SessionManager(settings, transport=remote.transport)


@pytest.fixture(scope="session")
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
async def session(manager: SessionManager):
    session = manager.create_session()
    yield session
    await manager.close_all()
