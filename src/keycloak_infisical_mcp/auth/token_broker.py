"""Per-backend access-token brokering.

Pattern: Single-Flight Credential Broker
-----------------------------------------
Each backend client in a session owns exactly one ``TokenBroker``.  Before
every remote call the client awaits ``ensure_valid()``, which guarantees the
broker's current token has at least ``safety_margin`` seconds left (capped
at half the token's lifetime), or obtains a new one.

Three grant shapes are hidden behind the same contract:

  - ``StaticTokenBroker``: a pre-issued token.  Never expires from the
    broker's point of view; ``ensure_valid`` is a no-op.
  - ``KeycloakTokenBroker``: password grant (or service-account client
    credentials).  Keycloak offers no renewal for these admin tokens here,
    so expiry means a full re-authentication.
  - ``InfisicalTokenBroker``: Universal Auth.  Expiry first tries the renew
    endpoint and falls back to a full login when renew fails.

Only one token request may be outstanding per broker.  Concurrent callers
share the in-flight ``asyncio`` task and observe the same outcome, so N
callers hitting an expired token produce exactly one network exchange.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
from typing import Any, Callable

import httpx

from keycloak_infisical_mcp.config import Credential, CredentialKind
from keycloak_infisical_mcp.errors import AuthError

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 60


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclasses.dataclass(frozen=True)
class AccessToken:
    """A bearer credential owned by exactly one broker.

    Attributes:
        value:       The raw token string.
        token_type:  Authorization scheme, normally ``Bearer``.
        issued_at:   UTC time the token was obtained.
        expires_at:  UTC expiry, or ``None`` for tokens that never expire.
        refreshable: Whether the backend offers a renew call for it.
    """

    value: str
    token_type: str
    issued_at: datetime.datetime
    expires_at: datetime.datetime | None
    refreshable: bool

    def remaining_seconds(self, now: datetime.datetime) -> float:
        if self.expires_at is None:
            return float("inf")
        return (self.expires_at - now).total_seconds()

    @property
    def authorization(self) -> str:
        return f"{self.token_type} {self.value}"

    def __repr__(self) -> str:
        return (
            f"AccessToken(type={self.token_type}, expires_at={self.expires_at}, "
            f"refreshable={self.refreshable})"
        )


class TokenBroker:
    """Holds and refreshes one backend's token.  Subclasses implement grants."""

    backend = "backend"

    def __init__(
        self,
        credential: Credential,
        http_client: httpx.AsyncClient,
        safety_margin: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._credential = credential
        self._http = http_client
        self._safety_margin = safety_margin
        self._clock = clock
        self._token: AccessToken | None = None
        self._inflight: asyncio.Task[None] | None = None

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def current_token(self) -> AccessToken | None:
        return self._token

    def is_fresh(self) -> bool:
        """True if the current token outlives the safety margin.

        The margin is capped at half the token's lifetime, so a token issued
        for no longer than the margin (Keycloak's default is 60s) is still
        reused for the first half of its life.
        """
        if self._token is None:
            return False
        return self._token.remaining_seconds(self._clock()) > self._margin_for(self._token)

    def _margin_for(self, token: AccessToken) -> float:
        if token.expires_at is None:
            return self._safety_margin
        lifetime = (token.expires_at - token.issued_at).total_seconds()
        return min(self._safety_margin, lifetime / 2)

    async def ensure_valid(self) -> None:
        """Make sure a token with enough remaining lifetime is held.

        Raises ``AuthError`` if the exchange or renewal fails.
        """
        if self.is_fresh():
            return
        if self._inflight is None:
            task = asyncio.ensure_future(self._obtain())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        # shield: a cancelled caller must not cancel the shared exchange.
        await asyncio.shield(self._inflight)

    async def authorization_header(self) -> dict[str, str]:
        await self.ensure_valid()
        token = self._token
        if token is None:
            raise AuthError(self.backend, "no token available after authentication")
        return {"Authorization": token.authorization}

    def invalidate(self) -> None:
        """Drop the current token so the next caller re-authenticates."""
        if self._token is not None:
            logger.info("Invalidating %s token", self.backend)
        self._token = None

    # -- subclass hooks ------------------------------------------------------

    async def _authenticate(self) -> AccessToken:
        raise NotImplementedError

    async def _renew(self, token: AccessToken) -> AccessToken:
        raise NotImplementedError

    # -- private helpers -----------------------------------------------------

    async def _obtain(self) -> None:
        current = self._token
        if current is not None and current.refreshable:
            try:
                self._token = await self._renew(current)
                logger.info(
                    "%s token renewed, expires_at=%s", self.backend, self._token.expires_at
                )
                return
            except AuthError as exc:
                logger.warning("%s token renew failed, re-authenticating: %s", self.backend, exc.cause)
                self._token = None

        try:
            self._token = await self._authenticate()
        except AuthError as exc:
            if exc.is_rejection:
                self._token = None
            raise
        logger.info("%s authenticated, expires_at=%s", self.backend, self._token.expires_at)

    def _clear_inflight(self, task: asyncio.Task[None]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away.
            task.exception()

    async def _post_token_request(self, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._http.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise AuthError(self.backend, f"token endpoint unreachable: {exc!r}") from exc

        if not response.is_success:
            raise AuthError(
                self.backend,
                f"token endpoint returned HTTP {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise AuthError(self.backend, "token endpoint returned invalid JSON") from exc

    def _token_from(
        self,
        value: str | None,
        token_type: str | None,
        expires_in: Any,
        refreshable: bool,
    ) -> AccessToken:
        if not value:
            raise AuthError(self.backend, "token response did not contain an access token")
        now = self._clock()
        expires_at = None
        if expires_in is not None:
            expires_at = now + datetime.timedelta(seconds=float(expires_in))
        return AccessToken(
            value=value,
            token_type=_normalise_scheme(token_type),
            issued_at=now,
            expires_at=expires_at,
            refreshable=refreshable,
        )


class StaticTokenBroker(TokenBroker):
    """Pre-issued token: never refreshed, never expires."""

    def __init__(self, credential: Credential, backend: str, **kwargs: Any) -> None:
        super().__init__(credential, **kwargs)
        self.backend = backend
        self._token = AccessToken(
            value=credential.secret_material["token"],
            token_type="Bearer",
            issued_at=self._clock(),
            expires_at=None,
            refreshable=False,
        )

    async def ensure_valid(self) -> None:
        return None

    def invalidate(self) -> None:
        # Nothing to re-obtain; a rejected static token stays rejected.
        logger.warning("%s static token was rejected by the remote API", self.backend)


class KeycloakTokenBroker(TokenBroker):
    """Keycloak admin token via the OpenID Connect token endpoint."""

    backend = "keycloak"

    @property
    def token_url(self) -> str:
        realm = self._credential.secret_material.get("realm", "master")
        return f"{self._credential.endpoint_base}/realms/{realm}/protocol/openid-connect/token"

    async def _authenticate(self) -> AccessToken:
        material = self._credential.secret_material
        if self._credential.kind is CredentialKind.PASSWORD_GRANT:
            form = {
                "grant_type": "password",
                "client_id": material.get("client_id", "admin-cli"),
                "username": material["username"],
                "password": material["password"],
            }
        else:
            form = {
                "grant_type": "client_credentials",
                "client_id": material["client_id"],
                "client_secret": material["client_secret"],
            }
        data = await self._post_token_request(self.token_url, data=form)
        return self._token_from(
            data.get("access_token"),
            data.get("token_type"),
            data.get("expires_in"),
            refreshable=False,
        )


class InfisicalTokenBroker(TokenBroker):
    """Infisical Universal Auth: login, then renew until renew stops working."""

    backend = "infisical"

    @property
    def login_url(self) -> str:
        return f"{self._credential.endpoint_base}/api/v1/auth/universal-auth/login"

    @property
    def renew_url(self) -> str:
        return f"{self._credential.endpoint_base}/api/v1/auth/universal-auth/renew"

    async def _authenticate(self) -> AccessToken:
        material = self._credential.secret_material
        data = await self._post_token_request(
            self.login_url,
            data={"clientId": material["client_id"], "clientSecret": material["client_secret"]},
        )
        return self._token_from(
            data.get("accessToken"),
            data.get("tokenType"),
            data.get("expiresIn"),
            refreshable=True,
        )

    async def _renew(self, token: AccessToken) -> AccessToken:
        data = await self._post_token_request(
            self.renew_url,
            json={},
            headers={"Authorization": token.authorization},
        )
        return self._token_from(
            data.get("accessToken"),
            data.get("tokenType"),
            data.get("expiresIn"),
            refreshable=True,
        )


def build_broker(
    backend: str,
    credential: Credential,
    http_client: httpx.AsyncClient,
    safety_margin: int = DEFAULT_SAFETY_MARGIN_SECONDS,
) -> TokenBroker:
    """Return the broker matching *backend* and the credential's kind."""
    if credential.kind is CredentialKind.STATIC_TOKEN:
        return StaticTokenBroker(
            credential, backend=backend, http_client=http_client, safety_margin=safety_margin
        )
    if backend == "keycloak":
        return KeycloakTokenBroker(credential, http_client, safety_margin=safety_margin)
    if backend == "infisical":
        return InfisicalTokenBroker(credential, http_client, safety_margin=safety_margin)
    raise ValueError(f"Unsupported backend: {backend}")


def _normalise_scheme(token_type: str | None) -> str:
    if not token_type or token_type.lower() == "bearer":
        return "Bearer"
    return token_type


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(
            body.get("error_description") or body.get("message") or body.get("error") or body
        )[:200]
    return str(body)[:200]
