"""Shared plumbing for the Keycloak and Infisical REST clients.

A backend client turns one domain operation into one authenticated HTTP
request.  It never retries and never caches response bodies.  Every
operation returns an ``OperationResult``:

  - 2xx → ``success`` with the JSON body unchanged plus a summary line;
  - non-2xx → ``RemoteRejected`` carrying the remote body;
  - timeout / connection failure → ``BackendUnavailable``;
  - token failure → ``AuthError``;
  - missing parameters → ``ValidationError`` (raised by the operation before
    any request and converted by ``@operation``).
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, Mapping

import httpx

from keycloak_infisical_mcp.auth.token_broker import TokenBroker
from keycloak_infisical_mcp.errors import (
    AuthError,
    BackendUnavailable,
    OperationResult,
    RemoteRejected,
    ServerError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[OperationResult]]


def operation(func: Handler) -> Handler:
    """Mark a method as a dispatchable operation.

    The capability registry only binds descriptors to methods carrying this
    mark. The owner must define a ``backend`` name for logging.

    Expected failures raised inside the method (``ValidationError`` and the
    other ``ServerError`` subclasses) are returned as failure results.
    """

    @functools.wraps(func)
    async def wrapper(self: Any, args: Mapping[str, Any]) -> OperationResult:
        try:
            return await func(self, dict(args))
        except ServerError as exc:
            logger.info("%s.%s failed: %s", self.backend, func.__name__, exc.message)
            return OperationResult.failure(exc)

    wrapper.is_operation = True  # type: ignore[attr-defined]
    return wrapper


class BackendClient:
    """Authenticated JSON-over-HTTP client for one backend."""

    backend = "backend"

    def __init__(self, broker: TokenBroker, http_client: httpx.AsyncClient) -> None:
        self._broker = broker
        self._http = http_client

    @property
    def broker(self) -> TokenBroker:
        return self._broker

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        summary: str,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> OperationResult:
        response = await self._send(method, path, params=params, json=json)
        if isinstance(response, OperationResult):
            return response
        return OperationResult.success(_decode(response), summary)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response | OperationResult:
        """Issue one request; return the 2xx response or a failure result."""
        try:
            headers = await self._broker.authorization_header()
        except AuthError as exc:
            return OperationResult.failure(exc)

        try:
            response = await self._http.request(
                method,
                path,
                params=_clean(params) if params else None,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            return OperationResult.failure(
                BackendUnavailable(self.backend, f"{method} {path} timed out ({exc.__class__.__name__})")
            )
        except httpx.TransportError as exc:
            return OperationResult.failure(BackendUnavailable(self.backend, f"{method} {path}: {exc!r}"))

        if response.is_success:
            return response

        if response.status_code == 401:
            self._broker.invalidate()
        logger.info("%s %s %s -> HTTP %d", self.backend, method, path, response.status_code)
        return OperationResult.failure(
            RemoteRejected(self.backend, response.status_code, _decode(response))
        )

    @staticmethod
    def _require(args: Mapping[str, Any], *names: str) -> None:
        missing = [name for name in names if args.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required parameter(s): {', '.join(missing)}", fields=missing
            )


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _clean(params: Mapping[str, Any]) -> dict[str, Any]:
    """Drop ``None`` values and render booleans the way the APIs expect."""
    cleaned: dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        cleaned[key] = value
    return cleaned
