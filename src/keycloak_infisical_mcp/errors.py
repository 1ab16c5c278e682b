"""Error taxonomy and the tagged result type shared by every layer.

Pattern: Result, not Exception, at the dispatch boundary
---------------------------------------------------------
Backend clients and the cross-service automation return an
``OperationResult`` for every *expected* failure (bad parameters, remote
rejection, network trouble, token exchange failure).  Callers branch on
``result.ok`` instead of wrapping every call in ``try``/``except``.

Exceptions are still raised for conditions the caller cannot recover from at
that level: asking for a capability the session does not have
(``UnknownCapability``), touching a destroyed session (``SessionNotFound``),
or a broken catalogue at startup (``CatalogError``).
"""

from __future__ import annotations

import dataclasses
from typing import Any


class ServerError(Exception):
    """Base class for every error this server reports to a client."""

    code = "SERVER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "code": self.code, "message": self.message}


class AuthError(ServerError):
    """Raised when a token exchange or renewal fails."""

    code = "AUTH_FAILED"

    def __init__(self, backend: str, cause: str, status_code: int | None = None) -> None:
        super().__init__(f"Authentication with {backend} failed: {cause}")
        self.backend = backend
        self.cause = cause
        self.status_code = status_code

    @property
    def is_rejection(self) -> bool:
        """True when the remote service refused the credential itself."""
        return self.status_code in (401, 403)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["backend"] = self.backend
        return data


class ValidationError(ServerError):
    """Missing or malformed parameters.  No remote call was attempted."""

    code = "INVALID_PARAMS"

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.fields:
            data["fields"] = self.fields
        return data


class BackendUnavailable(ServerError):
    """Network failure or timeout talking to a remote API."""

    code = "BACKEND_UNAVAILABLE"

    def __init__(self, backend: str, cause: str) -> None:
        super().__init__(f"{backend} is unavailable: {cause}")
        self.backend = backend
        self.cause = cause


class RemoteRejected(ServerError):
    """The remote API answered with a non-2xx status."""

    code = "REMOTE_REJECTED"

    def __init__(self, backend: str, status_code: int, body: Any) -> None:
        super().__init__(f"{backend} rejected the request (HTTP {status_code}): {_describe(body)}")
        self.backend = backend
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["backend"] = self.backend
        data["status"] = self.status_code
        data["body"] = self.body
        return data


class UnknownCapability(ServerError):
    """The requested tool or resource is not available in this session."""

    code = "UNKNOWN_CAPABILITY"

    def __init__(self, name: str) -> None:
        super().__init__(f"Capability '{name}' is not available in this session")
        self.name = name


class SessionNotFound(ServerError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id


class InternalError(ServerError):
    """An unexpected exception caught at the dispatch boundary."""

    code = "INTERNAL_ERROR"


class CatalogError(ServerError):
    """A capability descriptor points at a handler that does not exist."""

    code = "CATALOG_ERROR"


def _describe(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("errorMessage", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    text = str(body) if body is not None else ""
    return text[:500] or "<empty body>"


@dataclasses.dataclass(frozen=True)
class OperationResult:
    """Outcome of one backend or automation operation.

    Attributes:
        ok:      ``True`` on success.
        payload: Remote JSON body, passed through unchanged (``None`` for
                 empty bodies).
        summary: Short human-readable confirmation for display.
        error:   The ``ServerError`` describing a failure; ``None`` on success.
    """

    ok: bool
    payload: Any = None
    summary: str = ""
    error: ServerError | None = None

    @classmethod
    def success(cls, payload: Any = None, summary: str = "") -> OperationResult:
        return cls(ok=True, payload=payload, summary=summary)

    @classmethod
    def failure(cls, error: ServerError) -> OperationResult:
        return cls(ok=False, summary=error.message, error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"result": self.payload, "summary": self.summary}
        assert self.error is not None
        return {"error": self.error.to_dict()}
