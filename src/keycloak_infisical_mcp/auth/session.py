"""Session: one client connection's private set of brokers and clients.

Pattern: Session Context Propagation
-------------------------------------
A ``Session`` is created when a client completes the protocol handshake (or
once at startup for stdio) and is threaded through every dispatch.  It owns
its own token brokers, backend clients and automation instance; nothing in it
is shared with another session, so one connection can never present another
connection's token.

The component set is fixed at creation.  What changes over the session's
lifetime is only its in-flight bookkeeping: ``operation()`` admits work until
``close()`` starts, after which new work is refused while work already
running is allowed to finish.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import datetime
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator

from keycloak_infisical_mcp.errors import SessionNotFound

if TYPE_CHECKING:
    from keycloak_infisical_mcp.auth.token_broker import TokenBroker
    from keycloak_infisical_mcp.backends.infisical import InfisicalClient
    from keycloak_infisical_mcp.backends.keycloak import KeycloakClient
    from keycloak_infisical_mcp.integration.automation import CrossServiceAutomation

logger = logging.getLogger(__name__)

KEYCLOAK = "keycloak"
INFISICAL = "infisical"
INTEGRATION = "integration"


@dataclasses.dataclass(eq=False)
class Session:
    """Per-connection component set.

    Attributes:
        session_id:       Opaque, unique identifier.
        created_at:       UTC timestamp of creation.
        keycloak_broker:  Token broker for Keycloak, if configured.
        infisical_broker: Token broker for Infisical, if configured.
        keycloak:         Keycloak client wrapping ``keycloak_broker``.
        infisical:        Infisical client wrapping ``infisical_broker``.
        automation:       Cross-service automation, present only when both
                          backends are configured.
    """

    session_id: str
    created_at: datetime.datetime
    keycloak_broker: TokenBroker | None = None
    infisical_broker: TokenBroker | None = None
    keycloak: KeycloakClient | None = None
    infisical: InfisicalClient | None = None
    automation: CrossServiceAutomation | None = None

    _closing: bool = dataclasses.field(default=False, init=False, repr=False)
    _inflight: int = dataclasses.field(default=0, init=False, repr=False)
    _idle: asyncio.Event = dataclasses.field(default_factory=asyncio.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        self._idle.set()

    @property
    def backends(self) -> frozenset[str]:
        """Names of the components this session can dispatch to."""
        present = set()
        if self.keycloak is not None:
            present.add(KEYCLOAK)
        if self.infisical is not None:
            present.add(INFISICAL)
        if self.automation is not None:
            present.add(INTEGRATION)
        return frozenset(present)

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def inflight(self) -> int:
        return self._inflight

    def component(self, name: str) -> Any:
        target = {KEYCLOAK: self.keycloak, INFISICAL: self.infisical, INTEGRATION: self.automation}.get(name)
        if target is None:
            raise LookupError(f"Session {self.session_id} has no '{name}' component")
        return target

    @contextlib.asynccontextmanager
    async def operation(self) -> AsyncIterator[Session]:
        """Admit one operation; refuse once ``close()`` has started."""
        if self._closing:
            raise SessionNotFound(self.session_id)
        self._inflight += 1
        self._idle.clear()
        try:
            yield self
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    async def close(self) -> None:
        """Stop admitting work, wait for in-flight work, release components."""
        if self._closing:
            return
        self._closing = True
        await self._idle.wait()
        if self.automation is not None:
            await self.automation.drain()
        for client in (self.keycloak, self.infisical):
            if client is not None:
                await client.aclose()
        logger.info("[%s] Session closed", self.session_id)

    def __str__(self) -> str:
        return f"Session(id={self.session_id}, backends={sorted(self.backends)}, closing={self._closing})"
