# chat_relay/collaborators.py
"""
Interfaces to the services the relay consults but does not own.

Identity, credits and transcript storage live elsewhere in the product; the
relay only calls them through these protocols. The defaults allow every
request and store nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    """The caller a relay session is billed to."""
    user_id: str
    plan: str = "free"
    claims: dict[str, Any] = field(default_factory=dict)


ANONYMOUS = Identity(user_id="anonymous")


class IdentityVerifier(Protocol):
    """
    Resolves the bearer credential of an inbound request.
    """

    async def verify(self, token: str | None) -> Identity | None:
        """
        Return the identity for ``token``, or None when it is not valid.
        """
        ...


class CreditLedger(Protocol):
    """
    Pre-flight credit checks and post-session debits.
    """

    async def has_credit(self, identity: Identity, model: str) -> bool:
        """
        Whether ``identity`` may start a session on ``model``.
        """
        ...

    async def debit(
        self, identity: Identity, model: str, usage: dict[str, Any]
    ) -> None:
        """
        Charge a finished session. ``usage`` carries content length and timing.
        """
        ...


class TranscriptStore(Protocol):
    """
    Persists completed exchanges.
    """

    async def save(
        self,
        identity: Identity,
        conversation_id: str,
        messages: list[dict[str, Any]],
        reply: str,
        thinking: str,
    ) -> None:
        ...


class AllowAllIdentity:
    async def verify(self, token: str | None) -> Identity | None:
        return ANONYMOUS


class UnmeteredLedger:
    async def has_credit(self, identity: Identity, model: str) -> bool:
        return True

    async def debit(
        self, identity: Identity, model: str, usage: dict[str, Any]
    ) -> None:
        logger.debug("credits.debit_skipped", user_id=identity.user_id, model=model)


class NullTranscriptStore:
    async def save(
        self,
        identity: Identity,
        conversation_id: str,
        messages: list[dict[str, Any]],
        reply: str,
        thinking: str,
    ) -> None:
        return None


class AuthenticationError(Exception):
    """The request carried no valid credential."""
