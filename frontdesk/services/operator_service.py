import asyncio
import hashlib
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import assistant_turn
from frontdesk.services.conversation_service import SessionRegistry
from frontdesk.services.conversation_store import ConversationStore
from frontdesk.services.debounce_service import Debouncer

logger = get_logger("operator_service")


def fingerprint(destination: str, body: str) -> str:
    raw = f"{destination}\n{(body or '').strip()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class FingerprintCache:
    """Short-lived record of messages the bot itself sent.

    Each entry expires on its own after ``ttl_seconds``; identical messages
    sent twice are counted separately.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, List[float]] = {}

    def record(self, destination: str, body: str) -> str:
        key = fingerprint(destination, body)
        self._entries.setdefault(key, []).append(self.clock() + self.ttl_seconds)
        return key

    def consume(self, destination: str, body: str) -> bool:
        """Remove one live matching entry. Returns True if there was one."""
        key = fingerprint(destination, body)
        now = self.clock()
        expiries = [expiry for expiry in self._entries.get(key, []) if expiry > now]
        if not expiries:
            self._entries.pop(key, None)
            return False
        expiries.pop(0)
        if expiries:
            self._entries[key] = expiries
        else:
            self._entries.pop(key, None)
        return True

    def purge(self) -> int:
        now = self.clock()
        removed = 0
        for key in list(self._entries):
            live = [expiry for expiry in self._entries[key] if expiry > now]
            removed += len(self._entries[key]) - len(live)
            if live:
                self._entries[key] = live
            else:
                del self._entries[key]
        return removed

    def __len__(self) -> int:
        return sum(len(expiries) for expiries in self._entries.values())


class OperatorArbiter:
    """Tells the bot's own echoes apart from a human typing on the bot's account."""

    def __init__(
        self,
        fingerprints: FingerprintCache,
        debouncer: Debouncer,
        sessions: SessionRegistry,
        store: ConversationStore,
        *,
        grace_seconds: float,
        poll_seconds: float,
        sleep_func: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.fingerprints = fingerprints
        self.debouncer = debouncer
        self.sessions = sessions
        self.store = store
        self.grace_seconds = grace_seconds
        self.poll_seconds = poll_seconds
        self.sleep_func = sleep_func or asyncio.sleep

    async def is_own_echo(self, destination: str, body: str) -> bool:
        """Wait up to the grace window for the send-side fingerprint to show up."""
        waited = 0.0
        while True:
            if self.fingerprints.consume(destination, body):
                return True
            if waited >= self.grace_seconds or self.poll_seconds <= 0:
                return False
            await self.sleep_func(self.poll_seconds)
            waited += self.poll_seconds

    def preempt(self, conversation_id: str) -> dict:
        """Cancel everything the bot had pending for the conversation."""
        discarded = self.debouncer.cancel(conversation_id)
        abandoned = self.sessions.interrupt(conversation_id)
        return {"discarded": discarded, "abandoned": abandoned}

    async def take_over(self, conversation_id: str, body: str) -> dict:
        outcome = self.preempt(conversation_id)
        if body:
            await self.store.append(conversation_id, assistant_turn(body, operator=True))
        logger.info(
            "Operator took over",
            extra={"context": {"conversation_id": conversation_id, **outcome}},
        )
        return outcome

    async def handle_outgoing(self, conversation_id: str, body: str, content: Optional[str] = None) -> bool:
        """Returns True when the message came from a human operator.

        ``content`` is what goes into history when it differs from the raw
        body (media placeholders).
        """
        if await self.is_own_echo(conversation_id, body):
            return False
        await self.take_over(conversation_id, content if content is not None else body)
        return True
