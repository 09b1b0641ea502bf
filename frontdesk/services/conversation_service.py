import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import Turn, utcnow
from frontdesk.schemas.ticket import DedupRecord, PendingTicketConfirmation, ResidentIdentity
from frontdesk.services import state_machine
from frontdesk.services.state_machine import TicketState

logger = get_logger("conversation_service")


@dataclass
class PendingItem:
    turn: Turn
    handle: Any = None


@dataclass
class PendingBatch:
    items: List[PendingItem] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None

    def cancel_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None


@dataclass
class ConversationSession:
    """Everything ephemeral the pipeline keeps for one conversation."""

    conversation_id: str
    state: TicketState = TicketState.NONE
    pending: Optional[PendingTicketConfirmation] = None
    dedup: List[DedupRecord] = field(default_factory=list)
    identity: Optional[ResidentIdentity] = None
    identity_expires_at: Optional[datetime] = None
    batch: Optional[PendingBatch] = None
    generation: int = 0
    processing_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def advance(self, step: Callable[[TicketState], TicketState]) -> TicketState:
        self.state = step(self.state)
        return self.state

    def propose(self, pending: PendingTicketConfirmation) -> None:
        self.advance(state_machine.propose)
        self.pending = pending

    def finish(self, step: Callable[[TicketState], TicketState]) -> TicketState:
        """Move a proposed ticket to a terminal state, then back to NONE.

        Returns the terminal state that was passed through.
        """
        terminal = self.advance(step)
        self.pending = None
        self.advance(state_machine.settle)
        return terminal

    def interrupt(self) -> bool:
        """Invalidate in-flight work. Returns True if a pending confirmation was abandoned."""
        self.generation += 1
        if self.state == TicketState.PROPOSED:
            self.finish(state_machine.abandon)
            return True
        return False

    def remember_identity(self, identity: ResidentIdentity, ttl_seconds: float, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.identity = identity
        self.identity_expires_at = now + timedelta(seconds=ttl_seconds)

    def cached_identity(self, now: Optional[datetime] = None) -> Optional[ResidentIdentity]:
        now = now or utcnow()
        if self.identity is None:
            return None
        if self.identity_expires_at is not None and self.identity_expires_at <= now:
            self.identity = None
            self.identity_expires_at = None
            return None
        return self.identity

    def recent_tickets(self, window_seconds: float, now: Optional[datetime] = None) -> List[DedupRecord]:
        now = now or utcnow()
        return [record for record in self.dedup if record.in_window(now, window_seconds)]

    def prune(self, *, window_seconds: float, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.dedup = self.recent_tickets(window_seconds, now)
        self.cached_identity(now)

    @property
    def is_idle(self) -> bool:
        return (
            self.state == TicketState.NONE
            and self.pending is None
            and self.batch is None
            and not self.dedup
            and self.identity is None
            and not self.processing_lock.locked()
        )


class SessionRegistry:
    """Conversation-keyed sessions, created lazily on first access."""

    def __init__(self):
        self._sessions: Dict[str, ConversationSession] = {}

    def get(self, conversation_id: str) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ConversationSession(conversation_id=conversation_id)
            self._sessions[conversation_id] = session
        return session

    def peek(self, conversation_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(conversation_id)

    def interrupt(self, conversation_id: str) -> bool:
        session = self._sessions.get(conversation_id)
        if session is None:
            return False
        abandoned = session.interrupt()
        if abandoned:
            logger.info(
                "Pending confirmation abandoned",
                extra={"context": {"conversation_id": conversation_id}},
            )
        return abandoned

    def reset(self, conversation_id: str) -> None:
        """Forget the session. In-flight work sees a bumped generation.

        Dispatched-ticket records move to the fresh session so a reset does
        not reopen the dedup window.
        """
        session = self._sessions.pop(conversation_id, None)
        if session is None:
            return
        session.interrupt()
        if session.batch is not None:
            session.batch.cancel_timer()
            session.batch = None
        if session.dedup:
            self.get(conversation_id).dedup = list(session.dedup)

    def prune_idle(self) -> int:
        idle = [key for key, session in self._sessions.items() if session.is_idle]
        for key in idle:
            del self._sessions[key]
        return len(idle)

    def __iter__(self) -> Iterator[ConversationSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions
