import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set

from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import Turn
from frontdesk.services.conversation_service import ConversationSession, PendingBatch, PendingItem, SessionRegistry

logger = get_logger("debounce_service")

BatchHandler = Callable[[ConversationSession, List[PendingItem], int], Awaitable[None]]


class Debouncer:
    """Per-conversation quiet-period batching.

    Every enqueue re-arms the conversation's single timer. When the timer
    fires the batch is detached from the session before any await, then
    handed to ``handler`` under the session's processing lock so two passes
    for one conversation never overlap. The handler also gets the session
    generation seen at fire time, so it can tell if it was interrupted while
    waiting for the lock. ``cancel`` drops timer and queue in one
    synchronous step.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        handler: BatchHandler,
        quiet_seconds: float,
        sleep_func: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.sessions = sessions
        self.handler = handler
        self.quiet_seconds = quiet_seconds
        self.sleep_func = sleep_func or asyncio.sleep
        self._tasks: Set[asyncio.Task] = set()

    def enqueue(self, conversation_id: str, turn: Turn, handle: Any = None) -> int:
        """Buffer a turn and (re)arm the timer. Returns the queue length."""
        session = self.sessions.get(conversation_id)
        batch = session.batch
        if batch is None:
            batch = PendingBatch()
            session.batch = batch
        batch.items.append(PendingItem(turn=turn, handle=handle))
        batch.cancel_timer()

        task = asyncio.create_task(self._fire_later(conversation_id, batch))
        batch.timer = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.debug(
            "Batch timer armed",
            extra={"context": {"conversation_id": conversation_id, "queued": len(batch.items)}},
        )
        return len(batch.items)

    def cancel(self, conversation_id: str) -> int:
        """Disarm the timer and discard the queue. Returns discarded item count."""
        session = self.sessions.peek(conversation_id)
        if session is None or session.batch is None:
            return 0
        batch = session.batch
        session.batch = None
        batch.cancel_timer()
        logger.info(
            "Batch cancelled",
            extra={"context": {"conversation_id": conversation_id, "discarded": len(batch.items)}},
        )
        return len(batch.items)

    def pending_count(self, conversation_id: str) -> int:
        session = self.sessions.peek(conversation_id)
        if session is None or session.batch is None:
            return 0
        return len(session.batch.items)

    async def _fire_later(self, conversation_id: str, batch: PendingBatch) -> None:
        try:
            await self.sleep_func(self.quiet_seconds)
        except asyncio.CancelledError:
            return

        session = self.sessions.peek(conversation_id)
        if session is None or session.batch is not batch:
            return
        session.batch = None
        batch.timer = None
        items = list(batch.items)
        generation = session.generation

        async with session.processing_lock:
            logger.info(
                "Batch fired",
                extra={"context": {"conversation_id": conversation_id, "items": len(items)}},
            )
            try:
                await self.handler(session, items, generation)
            except Exception as exc:
                logger.exception(
                    "Batch handler failed",
                    extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                )

    async def drain(self) -> None:
        """Wait until every armed timer has fired and its pass has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
