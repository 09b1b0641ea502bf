from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import Turn, summary_turn
from frontdesk.services.storage import KeyedLocks, KeyValueStore

logger = get_logger("conversation_store")

HISTORY_PREFIX = "history:"

Summarizer = Callable[[List[Turn]], Awaitable[str]]


def history_key(conversation_id: str) -> str:
    return f"{HISTORY_PREFIX}{conversation_id}"


class ConversationStore:
    """Ordered turn log per conversation, cached in memory and persisted per key.

    Writes go through a per-conversation lock so interleaved handlers for the
    same chat never lose an append. Persistence errors are logged and the
    in-memory copy keeps serving.
    """

    def __init__(self, storage: KeyValueStore, *, max_turns: int = 50, keep_recent: int = 10):
        if keep_recent >= max_turns:
            raise ValueError("keep_recent must be smaller than max_turns")
        self.storage = storage
        self.max_turns = max_turns
        self.keep_recent = keep_recent
        self._cache: Dict[str, List[Turn]] = {}
        self._unsaved: Set[str] = set()
        self._locks = KeyedLocks()

    async def _load(self, conversation_id: str) -> List[Turn]:
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached

        turns: List[Turn] = []
        try:
            raw = await self.storage.get(history_key(conversation_id))
        except Exception as exc:
            logger.error(
                "History load failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            raw = None

        for item in raw or []:
            try:
                turns.append(Turn.from_record(item))
            except Exception as exc:
                logger.warning(
                    "Skipping malformed turn",
                    extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                )
        self._cache[conversation_id] = turns
        return turns

    async def _save(self, conversation_id: str, turns: List[Turn]) -> None:
        self._cache[conversation_id] = turns
        try:
            if turns:
                await self.storage.put(history_key(conversation_id), [turn.to_record() for turn in turns])
            else:
                await self.storage.delete(history_key(conversation_id))
        except Exception as exc:
            self._unsaved.add(conversation_id)
            logger.error(
                "History save failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
        else:
            self._unsaved.discard(conversation_id)

    async def read(self, conversation_id: str) -> List[Turn]:
        async with self._locks.lock(conversation_id):
            return list(await self._load(conversation_id))

    async def append(self, conversation_id: str, *turns: Turn) -> int:
        """Append turns in the given order. Returns the new history length."""
        async with self._locks.lock(conversation_id):
            history = list(await self._load(conversation_id))
            history.extend(turns)
            await self._save(conversation_id, history)
            return len(history)

    async def replace(self, conversation_id: str, turns: Iterable[Turn]) -> None:
        async with self._locks.lock(conversation_id):
            await self._save(conversation_id, list(turns))

    async def delete(self, conversation_id: str) -> None:
        async with self._locks.lock(conversation_id):
            self._cache.pop(conversation_id, None)
            self._unsaved.discard(conversation_id)
            try:
                await self.storage.delete(history_key(conversation_id))
            except Exception as exc:
                logger.error(
                    "History delete failed",
                    extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                )

    def evict(self, keep: Iterable[str] = ()) -> int:
        """Drop cached histories outside ``keep``. Returns how many were dropped.

        Histories that are locked or whose last save failed stay cached; the
        stored copy is reloaded on next access.
        """
        keep = set(keep)
        cold = [
            key
            for key in self._cache
            if key not in keep and key not in self._unsaved and not self._locks.in_use(key)
        ]
        for key in cold:
            del self._cache[key]
        return len(cold)

    async def list_conversations(self) -> List[str]:
        try:
            keys = await self.storage.list_keys(HISTORY_PREFIX)
        except Exception as exc:
            logger.error("History listing failed", extra={"context": {"error": str(exc)}})
            keys = []
        stored = {key[len(HISTORY_PREFIX):] for key in keys}
        cached = {key for key, turns in self._cache.items() if turns}
        return sorted(stored | cached)

    def needs_compaction(self, length: int) -> bool:
        return length > self.max_turns

    async def compact(self, conversation_id: str, summarizer: Summarizer) -> bool:
        """Replace everything but the last ``keep_recent`` turns with one summary turn.

        Returns True when the history was rewritten. On summarizer failure the
        history stays as it was.
        """
        async with self._locks.lock(conversation_id):
            history = list(await self._load(conversation_id))
            if not self.needs_compaction(len(history)):
                return False

            prefix = history[: -self.keep_recent]
            recent = history[-self.keep_recent :]
            logger.info(
                "Summarizing history",
                extra={"context": {"conversation_id": conversation_id, "turns": len(history)}},
            )
            try:
                summary = await summarizer(prefix)
            except Exception as exc:
                logger.error(
                    "History summarization failed",
                    extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                )
                return False

            await self._save(conversation_id, [summary_turn(summary)] + recent)
            return True

    async def stats(self) -> dict:
        conversation_ids = await self.list_conversations()
        total_turns = 0
        for conversation_id in conversation_ids:
            total_turns += len(await self.read(conversation_id))
        total = len(conversation_ids)
        return {
            "total_chats": total,
            "chats_in_memory": len(self._cache),
            "total_turns": total_turns,
            "average_turns_per_chat": round(total_turns / total) if total else 0,
        }

    async def migrate_legacy(self, histories: Optional[dict]) -> int:
        """Import a legacy ``{chat_id: [turn, ...]}`` dump. Returns migrated chat count."""
        migrated = 0
        for conversation_id, raw_turns in (histories or {}).items():
            if not isinstance(raw_turns, list) or not raw_turns:
                continue
            turns = []
            for item in raw_turns:
                if not isinstance(item, dict) or not item.get("content"):
                    continue
                try:
                    turns.append(Turn.from_record(item))
                except Exception as exc:
                    logger.warning(
                        "Skipping legacy turn",
                        extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                    )
            if turns:
                await self.replace(conversation_id, turns)
                migrated += 1
        logger.info("Legacy history migrated", extra={"context": {"migrated": migrated}})
        return migrated
