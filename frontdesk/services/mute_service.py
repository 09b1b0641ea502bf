from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from frontdesk.logging_config import get_logger
from frontdesk.schemas.conversation import MuteEntry, utcnow
from frontdesk.services.storage import KeyedLocks, KeyValueStore

logger = get_logger("mute_service")

MUTE_PREFIX = "mute:"

_MISSING = object()


def mute_key(conversation_id: str) -> str:
    return f"{MUTE_PREFIX}{conversation_id}"


class MuteRegistry:
    """Per-conversation reply suppression, persisted as one record per conversation.

    Expired entries are treated as absent and removed on the next access or
    by ``sweep``.
    """

    def __init__(self, storage: KeyValueStore, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock
        self._entries: Dict[str, Optional[MuteEntry]] = {}
        self._locks = KeyedLocks()

    async def _load(self, conversation_id: str) -> Optional[MuteEntry]:
        cached = self._entries.get(conversation_id, _MISSING)
        if cached is not _MISSING:
            return cached

        entry = None
        try:
            raw = await self.storage.get(mute_key(conversation_id))
            if raw:
                entry = MuteEntry.model_validate(raw)
        except Exception as exc:
            logger.error(
                "Mute load failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
        self._entries[conversation_id] = entry
        return entry

    async def _remove(self, conversation_id: str) -> None:
        self._entries[conversation_id] = None
        try:
            await self.storage.delete(mute_key(conversation_id))
        except Exception as exc:
            logger.error(
                "Mute delete failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )

    async def mute(
        self,
        conversation_id: str,
        duration: Optional[timedelta] = None,
        reason: Optional[str] = None,
    ) -> MuteEntry:
        """Mute for ``duration``; None means until explicitly unmuted."""
        until = self.clock() + duration if duration is not None else None
        entry = MuteEntry(conversation_id=conversation_id, until=until, reason=reason)
        async with self._locks.lock(conversation_id):
            self._entries[conversation_id] = entry
            try:
                await self.storage.put(mute_key(conversation_id), entry.model_dump(mode="json"))
            except Exception as exc:
                logger.error(
                    "Mute save failed",
                    extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                )
        logger.info(
            "Conversation muted",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "until": until.isoformat() if until else None,
                    "reason": reason,
                }
            },
        )
        return entry

    async def unmute(self, conversation_id: str) -> bool:
        """Returns True if an active mute was lifted."""
        async with self._locks.lock(conversation_id):
            entry = await self._load(conversation_id)
            was_active = entry is not None and entry.is_active(self.clock())
            if entry is not None:
                await self._remove(conversation_id)
        if was_active:
            logger.info("Conversation unmuted", extra={"context": {"conversation_id": conversation_id}})
        return was_active

    async def get(self, conversation_id: str) -> Optional[MuteEntry]:
        async with self._locks.lock(conversation_id):
            entry = await self._load(conversation_id)
            if entry is not None and not entry.is_active(self.clock()):
                await self._remove(conversation_id)
                return None
            return entry

    async def is_muted(self, conversation_id: str) -> bool:
        return await self.get(conversation_id) is not None

    async def _known_ids(self) -> set:
        try:
            keys = await self.storage.list_keys(MUTE_PREFIX)
        except Exception as exc:
            logger.error("Mute listing failed", extra={"context": {"error": str(exc)}})
            keys = []
        conversation_ids = {key[len(MUTE_PREFIX):] for key in keys}
        conversation_ids.update(key for key, entry in self._entries.items() if entry is not None)
        return conversation_ids

    async def list_active(self) -> List[MuteEntry]:
        conversation_ids = await self._known_ids()
        active = []
        for conversation_id in sorted(conversation_ids):
            entry = await self.get(conversation_id)
            if entry is not None:
                active.append(entry)
        return active

    async def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        conversation_ids = await self._known_ids()
        now = self.clock()
        removed = 0
        for conversation_id in conversation_ids:
            async with self._locks.lock(conversation_id):
                entry = await self._load(conversation_id)
                if entry is not None and not entry.is_active(now):
                    await self._remove(conversation_id)
                    removed += 1
        self._entries = {key: entry for key, entry in self._entries.items() if entry is not None}
        if removed:
            logger.info("Expired mutes swept", extra={"context": {"removed": removed}})
        return removed
