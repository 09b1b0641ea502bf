"""Key-value persistence for conversation records.

Every write replaces the whole record, so an interrupted process can lose
the latest update but never leaves a half-written record behind.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote, unquote

import redis.asyncio as redis_async

from frontdesk.database import Base, build_engine, build_session_factory
from frontdesk.logging_config import get_logger
from frontdesk.models import ConversationRecord

logger = get_logger("storage")


class KeyValueStore(ABC):
    """Durable key-value medium used by the conversation store and mute registry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def put(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self.data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value, ensure_ascii=False)

    async def delete(self, key: str) -> bool:
        return self.data.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self.data if key.startswith(prefix))


class FileKeyValueStore(KeyValueStore):
    """One JSON file per key inside ``base_dir``."""

    SUFFIX = ".json"

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.base_dir / f"{quote(key, safe='-_')}{self.SUFFIX}"

    def _read(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        payload = json.dumps(value, ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def _list(self, prefix: str) -> list[str]:
        keys = []
        for path in self.base_dir.glob(f"*{self.SUFFIX}"):
            if path.name.startswith(".tmp-"):
                continue
            key = unquote(path.name[: -len(self.SUFFIX)])
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list, prefix)


class RedisKeyValueStore(KeyValueStore):
    """JSON strings under ``namespace:`` in Redis."""

    def __init__(self, redis_client, namespace: str = "frontdesk"):
        self.redis = redis_client
        self.namespace = namespace

    @classmethod
    def from_url(cls, redis_url: str, namespace: str = "frontdesk", socket_timeout_seconds: float = 1.0):
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client, namespace=namespace)

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(self._full_key(key))
        return json.loads(raw) if raw else None

    async def put(self, key: str, value: Any) -> None:
        await self.redis.set(self._full_key(key), json.dumps(value, ensure_ascii=False))

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(self._full_key(key)))

    async def list_keys(self, prefix: str = "") -> list[str]:
        full_prefix = self._full_key(prefix)
        keys = []
        async for raw_key in self.redis.scan_iter(match=f"{full_prefix}*"):
            keys.append(raw_key[len(self.namespace) + 1 :])
        return sorted(keys)


class SqlKeyValueStore(KeyValueStore):
    """Records in the ``conversation_records`` table via SQLAlchemy."""

    def __init__(self, session_factory, namespace: str = ""):
        self.session_factory = session_factory
        self.namespace = namespace

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _short_key(self, full_key: str) -> str:
        return full_key[len(self.namespace) + 1 :] if self.namespace else full_key

    @classmethod
    def from_url(cls, database_url: str, namespace: str = "") -> "SqlKeyValueStore":
        engine = build_engine(database_url)
        Base.metadata.create_all(engine)
        return cls(build_session_factory(engine), namespace=namespace)

    def _get(self, key: str) -> Optional[Any]:
        db = self.session_factory()
        try:
            record = db.get(ConversationRecord, self._full_key(key))
            return record.value if record else None
        finally:
            db.close()

    def _put(self, key: str, value: Any) -> None:
        db = self.session_factory()
        try:
            db.merge(ConversationRecord(key=self._full_key(key), value=value, updated_at=datetime.now(timezone.utc)))
            db.commit()
        finally:
            db.close()

    def _delete(self, key: str) -> bool:
        db = self.session_factory()
        try:
            deleted = db.query(ConversationRecord).filter(ConversationRecord.key == self._full_key(key)).delete()
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def _list(self, prefix: str) -> list[str]:
        db = self.session_factory()
        try:
            rows = (
                db.query(ConversationRecord.key)
                .filter(ConversationRecord.key.startswith(self._full_key(prefix), autoescape=True))
                .order_by(ConversationRecord.key)
                .all()
            )
            return [self._short_key(row[0]) for row in rows]
        finally:
            db.close()

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._put, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list, prefix)


class KeyedLocks:
    """Per-key asyncio locks for read-modify-write sequences.

    A key's lock lives only while someone holds or waits for it, so the map
    stays as small as the number of keys in use.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def in_use(self, key: str) -> bool:
        return key in self._users

    def __len__(self) -> int:
        return len(self._locks)


def build_store(backend: str, *, history_dir: str, redis_url: str, database_url: str, namespace: str) -> KeyValueStore:
    backend = (backend or "file").strip().lower()
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "file":
        return FileKeyValueStore(Path(history_dir) / namespace)
    if backend == "redis":
        return RedisKeyValueStore.from_url(redis_url, namespace=f"frontdesk:{namespace}")
    if backend == "sql":
        return SqlKeyValueStore.from_url(database_url, namespace=namespace)
    raise ValueError(f"Unknown storage backend: {backend}")
