import asyncio
from datetime import datetime, timedelta, timezone

from frontdesk.services.mute_service import MuteRegistry, mute_key
from frontdesk.services.storage import InMemoryKeyValueStore

CHAT = "79991234567@c.us"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


class TestMute:
    def test_timed_mute_expires(self):
        clock = FakeClock()
        registry = MuteRegistry(InMemoryKeyValueStore(), clock=clock)

        asyncio.run(registry.mute(CHAT, timedelta(hours=1), reason="admin_command"))
        assert asyncio.run(registry.is_muted(CHAT)) is True

        clock.advance(hours=1)
        assert asyncio.run(registry.is_muted(CHAT)) is False

    def test_indefinite_mute(self):
        clock = FakeClock()
        registry = MuteRegistry(InMemoryKeyValueStore(), clock=clock)

        entry = asyncio.run(registry.mute(CHAT))
        clock.advance(days=365)

        assert entry.until is None
        assert asyncio.run(registry.is_muted(CHAT)) is True

    def test_unmute(self):
        registry = MuteRegistry(InMemoryKeyValueStore())

        asyncio.run(registry.mute(CHAT, timedelta(hours=2)))

        assert asyncio.run(registry.unmute(CHAT)) is True
        assert asyncio.run(registry.is_muted(CHAT)) is False
        assert asyncio.run(registry.unmute(CHAT)) is False

    def test_mute_survives_restart(self):
        storage = InMemoryKeyValueStore()
        asyncio.run(MuteRegistry(storage).mute(CHAT, reason="admin_ticket"))

        entry = asyncio.run(MuteRegistry(storage).get(CHAT))

        assert entry is not None
        assert entry.reason == "admin_ticket"

    def test_expired_entry_removed_from_storage_on_read(self):
        clock = FakeClock()
        storage = InMemoryKeyValueStore()
        registry = MuteRegistry(storage, clock=clock)

        asyncio.run(registry.mute(CHAT, timedelta(minutes=5)))
        clock.advance(minutes=6)
        asyncio.run(registry.get(CHAT))

        assert asyncio.run(storage.get(mute_key(CHAT))) is None

    def test_lookups_do_not_accumulate_locks(self):
        registry = MuteRegistry(InMemoryKeyValueStore(), clock=FakeClock())

        async def scenario():
            for index in range(20):
                await registry.is_muted(f"7999000{index:04d}@c.us")
            await registry.mute(CHAT)
            await registry.unmute(CHAT)

        asyncio.run(scenario())
        assert len(registry._locks) == 0


class TestSweep:
    def test_sweep_removes_only_expired(self):
        clock = FakeClock()
        registry = MuteRegistry(InMemoryKeyValueStore(), clock=clock)

        async def scenario():
            await registry.mute("1@c.us", timedelta(minutes=5))
            await registry.mute("2@c.us", timedelta(days=1))
            await registry.mute("3@c.us")
            clock.advance(minutes=10)
            removed = await registry.sweep()
            return removed, [entry.conversation_id for entry in await registry.list_active()]

        removed, active = asyncio.run(scenario())
        assert removed == 1
        assert active == ["2@c.us", "3@c.us"]

    def test_sweep_sees_entries_written_by_other_instance(self):
        clock = FakeClock()
        storage = InMemoryKeyValueStore()
        asyncio.run(MuteRegistry(storage, clock=clock).mute(CHAT, timedelta(minutes=1)))
        clock.advance(minutes=2)

        assert asyncio.run(MuteRegistry(storage, clock=clock).sweep()) == 1
