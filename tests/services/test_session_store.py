# tests/services/test_session_store.py
"""
Unit tests for the TTL-backed session store.
"""
import asyncio
import json

import pytest

from src.core.exceptions import NotFoundError, SessionFullError, StorageConflictError
from src.models.session import Participant, SessionRecord
from src.services.session_store import (
    InMemorySessionBackend,
    SessionBackend,
    SessionStore,
    session_key
)

SESSION_ID = "s" * 43


def make_record(store, session_id=SESSION_ID, **overrides) -> SessionRecord:
    now = store.now_ms()
    data = dict(
        id=session_id,
        created_at=now,
        expires_at=store.expiry_for(now),
        leader_name="Ada",
        leader_id="leader-1",
        participants=[Participant(id="leader-1", name="Ada")],
    )
    data.update(overrides)
    return SessionRecord(**data)


class TestGetSet:

    async def test_get_after_set(self, session_store):
        record = make_record(session_store)
        await session_store.set(SESSION_ID, record)

        loaded = await session_store.get(SESSION_ID)
        assert loaded == record

    async def test_stored_as_camel_case_json(self, session_store, session_backend):
        await session_store.set(SESSION_ID, make_record(session_store))

        raw = json.loads(await session_backend.get(session_key(SESSION_ID)))
        assert raw["leaderName"] == "Ada"
        assert "passwordHash" not in raw  # None fields omitted

    async def test_missing_session_is_none(self, session_store):
        assert await session_store.get(SESSION_ID) is None
        assert not await session_store.exists(SESSION_ID)

    async def test_expires_after_ttl(self, session_store, clock):
        await session_store.set(SESSION_ID, make_record(session_store), ttl=60)

        clock.advance(59)
        assert await session_store.get(SESSION_ID) is not None

        clock.advance(1)
        assert await session_store.get(SESSION_ID) is None

    async def test_unreadable_record_reads_as_absent(self, session_store, session_backend):
        await session_backend.set(session_key(SESSION_ID), '{"id": 1}', 60)
        assert await session_store.get(SESSION_ID) is None

    async def test_delete(self, session_store):
        await session_store.set(SESSION_ID, make_record(session_store))

        assert await session_store.delete(SESSION_ID) is True
        assert await session_store.get(SESSION_ID) is None
        assert await session_store.delete(SESSION_ID) is False

    async def test_purge_expired(self, session_store, session_backend, clock):
        await session_store.set(SESSION_ID, make_record(session_store), ttl=10)
        await session_store.set("t" * 43, make_record(session_store, "t" * 43), ttl=100)

        clock.advance(20)
        assert session_backend.purge_expired() == 1

    async def test_writes_purge_entries_never_read_again(self, session_backend, clock):
        for i in range(50):
            await session_backend.set(f"verification:code:{i}", "{}", 300)
        assert len(session_backend) == 50

        clock.advance(60 * 60)
        await session_backend.set(session_key(SESSION_ID), "{}", 300)

        assert len(session_backend) == 1

    async def test_purge_waits_for_interval(self, clock):
        backend = InMemorySessionBackend(clock, purge_interval=600)
        await backend.set("a", "{}", 10)

        clock.advance(300)
        await backend.set("b", "{}", 10)
        assert len(backend) == 2

        clock.advance(300)
        await backend.set("c", "{}", 10)
        assert len(backend) == 1

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            SessionStore(ttl_policy="forever")


class TestUpdate:

    async def test_id_and_created_at_are_pinned(self, session_store):
        record = make_record(session_store)
        await session_store.set(SESSION_ID, record)

        updated = await session_store.update(SESSION_ID, {
            "id": "hijacked",
            "createdAt": 1,
            "created_at": 2,
            "leaderName": "Grace",
        })

        assert updated.id == SESSION_ID
        assert updated.created_at == record.created_at
        assert updated.leader_name == "Grace"
        assert (await session_store.get(SESSION_ID)).id == SESSION_ID

    async def test_mutator_cannot_move_pinned_fields(self, session_store):
        record = make_record(session_store)
        await session_store.set(SESSION_ID, record)

        def rewrite(r):
            r.id = "other"
            r.created_at = 0
            r.summary = "done"
            return r

        updated = await session_store.update(SESSION_ID, mutate=rewrite)
        assert (updated.id, updated.created_at, updated.summary) == (SESSION_ID, record.created_at, "done")

    async def test_version_increments(self, session_store):
        await session_store.set(SESSION_ID, make_record(session_store))

        first = await session_store.update(SESSION_ID, {"summary": "a"})
        second = await session_store.update(SESSION_ID, {"summary": "b"})

        assert (first.version, second.version) == (1, 2)

    async def test_unknown_field_rejected(self, session_store):
        await session_store.set(SESSION_ID, make_record(session_store))
        with pytest.raises(ValueError):
            await session_store.update(SESSION_ID, {"isAdmin": True})

    async def test_missing_session_raises(self, session_store):
        with pytest.raises(NotFoundError):
            await session_store.update(SESSION_ID, {"summary": "x"})

    async def test_fixed_policy_keeps_original_expiry(self, session_store, session_backend, clock):
        record = make_record(session_store)
        await session_store.set(SESSION_ID, record)

        clock.advance(60 * 60)
        updated = await session_store.update(SESSION_ID, {"summary": "x"})
        assert updated.expires_at == record.expires_at

        clock.advance(3 * 60 * 60 - 1)
        assert await session_store.get(SESSION_ID) is not None
        clock.advance(1)
        assert await session_store.get(SESSION_ID) is None

    async def test_sliding_policy_extends_expiry(self, session_backend, clock):
        store = SessionStore(backend=session_backend, ttl_seconds=600, ttl_policy="sliding", clock=clock)
        record = make_record(store)
        await store.set(SESSION_ID, record)

        clock.advance(500)
        updated = await store.update(SESSION_ID, {"summary": "x"})
        assert updated.expires_at == record.expires_at + 500 * 1000

        clock.advance(500)
        assert await store.get(SESSION_ID) is not None

    async def test_concurrent_appends_are_not_lost(self, session_store):
        """Two joins racing on the same session both land"""
        await session_store.set(SESSION_ID, make_record(session_store))

        await asyncio.gather(*[
            session_store.append_participant(SESSION_ID, Participant(id=f"p{i}", name=f"Member {i}"))
            for i in range(10)
        ])

        record = await session_store.get(SESSION_ID)
        assert len(record.participants) == 11
        assert record.version == 10

    async def test_append_check_sees_fresh_record(self, session_store):
        await session_store.set(SESSION_ID, make_record(session_store))

        def capacity_two(record):
            if len(record.participants) >= 2:
                raise SessionFullError("Session is full")

        results = await asyncio.gather(*[
            session_store.append_participant(SESSION_ID, Participant(id=f"p{i}", name=f"M{i}"), capacity_two)
            for i in range(3)
        ], return_exceptions=True)

        assert sum(1 for r in results if isinstance(r, SessionFullError)) == 2
        assert len((await session_store.get(SESSION_ID)).participants) == 2


class AlwaysConflictingBackend(InMemorySessionBackend):
    """Another writer always gets in first"""

    async def compare_and_set(self, key, expected, value, ttl):
        return False


class InterleavingBackend(InMemorySessionBackend):
    """Sneaks one foreign write in between the first read and write"""

    def __init__(self, clock):
        super().__init__(clock)
        self.interfered = False

    async def compare_and_set(self, key, expected, value, ttl):
        if not self.interfered:
            self.interfered = True
            record = SessionRecord.from_json(expected)
            record.participants.append(Participant(id="sneaky", name="Sneaky"))
            record.version += 1
            await self.set(key, record.to_json(), ttl)
        return await super().compare_and_set(key, expected, value, ttl)


class TestConflicts:

    async def test_retry_keeps_foreign_write(self, clock):
        store = SessionStore(backend=InterleavingBackend(clock), ttl_seconds=600, ttl_policy="fixed", clock=clock)
        await store.set(SESSION_ID, make_record(store))

        await store.append_participant(SESSION_ID, Participant(id="mine", name="Mine"))

        ids = [p.id for p in (await store.get(SESSION_ID)).participants]
        assert ids == ["leader-1", "sneaky", "mine"]

    async def test_gives_up_after_max_retries(self, clock):
        store = SessionStore(
            backend=AlwaysConflictingBackend(clock), ttl_seconds=600, ttl_policy="fixed",
            clock=clock, max_retries=3
        )
        await store.set(SESSION_ID, make_record(store))

        with pytest.raises(StorageConflictError):
            await store.update(SESSION_ID, {"summary": "x"})

    def test_backend_is_abstract(self):
        with pytest.raises(TypeError):
            SessionBackend()
