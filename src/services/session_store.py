# src/services/session_store.py
"""
TTL-backed persistence for standup sessions.

Records live under ``session:{id}`` as camelCase JSON. Reads cannot tell
an expired session from one that never existed.

Updates are conditional: the record is re-read, merged, and written back
only if nobody else wrote in between (compare-and-set on the raw value),
retrying a few times on conflict. Two concurrent joins therefore both land
instead of the second silently overwriting the first.

TTL policy:
- ``fixed``: every write re-persists with the time left until
  ``expires_at``, so a session ends exactly SESSION_TTL_SECONDS after creation
- ``sliding``: every update grants a fresh full window and moves ``expires_at``
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from src.core.config import settings
from src.core.exceptions import NotFoundError, StorageConflictError
from src.models.session import Participant, SessionRecord

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session"
TTL_POLICIES = ("fixed", "sliding")

# Fields an update may never touch
_PINNED_FIELDS = {"id", "created_at", "version"}

# Accept both snake_case names and camelCase aliases in partial updates
_FIELD_NAMES: Dict[str, str] = {}
for _name, _field in SessionRecord.model_fields.items():
    _FIELD_NAMES[_name] = _name
    if _field.alias:
        _FIELD_NAMES[_field.alias] = _name


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{session_id}"


class SessionBackend(ABC):
    """Raw string storage with expiry"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        pass

    @abstractmethod
    async def compare_and_set(self, key: str, expected: str, value: str, ttl: int) -> bool:
        """Write only if ``key`` still holds ``expected``"""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass


class InMemorySessionBackend(SessionBackend):
    """
    Single-process backend.

    Expiry is checked lazily on access, and writes purge every expired
    entry at most once per ``purge_interval`` seconds so keys that are never
    read again do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.time, purge_interval: float = 60.0):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.purge_interval = purge_interval
        self._last_purge = clock()

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key):
        with self._lock:
            return self._live(key)

    async def set(self, key, value, ttl):
        with self._lock:
            self._maybe_purge()
            self._data[key] = (value, self._clock() + ttl)

    async def compare_and_set(self, key, expected, value, ttl):
        with self._lock:
            if self._live(key) != expected:
                return False
            self._maybe_purge()
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def exists(self, key):
        with self._lock:
            return self._live(key) is not None

    async def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def _purge_locked(self) -> int:
        now = self._clock()
        self._last_purge = now
        stale = [k for k, (_, exp) in self._data.items() if now >= exp]
        for k in stale:
            del self._data[k]
        if stale:
            logger.debug(f"Purged {len(stale)} expired entries")
        return len(stale)

    def _maybe_purge(self) -> None:
        if self._clock() - self._last_purge >= self.purge_interval:
            self._purge_locked()

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def __len__(self) -> int:
        return len(self._data)


class RedisSessionBackend(SessionBackend):
    """Backend on top of RedisService; storage errors propagate unchanged"""

    def __init__(self, redis_service):
        self._redis = redis_service

    async def get(self, key):
        return await self._redis.get(key, deserialize_json=False)

    async def set(self, key, value, ttl):
        await self._redis.set(key, value, ttl=ttl, serialize_json=False)

    async def compare_and_set(self, key, expected, value, ttl):
        return await self._redis.compare_and_set(key, expected, value, ttl=ttl)

    async def exists(self, key):
        return await self._redis.exists(key) > 0

    async def delete(self, key):
        return await self._redis.delete(key) > 0


class SessionStore:
    """
    Session persistence with expiry and conditional updates.

    All methods may raise StorageError when the backend is unreachable;
    callers must treat that as "not written".
    """

    def __init__(
        self,
        backend: Optional[SessionBackend] = None,
        ttl_seconds: Optional[int] = None,
        ttl_policy: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        max_retries: int = 5
    ):
        self._clock = clock
        self.backend = backend or InMemorySessionBackend(clock)
        self.ttl_seconds = ttl_seconds or settings.SESSION_TTL_SECONDS
        self.ttl_policy = ttl_policy or settings.SESSION_TTL_POLICY
        self.max_retries = max_retries

        if self.ttl_policy not in TTL_POLICIES:
            raise ValueError(f"Unknown TTL policy '{self.ttl_policy}', expected one of {TTL_POLICIES}")

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def expiry_for(self, created_at_ms: int) -> int:
        """Absolute expiry (epoch ms) of a session created at ``created_at_ms``"""
        return created_at_ms + self.ttl_seconds * 1000

    def _parse(self, session_id: str, raw: str) -> Optional[SessionRecord]:
        try:
            return SessionRecord.from_json(raw)
        except PydanticValidationError:
            logger.error(f"Discarding unreadable record for session {session_id[:8]}...")
            return None

    async def set(self, session_id: str, record: SessionRecord, ttl: Optional[int] = None) -> None:
        """Unconditionally write ``record`` with a fresh expiry"""
        ttl = ttl or self.ttl_seconds
        await self.backend.set(session_key(session_id), record.to_json(), ttl)
        logger.debug(f"Stored session {session_id[:8]}... (ttl={ttl}s)")

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return the record, or None if absent or expired"""
        raw = await self.backend.get(session_key(session_id))
        if raw is None:
            return None
        return self._parse(session_id, raw)

    async def exists(self, session_id: str) -> bool:
        return await self.backend.exists(session_key(session_id))

    async def delete(self, session_id: str) -> bool:
        deleted = await self.backend.delete(session_key(session_id))
        if deleted:
            logger.info(f"🗑️ Deleted session {session_id[:8]}...")
        return deleted

    def _merge(self, current: SessionRecord, partial: Optional[Dict[str, Any]]) -> SessionRecord:
        data = current.model_dump()
        for key, value in (partial or {}).items():
            name = _FIELD_NAMES.get(key)
            if name is None:
                raise ValueError(f"Unknown session field '{key}'")
            if name in _PINNED_FIELDS:
                continue
            data[name] = value
        return SessionRecord.model_validate(data)

    def _next_ttl(self, record: SessionRecord, now_ms: int) -> Optional[int]:
        """TTL for re-persisting ``record``; None if a fixed lifetime is used up"""
        if self.ttl_policy == "sliding":
            record.expires_at = now_ms + self.ttl_seconds * 1000
            return self.ttl_seconds
        remaining_ms = record.expires_at - now_ms
        if remaining_ms <= 0:
            return None
        return max(1, math.ceil(remaining_ms / 1000))

    async def update(
        self,
        session_id: str,
        partial: Optional[Dict[str, Any]] = None,
        mutate: Optional[Callable[[SessionRecord], Optional[SessionRecord]]] = None
    ) -> SessionRecord:
        """
        Merge ``partial`` into the stored record and/or apply ``mutate``.

        ``id`` and ``created_at`` are preserved whatever ``partial`` says.
        ``mutate`` receives a fresh copy on every attempt and may raise to
        abort the update (e.g. a capacity check).

        Returns:
            The record as written

        Raises:
            NotFoundError: If the session is absent or expired
            StorageConflictError: If every attempt lost a race
        """
        key = session_key(session_id)

        for attempt in range(1, self.max_retries + 1):
            raw = await self.backend.get(key)
            current = self._parse(session_id, raw) if raw is not None else None
            if current is None:
                raise NotFoundError(session_id=session_id)

            updated = self._merge(current, partial)
            if mutate is not None:
                updated = mutate(updated) or updated

            # Re-pin in case mutate touched them
            updated.id = current.id
            updated.created_at = current.created_at
            updated.version = current.version + 1

            ttl = self._next_ttl(updated, self.now_ms())
            if ttl is None:
                raise NotFoundError(session_id=session_id)

            if await self.backend.compare_and_set(key, raw, updated.to_json(), ttl):
                return updated

            logger.info(f"Write conflict on session {session_id[:8]}... (attempt {attempt}/{self.max_retries})")

        raise StorageConflictError(
            f"Gave up updating session after {self.max_retries} conflicting attempts",
            key=key,
            operation="update"
        )

    async def append_participant(
        self,
        session_id: str,
        participant: Participant,
        check: Optional[Callable[[SessionRecord], None]] = None
    ) -> SessionRecord:
        """
        Add ``participant`` to the session's roster.

        ``check`` runs against the freshly read record on every attempt, so a
        capacity or duplicate-name rule holds even when joins race.
        """
        def add(record: SessionRecord) -> SessionRecord:
            if check is not None:
                check(record)
            record.participants.append(participant)
            return record

        return await self.update(session_id, mutate=add)
