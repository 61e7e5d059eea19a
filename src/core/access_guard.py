# src/core/access_guard.py
"""
Access guard for session rooms.

Runs on every attempt to enter a session room and decides whether the room
renders or which redirect to issue instead. It consults only the session
store and the identity the client has cached locally. The cache is
client-editable, so any membership it claims is checked against the stored
participant list before it is believed.

Evaluation order (first match wins):

1. No stored session               -> NoBackendSession: landing, no params
2. Cache not for this session/user -> NotCached: landing with sessionId
3. Cached user not a participant   -> purge cache, then as 2
4. Password session, not creator   -> PasswordReauthRequired: landing with
                                      sessionId and requirePassword=true,
                                      cache kept for pre-fill
5. Otherwise                       -> Authorized: render the room

A storage failure yields Unavailable with a generic message.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from src.core.exceptions import StorageError
from src.core.validation import is_valid_session_id

logger = logging.getLogger(__name__)

LANDING_PATH = "/"
SESSION_PARAM = "sessionId"
REAUTH_PARAM = "requirePassword"


class AccessState(str, Enum):
    NO_BACKEND_SESSION = "NoBackendSession"
    NOT_CACHED = "NotCached"
    PASSWORD_REAUTH_REQUIRED = "PasswordReauthRequired"
    AUTHORIZED = "Authorized"
    UNAVAILABLE = "Unavailable"


@dataclass
class LocalSessionCache:
    """Identity claims a client keeps between page loads"""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    def matches(self, session_id: str) -> bool:
        """True if this cache speaks for ``session_id`` with a user id"""
        return self.session_id == session_id and bool(self.user_id)

    def purge(self) -> None:
        self.session_id = None
        self.user_id = None
        self.user_name = None

    def is_empty(self) -> bool:
        return not (self.session_id or self.user_id or self.user_name)


@dataclass(frozen=True)
class Redirect:
    path: str = LANDING_PATH
    query: Dict[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        if not self.query:
            return self.path
        return f"{self.path}?{urlencode(self.query)}"


@dataclass
class AccessDecision:
    state: AccessState
    redirect: Optional[Redirect] = None
    cache_purged: bool = False
    message: Optional[str] = None

    @property
    def render_room(self) -> bool:
        return self.state == AccessState.AUTHORIZED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "renderRoom": self.render_room,
            "cachePurged": self.cache_purged,
            "redirect": None if self.redirect is None else {
                "path": self.redirect.path,
                "query": self.redirect.query,
                "url": self.redirect.url,
            },
            "message": self.message,
        }


class LandingMode(str, Enum):
    FRESH_START = "fresh_start"
    JOIN = "join"
    REAUTH = "reauth"


@dataclass(frozen=True)
class LandingIntent:
    """How the landing page should present itself for a given URL"""
    mode: LandingMode
    session_id: Optional[str] = None
    prefill_name: Optional[str] = None
    focus_password: bool = False


def _fresh_start() -> AccessDecision:
    return AccessDecision(AccessState.NO_BACKEND_SESSION, Redirect())


def _join(session_id: str, cache_purged: bool = False) -> AccessDecision:
    return AccessDecision(
        AccessState.NOT_CACHED,
        Redirect(query={SESSION_PARAM: session_id}),
        cache_purged=cache_purged
    )


class AccessGuard:
    """Decides room access from stored session state and cached identity"""

    def __init__(self, session_store):
        self.session_store = session_store

    async def evaluate(self, session_id: str, cache: LocalSessionCache) -> AccessDecision:
        """
        Decide what happens when the client navigates to ``session_id``.

        ``cache`` may be purged in place (step 3); the decision records it.
        """
        if not is_valid_session_id(session_id):
            return _fresh_start()

        try:
            record = await self.session_store.get(session_id)
        except StorageError as e:
            logger.error(f"Access check for {session_id[:8]}... failed: {e}")
            return AccessDecision(
                AccessState.UNAVAILABLE,
                Redirect(),
                message=StorageError.GENERIC_MESSAGE
            )

        if record is None:
            return _fresh_start()

        if not cache.matches(session_id):
            return _join(session_id)

        if not record.has_participant(cache.user_id):
            logger.warning(f"🚫 Cached identity not in session {session_id[:8]}... - purging cache")
            cache.purge()
            return _join(session_id, cache_purged=True)

        if record.password_required and cache.user_id != record.creator_id:
            return AccessDecision(
                AccessState.PASSWORD_REAUTH_REQUIRED,
                Redirect(query={SESSION_PARAM: session_id, REAUTH_PARAM: "true"})
            )

        return AccessDecision(AccessState.AUTHORIZED)

    @staticmethod
    def resolve_landing(query: Mapping[str, str], cache: LocalSessionCache) -> LandingIntent:
        """
        Interpret the landing page's query parameters.

        The re-authentication flag only counts when the cache really holds
        that session; a stale or bookmarked link is a plain join.
        """
        session_id = query.get(SESSION_PARAM)
        if not session_id:
            return LandingIntent(LandingMode.FRESH_START)

        wants_reauth = str(query.get(REAUTH_PARAM, "")).lower() == "true"
        if wants_reauth and cache.matches(session_id):
            return LandingIntent(
                LandingMode.REAUTH,
                session_id=session_id,
                prefill_name=cache.user_name,
                focus_password=True
            )

        return LandingIntent(LandingMode.JOIN, session_id=session_id)
