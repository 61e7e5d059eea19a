# src/services/session_service.py
"""
Session operations exposed to the web layer.

Every mutating operation consults the rate limiter first, then validates
input, then checks credentials, then touches the session store.
"""

import logging
import secrets
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.core.config import settings
from src.core.exceptions import (
    AuthenticationError,
    NotFoundError,
    SessionFullError,
    ValidationError
)
from src.core.rate_limit_config import ActionClass
from src.core.rate_limiter import RateLimiter
from src.core.security import (
    EmailCipher,
    EmailTokenService,
    VerificationCodeService,
    hash_password_async,
    verify_password_async
)
from src.core.validation import (
    is_non_empty_string,
    is_utf8_encodable,
    require_participant_id,
    require_secure_password,
    require_session_id,
    require_user_name,
    sanitize_input
)
from src.models.session import (
    Participant,
    SessionPublicView,
    SessionRecord,
    Transcript
)
from src.services.session_store import SessionStore

logger = logging.getLogger(__name__)

PASSWORD_REQUIRED_MESSAGE = "This session is password protected"
INVALID_PASSWORD_MESSAGE = "Incorrect password"


def new_session_id() -> str:
    """256 bits of randomness, base64url (43 characters)"""
    return secrets.token_urlsafe(32)


def new_participant_id() -> str:
    return secrets.token_urlsafe(16)


class StandupSessionService:
    """
    Create, join and read standup sessions.

    Collaborators are injected so tests and single-process deployments can
    use in-memory stores while production shares state through Redis.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        token_service: Optional[EmailTokenService] = None,
        code_service: Optional[VerificationCodeService] = None,
        email_cipher: Optional[EmailCipher] = None,
        max_participants: Optional[int] = None,
        id_factory: Callable[[], str] = new_session_id
    ):
        self.store = store or SessionStore()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.token_service = token_service or EmailTokenService()
        self.code_service = code_service or VerificationCodeService(
            rate_limiter=self.rate_limiter,
            token_service=self.token_service
        )
        self.email_cipher = email_cipher or EmailCipher()
        self.max_participants = max_participants or settings.MAX_PARTICIPANTS
        self._new_session_id = id_factory

    # ------------------------------------------------------------------
    # Email identity
    # ------------------------------------------------------------------

    def issue_email_token(self, email: str) -> str:
        return self.token_service.issue(email)

    def verify_email_token(self, token: str) -> str:
        """Return the verified email; AuthenticationError otherwise"""
        return self.token_service.verify(token)

    async def send_verification_code(self, email: str) -> str:
        return await self.code_service.send_code(email)

    async def verify_email_code(self, email: str, code: str) -> str:
        return await self.code_service.verify_code(email, code)

    def _encrypted_email(self, email_token: Optional[str], session_id: str) -> Optional[str]:
        """
        Encrypt the email a token vouches for.

        A bad token fails the whole request rather than silently dropping
        the address the caller asked to have stored.
        """
        if not email_token:
            return None
        email = self.token_service.verify(email_token)
        return self.email_cipher.encrypt(email, session_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        leader_name: Any,
        password: Any = None,
        client_id: str = "unknown",
        email_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a session with the caller as its first participant.

        Returns:
            ``{sessionId, userId, expiresAt}``

        Raises:
            RateLimitedError, ValidationError, AuthenticationError, StorageError
        """
        await self.rate_limiter.enforce(client_id, ActionClass.SESSION_CREATE)

        name = require_user_name(leader_name, "leaderName", "Leader name")

        password_hash = None
        # An empty password means an open session
        if password:
            password_hash = await hash_password_async(require_secure_password(password))

        session_id = self._new_session_id()
        user_id = new_participant_id()
        now = self.store.now_ms()

        record = SessionRecord(
            id=session_id,
            created_at=now,
            expires_at=self.store.expiry_for(now),
            leader_name=name,
            leader_id=user_id,
            password_hash=password_hash,
            participants=[Participant(
                id=user_id,
                name=name,
                encrypted_email=self._encrypted_email(email_token, session_id)
            )]
        )

        await self.store.set(session_id, record)
        logger.info(
            f"✅ Session created: {session_id[:8]}... "
            f"(password={'yes' if password_hash else 'no'})"
        )

        return {
            "sessionId": session_id,
            "userId": user_id,
            "expiresAt": record.expires_at,
        }

    async def _check_password(self, record: SessionRecord, password: Any) -> None:
        if not record.password_required:
            return
        if not is_non_empty_string(password):
            raise AuthenticationError(PASSWORD_REQUIRED_MESSAGE, reason="missing", code="PASSWORD_REQUIRED")
        if not await verify_password_async(password, record.password_hash):
            logger.warning(f"🔒 Wrong password for session {record.id[:8]}...")
            raise AuthenticationError(INVALID_PASSWORD_MESSAGE, reason="mismatch", code="INVALID_PASSWORD")

    def _admission_check(self, name: str) -> Callable[[SessionRecord], None]:
        """Roster rules re-applied to the freshest record on every write attempt"""
        limit = self.max_participants

        def check(record: SessionRecord) -> None:
            if len(record.participants) >= limit:
                raise SessionFullError(
                    f"Session is full (maximum {limit} participants)",
                    code="SESSION_FULL"
                )
            if record.name_taken(name):
                raise ValidationError(
                    "A participant with this name already exists in the session",
                    field="participantName",
                    code="DUPLICATE_NAME"
                )

        return check

    async def join_session(
        self,
        session_id: Any,
        participant_name: Any,
        password: Any = None,
        client_id: str = "unknown",
        email_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Add the caller to an existing session.

        Returns:
            ``{sessionId, userId, participants[], createdAt}``

        Raises:
            RateLimitedError, ValidationError, NotFoundError,
            AuthenticationError, SessionFullError, StorageError
        """
        await self.rate_limiter.enforce(client_id, ActionClass.SESSION_JOIN)

        session_id = require_session_id(session_id)
        name = require_user_name(participant_name, "participantName", "Participant name")

        record = await self.store.get(session_id)
        if record is None:
            raise NotFoundError(session_id=session_id)

        await self._check_password(record, password)

        check = self._admission_check(name)
        # Fail fast before paying for email encryption
        check(record)

        user_id = new_participant_id()
        participant = Participant(
            id=user_id,
            name=name,
            encrypted_email=self._encrypted_email(email_token, session_id)
        )

        updated = await self.store.append_participant(session_id, participant, check)
        logger.info(f"👋 Participant joined session {session_id[:8]}... ({len(updated.participants)} total)")

        return {
            "sessionId": session_id,
            "userId": user_id,
            "participants": [
                p.model_dump(by_alias=True) for p in updated.public_view().participants
            ],
            "createdAt": updated.created_at,
        }

    async def get_session(self, session_id: Any) -> SessionPublicView:
        """Public view of a session; never includes the password hash"""
        session_id = require_session_id(session_id)
        record = await self.store.get(session_id)
        if record is None:
            raise NotFoundError(session_id=session_id)
        return record.public_view()

    async def add_transcript(
        self,
        session_id: Any,
        transcript: Dict[str, Any],
        client_id: str = "unknown"
    ) -> SessionRecord:
        """Append a transcript without clobbering concurrent appends"""
        await self.rate_limiter.enforce(client_id, ActionClass.SESSION_UPDATE)

        session_id = require_session_id(session_id)

        if not isinstance(transcript, dict) \
                or not is_non_empty_string(transcript.get("participantName")) \
                or not is_non_empty_string(transcript.get("text")) \
                or not is_utf8_encodable(transcript["participantName"]) \
                or not is_utf8_encodable(transcript["text"]):
            raise ValidationError(
                "Transcript must have participantName and text",
                field="transcript",
                code="INVALID_TRANSCRIPT"
            )

        entry = Transcript(
            participant_name=sanitize_input(transcript["participantName"]),
            text=transcript["text"],
            duration=transcript.get("duration"),
            language=transcript.get("language"),
        )

        def append(record: SessionRecord) -> SessionRecord:
            record.transcripts.append(entry)
            return record

        updated = await self.store.update(session_id, mutate=append)
        logger.info(f"📝 Transcript saved for session {session_id[:8]}... ({len(updated.transcripts)} total)")
        return updated

    async def finish_session(self, session_id: Any, summary: Any, client_id: str = "unknown") -> Dict[str, Any]:
        """Record the summary and completion time"""
        await self.rate_limiter.enforce(client_id, ActionClass.SESSION_UPDATE)

        session_id = require_session_id(session_id)
        if not is_non_empty_string(summary):
            raise ValidationError("Summary is required", field="summary", code="MISSING_SUMMARY")
        if not is_utf8_encodable(summary):
            raise ValidationError("Summary contains invalid characters", field="summary", code="INVALID_SUMMARY")

        updated = await self.store.update(
            session_id,
            {"summary": summary, "finishedAt": self.store.now_ms()}
        )
        recipients = self.summary_recipients(updated)
        logger.info(f"🏁 Session {session_id[:8]}... finished ({len(recipients)} summary recipients)")

        return {
            "sessionId": session_id,
            "finishedAt": updated.finished_at,
            "recipientCount": len(recipients),
        }

    def summary_recipients(self, record: SessionRecord) -> List[Tuple[str, str]]:
        """(name, email) for every participant who left a verified address"""
        recipients = []
        for participant in record.participants:
            if not participant.encrypted_email:
                continue
            try:
                email = self.email_cipher.decrypt(participant.encrypted_email, record.id)
            except ValidationError as e:
                logger.warning(f"Could not decrypt email for a participant of {record.id[:8]}...: {e}")
                continue
            recipients.append((participant.name, email))
        return recipients

    async def leave_session(self, session_id: Any, user_id: Any, client_id: str = "unknown") -> Dict[str, Any]:
        """
        Remove the caller from a session.

        The caller must be on the roster. When the leader leaves, or the
        last participant does, the session itself is deleted.

        Returns:
            ``{sessionId, deleted, participantCount}``

        Raises:
            RateLimitedError, ValidationError, NotFoundError,
            AuthenticationError (not a participant), StorageError
        """
        await self.rate_limiter.enforce(client_id, ActionClass.SESSION_UPDATE)

        session_id = require_session_id(session_id)
        user_id = require_participant_id(user_id)

        record = await self.store.get(session_id)
        if record is None:
            raise NotFoundError(session_id=session_id)
        if not record.has_participant(user_id):
            logger.warning(f"🚫 Leave refused for non-participant of {session_id[:8]}...")
            raise AuthenticationError(
                "Not a participant of this session",
                reason="not_a_participant",
                code="NOT_A_PARTICIPANT",
                status_code=403
            )

        if user_id == record.creator_id:
            deleted = await self.store.delete(session_id)
            logger.info(f"🚪 Leader left, session {session_id[:8]}... closed")
            return {"sessionId": session_id, "deleted": deleted, "participantCount": 0}

        def remove(current: SessionRecord) -> SessionRecord:
            current.participants = [p for p in current.participants if p.id != user_id]
            return current

        updated = await self.store.update(session_id, mutate=remove)
        if not updated.participants:
            deleted = await self.store.delete(session_id)
            return {"sessionId": session_id, "deleted": deleted, "participantCount": 0}

        logger.info(f"🚪 Participant left session {session_id[:8]}... ({len(updated.participants)} remain)")
        return {"sessionId": session_id, "deleted": False, "participantCount": len(updated.participants)}
