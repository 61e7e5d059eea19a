# src/models/session.py

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Stored and sent as camelCase JSON, addressed as snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Participant(CamelModel):
    id: str
    name: str
    encrypted_email: Optional[str] = None


class Transcript(CamelModel):
    participant_name: str
    text: str
    duration: Optional[float] = None
    language: Optional[str] = None


class PublicParticipant(CamelModel):
    id: str
    name: str


class SessionPublicView(CamelModel):
    """What anyone holding the session id may see - never the password hash or leader id"""
    id: str
    leader_name: str
    participants: List[PublicParticipant]
    created_at: int
    expires_at: int
    password_required: bool
    finished_at: Optional[int] = None


class SessionRecord(CamelModel):
    """
    A standup session as persisted under ``session:{id}``.

    ``id`` and ``created_at`` never change after creation. Timestamps are
    epoch milliseconds. ``version`` increases by one on every write and is
    what conditional updates compare against.
    """
    id: str
    created_at: int
    expires_at: int
    leader_name: str
    leader_id: Optional[str] = None
    password_hash: Optional[str] = None
    participants: List[Participant] = Field(default_factory=list)
    transcripts: List[Transcript] = Field(default_factory=list)
    summary: Optional[str] = None
    finished_at: Optional[int] = None
    version: int = 0

    @property
    def password_required(self) -> bool:
        return bool(self.password_hash)

    @property
    def creator_id(self) -> Optional[str]:
        """Leader's participant id; older records only know the first participant"""
        if self.leader_id:
            return self.leader_id
        return self.participants[0].id if self.participants else None

    def has_participant(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and any(p.id == user_id for p in self.participants)

    def name_taken(self, name: str) -> bool:
        lowered = name.strip().lower()
        return any(p.name.lower() == lowered for p in self.participants)

    def public_view(self) -> SessionPublicView:
        return SessionPublicView(
            id=self.id,
            leader_name=self.leader_name,
            participants=[PublicParticipant(id=p.id, name=p.name) for p in self.participants],
            created_at=self.created_at,
            expires_at=self.expires_at,
            password_required=self.password_required,
            finished_at=self.finished_at,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        return cls.model_validate_json(raw)


class VerificationCodeRecord(CamelModel):
    """Stored under the HMAC of the code, never the code itself"""
    email: str
    created_at: int
    attempts: int = 0
