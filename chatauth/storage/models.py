from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (treated as UTC) and aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str) -> "User":
        return cls(id=str(uuid.uuid4()), email=email)


@dataclass(frozen=True)
class Identity:
    """Public projection of a user handed to route handlers."""

    user_id: str
    email: str


@dataclass
class Session:
    lookup_id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.expires_at = as_utc(self.expires_at)
        self.created_at = as_utc(self.created_at)


@dataclass
class SessionRecord:
    """A session joined with the public attributes of its owner."""

    session: Session
    identity: Identity

    @property
    def lookup_id(self) -> str:
        return self.session.lookup_id

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at



class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    reset_seconds: int
