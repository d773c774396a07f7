from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from chatauth.logging import get_logger
from chatauth.storage.errors import ConstraintViolation
from chatauth.storage.models import Identity, Session, SessionRecord, User, as_utc


class MemoryStore:
    """In-process backing store for tests and single-node development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    # users
    async def create_user(
        self, email: str, password_hash: str, password_algo: str
    ) -> User:
        """Register ``email`` together with its first credential."""
        with self._data_lock:
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email)
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user_by_email(email)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        target = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == target), None)

    async def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    async def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    async def put(self, session: Session) -> None:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            # store a copy so callers cannot mutate persisted state
            self.sessions[session.lookup_id] = replace(session)

    async def get(self, lookup_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            sess = self.sessions.get(lookup_id)
            if not sess:
                return None
            user = self.users.get(sess.user_id)
            if not user:
                return None
            return SessionRecord(
                session=replace(sess),
                identity=Identity(user_id=user.id, email=user.email),
            )

    async def update_expiry(self, lookup_id: str, new_expires_at: datetime) -> None:
        new_expires_at = as_utc(new_expires_at)
        with self._data_lock:
            sess = self.sessions.get(lookup_id)
            if not sess:
                return
            if new_expires_at > sess.expires_at:
                sess.expires_at = new_expires_at

    async def delete(self, lookup_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(lookup_id, None)

    async def purge_expired(self, now: datetime) -> int:
        now = as_utc(now)
        with self._data_lock:
            stale = [lid for lid, sess in self.sessions.items() if sess.expires_at <= now]
            for lid in stale:
                self.sessions.pop(lid, None)
        if stale:
            self.logger.info("memory_sessions_purged", count=len(stale))
        return len(stale)
