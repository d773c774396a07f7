from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol

from chatauth.config import Settings, StoreFailureMode
from chatauth.logging import get_logger
from chatauth.service import background
from chatauth.service.errors import DeleteOnExpiryFailed, RenewalFailed
from chatauth.service.tokens import (
    TokenMalformed,
    derive_lookup_id,
    generate_session_token,
    parse_session_token,
)
from chatauth.storage.errors import StoreUnavailable
from chatauth.storage.models import Identity, Session, SessionRecord, utcnow


class SessionStore(Protocol):
    async def put(self, session: Session) -> None: ...

    async def get(self, lookup_id: str) -> Optional[SessionRecord]: ...

    async def update_expiry(self, lookup_id: str, new_expires_at: datetime) -> None: ...

    async def delete(self, lookup_id: str) -> None: ...

    async def purge_expired(self, now: datetime) -> int: ...


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    INVALID = "invalid"
    EXPIRED = "expired"
    RENEWED = "renewed"
    VALID = "valid"


@dataclass(frozen=True)
class SessionValidation:
    state: SessionState
    identity: Optional[Identity] = None
    expires_at: Optional[datetime] = None
    clear_cookie: bool = False
    refresh_cookie: bool = False

    @property
    def authenticated(self) -> bool:
        return self.identity is not None


@dataclass(frozen=True)
class IssuedSession:
    """A freshly minted session and the raw token that unlocks it."""

    token: str
    session: Session

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


_ANONYMOUS = SessionValidation(SessionState.ANONYMOUS)


class SessionManager:
    """Validates, renews, issues and invalidates browser sessions.

    Holds no per-session state; everything lives in the store. ``clock`` is
    injectable so expiry and renewal can be tested against fixed instants.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    @property
    def lifetime(self) -> timedelta:
        return timedelta(seconds=self.settings.session_lifetime_seconds)

    @property
    def renewal_window(self) -> timedelta:
        return timedelta(seconds=self.settings.session_renewal_window_seconds)

    async def create_session(self, user_id: str) -> IssuedSession:
        token = generate_session_token()
        now = self.clock()
        session = Session(
            lookup_id=derive_lookup_id(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + self.lifetime,
        )
        await self.store.put(session)
        self.logger.info("session_created", user_id=user_id)
        return IssuedSession(token=token, session=session)

    async def validate(self, raw_token: Optional[str]) -> SessionValidation:
        if not raw_token:
            return _ANONYMOUS
        try:
            token = parse_session_token(raw_token)
        except TokenMalformed:
            return SessionValidation(SessionState.INVALID, clear_cookie=True)

        lookup_id = derive_lookup_id(token)
        try:
            record = await self.store.get(lookup_id)
        except StoreUnavailable as exc:
            if self.settings.session_store_failure_mode == StoreFailureMode.OPEN:
                self.logger.warning(
                    "session_store_unavailable",
                    failure_mode="open",
                    operation=exc.operation,
                )
                return _ANONYMOUS
            self.logger.error(
                "session_store_unavailable",
                failure_mode="closed",
                operation=exc.operation,
            )
            raise

        if record is None:
            return SessionValidation(SessionState.INVALID, clear_cookie=True)

        now = self.clock()
        expires_at = record.expires_at
        if now >= expires_at:
            await self._delete_expired(lookup_id)
            return SessionValidation(SessionState.EXPIRED, clear_cookie=True)

        if now >= expires_at - self.renewal_window:
            # Renewal is detached; the current request never waits on the store write.
            renewed_until = now + self.lifetime
            background.spawn(
                self._renew(lookup_id, renewed_until),
                name="session-renewal",
            )
            return SessionValidation(
                SessionState.RENEWED,
                identity=record.identity,
                expires_at=renewed_until,
                refresh_cookie=True,
            )

        return SessionValidation(
            SessionState.VALID, identity=record.identity, expires_at=expires_at
        )

    async def _renew(self, lookup_id: str, new_expires_at: datetime) -> None:
        try:
            await self.store.update_expiry(lookup_id, new_expires_at)
        except StoreUnavailable as exc:
            raise RenewalFailed(lookup_id, exc.message) from exc

    async def _delete_expired(self, lookup_id: str) -> None:
        try:
            await self.store.delete(lookup_id)
        except StoreUnavailable as exc:
            failure = DeleteOnExpiryFailed(lookup_id, exc.message)
            self.logger.warning(
                failure.event, lookup_id=lookup_id, reason=failure.reason
            )

    async def invalidate(self, raw_token: Optional[str]) -> None:
        """Delete the session behind ``raw_token``; unknown or malformed tokens are ignored."""

        try:
            token = parse_session_token(raw_token)
        except TokenMalformed:
            return
        await self.store.delete(derive_lookup_id(token))
        self.logger.info("session_invalidated")

    async def purge_expired(self) -> int:
        return await self.store.purge_expired(self.clock())


__all__ = [
    "SessionStore",
    "SessionState",
    "SessionValidation",
    "IssuedSession",
    "SessionManager",
]
