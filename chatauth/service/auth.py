from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatauth.config import Settings
from chatauth.logging import get_logger
from chatauth.service.errors import AuthenticationError, ConflictError, ForbiddenError
from chatauth.service.sessions import IssuedSession, SessionManager
from chatauth.storage.errors import ConstraintViolation
from chatauth.storage.models import User

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    async def create_user(
        self, email: str, password_hash: str, password_algo: str
    ) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    async def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class AuthService:
    """Email/password registration and sign-in on top of the session manager."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.settings = settings
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    async def signup(self, email: str, password: str) -> tuple[User, IssuedSession]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        pwd_hash, algo = self._hash_password(password)
        try:
            user = await self.store.create_user(email, pwd_hash, algo)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        issued = await self.sessions.create_session(user.id)
        self.logger.info("signup_completed", user_id=user.id)
        return user, issued

    async def login(self, email: str, password: str) -> tuple[User, IssuedSession]:
        """Start a new session for valid credentials.

        Unknown emails and wrong passwords raise the same AuthenticationError.
        """
        user = await self.store.get_user_by_email(email)
        if not user or not await self.verify_password(user.id, password):
            self.logger.info("login_rejected")
            raise AuthenticationError("invalid credentials")
        issued = await self.sessions.create_session(user.id)
        return user, issued

    async def logout(self, raw_token: Optional[str]) -> None:
        await self.sessions.invalidate(raw_token)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    async def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = await self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            verified = self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False
        if verified and self._pwd_hasher.check_needs_rehash(stored_hash):
            new_hash, new_algo = self._hash_password(password)
            await self.store.save_password(user_id, new_hash, new_algo)
            self.logger.info("password_rehashed", user_id=user_id)
        return verified
