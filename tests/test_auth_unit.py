"""Unit tests for the credential service.

Tests for:
- Password hashing and verification
- Signup and login on top of the session manager
- Sign-out
"""

import pytest
from argon2 import PasswordHasher, Type

from chatauth.config import Settings
from chatauth.service.auth import PASSWORD_ALGO, AuthService
from chatauth.service.errors import AuthenticationError, ConflictError, ForbiddenError
from chatauth.service.sessions import SessionManager, SessionState
from chatauth.storage.errors import StoreUnavailable
from chatauth.storage.memory import MemoryStore


class FlakyStore(MemoryStore):
    """MemoryStore whose first user registration hits a dropped connection."""

    def __init__(self):
        super().__init__()
        self.create_failures = 1

    async def create_user(self, email, password_hash, password_algo):
        if self.create_failures:
            self.create_failures -= 1
            raise StoreUnavailable("connection reset", operation="create_user")
        return await super().create_user(email, password_hash, password_algo)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    sessions = SessionManager(memory_store, settings)
    return AuthService(memory_store, sessions, settings)


class TestPasswordHashing:
    def test_hash_is_salted_argon2id(self, auth_service):
        hash1, algo = auth_service._hash_password("TestPassword123!")
        hash2, _ = auth_service._hash_password("TestPassword123!")

        assert algo == PASSWORD_ALGO == "argon2id"
        assert hash1.startswith("$argon2id$")
        assert hash1 != hash2
        assert "TestPassword123!" not in hash1

    async def test_verify_password(self, auth_service, memory_store):
        pwd_hash, algo = auth_service._hash_password("TestPassword123!")
        user = await memory_store.create_user("test@example.com", pwd_hash, algo)

        assert await auth_service.verify_password(user.id, "TestPassword123!")
        assert not await auth_service.verify_password(user.id, "WrongPassword!")

    async def test_verify_without_record_fails(self, auth_service, memory_store):
        user = await memory_store.create_user("test@example.com", "unused", PASSWORD_ALGO)
        memory_store.credentials.pop(user.id)
        assert not await auth_service.verify_password(user.id, "TestPassword123!")

    async def test_verify_rejects_foreign_algorithm(self, auth_service, memory_store):
        user = await memory_store.create_user(
            "test@example.com", "$2b$10$abcdefghijklmnopqrstuv", "bcrypt"
        )
        assert not await auth_service.verify_password(user.id, "TestPassword123!")

    async def test_verify_rejects_corrupt_hash(self, auth_service, memory_store):
        user = await memory_store.create_user("test@example.com", "not-a-hash", PASSWORD_ALGO)
        assert not await auth_service.verify_password(user.id, "TestPassword123!")

    async def test_outdated_parameters_rehashed(self, auth_service, memory_store):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        old_hash = weak.hash("TestPassword123!")
        user = await memory_store.create_user("test@example.com", old_hash, PASSWORD_ALGO)

        assert await auth_service.verify_password(user.id, "TestPassword123!")
        new_hash, _ = await memory_store.get_password_record(user.id)
        assert new_hash != old_hash


class TestSignupAndLogin:
    async def test_signup_issues_valid_session(self, auth_service):
        user, issued = await auth_service.signup("new@example.com", "TestPassword123!")

        result = await auth_service.sessions.validate(issued.token)
        assert result.state == SessionState.VALID
        assert result.identity.user_id == user.id

    async def test_signup_stores_credential_with_user(self, auth_service, memory_store):
        user, _ = await auth_service.signup("new@example.com", "TestPassword123!")

        pwd_hash, algo = await memory_store.get_password_record(user.id)
        assert algo == PASSWORD_ALGO
        assert pwd_hash.startswith("$argon2id$")

    async def test_failed_signup_leaves_email_available(self, settings):
        store = FlakyStore()
        service = AuthService(store, SessionManager(store, settings), settings)

        with pytest.raises(StoreUnavailable):
            await service.signup("retry@example.com", "TestPassword123!")
        assert store.users == {}
        assert store.credentials == {}

        user, _ = await service.signup("retry@example.com", "TestPassword123!")
        signed_in, issued = await service.login("retry@example.com", "TestPassword123!")
        assert signed_in.id == user.id
        assert issued is not None

    async def test_signup_duplicate_email_conflicts(self, auth_service):
        await auth_service.signup("dup@example.com", "TestPassword123!")
        with pytest.raises(ConflictError):
            await auth_service.signup("dup@example.com", "OtherPassword123!")

    async def test_signup_disabled(self, memory_store):
        settings = Settings(allow_signup=False)
        service = AuthService(memory_store, SessionManager(memory_store, settings), settings)
        with pytest.raises(ForbiddenError):
            await service.signup("new@example.com", "TestPassword123!")
        assert memory_store.users == {}

    async def test_login_success_creates_new_session(self, auth_service):
        _, first = await auth_service.signup("me@example.com", "TestPassword123!")
        user, second = await auth_service.login("me@example.com", "TestPassword123!")

        assert user is not None
        assert second.token != first.token
        assert len(auth_service.store.sessions) == 2

    async def test_login_wrong_password(self, auth_service):
        await auth_service.signup("me@example.com", "TestPassword123!")
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login("me@example.com", "nope-nope")
        assert excinfo.value.message == "invalid credentials"
        assert excinfo.value.status_code == 401

    async def test_login_unknown_email(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.login("ghost@example.com", "TestPassword123!")
        assert auth_service.store.sessions == {}

    async def test_logout_invalidates_session(self, auth_service):
        _, issued = await auth_service.signup("me@example.com", "TestPassword123!")

        await auth_service.logout(issued.token)

        result = await auth_service.sessions.validate(issued.token)
        assert result.identity is None
