"""Unit tests for the account lifecycle service.

Covers registration, verification, login, refresh, password recovery and
profile changes against a MemoryStore with a recording mailer.
"""

from datetime import timedelta

import pytest

from conftest import RecordingMailer
from warden.service.accounts import AccountService
from warden.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DeliveryError,
    NotVerifiedError,
    TokenInvalidOrExpiredError,
    ValidationError,
)
from warden.service.passwords import PasswordHasher
from warden.service.tokens import ACCESS, REFRESH, TokenSigner
from warden.storage.models import utcnow
from warden.storage.memory import MemoryStore

PASSWORD = "CorrectHorse42"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def signers():
    common = {"issuer": "warden", "audience": "warden-clients"}
    return (
        TokenSigner("a" * 40, timedelta(minutes=15), token_type=ACCESS, **common),
        TokenSigner("b" * 40, timedelta(days=7), token_type=REFRESH, **common),
    )


@pytest.fixture
def recorder():
    return RecordingMailer()


@pytest.fixture
def service(store, signers, recorder):
    access, refresh = signers
    return AccountService(
        store,
        PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1),
        access,
        refresh,
        recorder,
        verification_ttl=timedelta(hours=24),
        reset_ttl=timedelta(hours=1),
    )


async def _verified(service, recorder, email="bob@example.com"):
    await service.register("Bob", email, PASSWORD)
    return await service.verify_email(recorder.last_verification_token(email))


class TestRegistration:
    async def test_register_creates_unverified_account_and_mails_token(self, service, store, recorder):
        account = await service.register("Bob", " Bob@Example.com ", PASSWORD)

        assert account.email == "bob@example.com"
        assert account.is_verified is False
        assert account.roles == ["user"]
        assert account.password_hash != PASSWORD
        assert len(recorder.verifications) == 1
        to, token = recorder.verifications[0]
        assert to == "bob@example.com"
        # Only the hash is stored
        assert store.get_account(account.id).email_verification_token_hash != token

    async def test_duplicate_email_conflicts(self, service):
        await service.register("Bob", "bob@example.com", PASSWORD)
        with pytest.raises(ConflictError, match="already exists"):
            await service.register("Bobby", "BOB@example.com", PASSWORD)

    async def test_short_password_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.register("Bob", "bob@example.com", "short")

    async def test_delivery_failure_keeps_account(self, service, store, recorder):
        recorder.deliver = False
        with pytest.raises(DeliveryError):
            await service.register("Bob", "bob@example.com", PASSWORD)
        assert store.get_account_by_email("bob@example.com") is not None


class TestVerification:
    async def test_token_verifies_once(self, service, recorder):
        await service.register("Bob", "bob@example.com", PASSWORD)
        token = recorder.last_verification_token("bob@example.com")

        account = await service.verify_email(token)
        assert account.is_verified is True
        with pytest.raises(TokenInvalidOrExpiredError):
            await service.verify_email(token)

    async def test_expired_token_rejected(self, service, recorder):
        await service.register("Bob", "bob@example.com", PASSWORD)
        token = recorder.last_verification_token("bob@example.com")
        with pytest.raises(TokenInvalidOrExpiredError):
            await service.verify_email(token, now=utcnow() + timedelta(hours=25))

    async def test_unknown_and_empty_tokens_share_one_error(self, service):
        with pytest.raises(TokenInvalidOrExpiredError) as unknown:
            await service.verify_email("f" * 64)
        with pytest.raises(TokenInvalidOrExpiredError) as empty:
            await service.verify_email("")
        assert unknown.value.message == empty.value.message

    async def test_resend_replaces_previous_token(self, service, recorder):
        await service.register("Bob", "bob@example.com", PASSWORD)
        first = recorder.last_verification_token("bob@example.com")
        await service.resend_verification("bob@example.com")
        second = recorder.last_verification_token("bob@example.com")

        assert first != second
        with pytest.raises(TokenInvalidOrExpiredError):
            await service.verify_email(first)
        assert (await service.verify_email(second)).is_verified

    async def test_resend_is_silent_for_unknown_and_verified(self, service, recorder):
        await _verified(service, recorder)
        sent_before = len(recorder.verifications)

        await service.resend_verification("bob@example.com")
        await service.resend_verification("ghost@example.com")
        assert len(recorder.verifications) == sent_before


class TestLogin:
    async def test_login_issues_tokens_and_stamps_last_login(self, service, recorder, signers):
        account = await _verified(service, recorder)
        result = await service.login("BOB@example.com", PASSWORD)

        access, refresh = signers
        assert access.verify(result.access_token) == account.id
        assert refresh.verify(result.refresh_token) == account.id
        assert result.account.last_login_at is not None

    async def test_unknown_email_and_wrong_password_look_alike(self, service, recorder):
        await _verified(service, recorder)
        with pytest.raises(AuthenticationError) as unknown:
            await service.login("ghost@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await service.login("bob@example.com", "WrongPassword1")
        assert unknown.value.message == wrong.value.message

    async def test_unverified_login_refused_after_password_check(self, service):
        await service.register("Bob", "bob@example.com", PASSWORD)
        with pytest.raises(NotVerifiedError):
            await service.login("bob@example.com", PASSWORD)
        # A wrong password never reveals the verification state
        with pytest.raises(AuthenticationError):
            await service.login("bob@example.com", "WrongPassword1")


class TestRefresh:
    async def test_refresh_mints_access_token(self, service, recorder, signers):
        account = await _verified(service, recorder)
        result = await service.login("bob@example.com", PASSWORD)

        token = await service.refresh(result.refresh_token)
        assert signers[0].verify(token) == account.id

    async def test_missing_token_is_401(self, service):
        with pytest.raises(AuthenticationError):
            await service.refresh(None)

    async def test_access_token_is_not_accepted_as_refresh(self, service, recorder):
        await _verified(service, recorder)
        result = await service.login("bob@example.com", PASSWORD)
        with pytest.raises(AuthorizationError):
            await service.refresh(result.access_token)

    async def test_refresh_for_deleted_account_is_401(self, service, store, recorder):
        account = await _verified(service, recorder)
        result = await service.login("bob@example.com", PASSWORD)
        store.delete_account(account.id)
        with pytest.raises(AuthenticationError, match="User not found"):
            await service.refresh(result.refresh_token)


class TestPasswordRecovery:
    async def test_reset_flow_replaces_password_once(self, service, recorder):
        await _verified(service, recorder)
        await service.forgot_password("bob@example.com")
        token = recorder.last_reset_token("bob@example.com")

        await service.reset_password(token, "BrandNewPass9")
        assert (await service.login("bob@example.com", "BrandNewPass9")).access_token
        with pytest.raises(AuthenticationError):
            await service.login("bob@example.com", PASSWORD)
        with pytest.raises(TokenInvalidOrExpiredError):
            await service.reset_password(token, "AnotherPass77")

    async def test_forgot_password_unknown_email_is_silent(self, service, recorder):
        await service.forgot_password("ghost@example.com")
        assert recorder.resets == []

    async def test_forgot_password_delivery_failure_is_silent(self, service, recorder):
        await _verified(service, recorder)
        recorder.deliver = False
        await service.forgot_password("bob@example.com")
        assert len(recorder.resets) == 1

    async def test_expired_reset_token_leaves_password(self, service, recorder):
        await _verified(service, recorder)
        await service.forgot_password("bob@example.com")
        token = recorder.last_reset_token("bob@example.com")

        with pytest.raises(TokenInvalidOrExpiredError):
            await service.reset_password(token, "BrandNewPass9", now=utcnow() + timedelta(hours=2))
        assert (await service.login("bob@example.com", PASSWORD)).access_token

    async def test_short_password_checked_before_token(self, service):
        with pytest.raises(ValidationError):
            await service.reset_password("f" * 64, "short")


class TestSelfService:
    async def test_change_password_requires_current(self, service, recorder):
        account = await _verified(service, recorder)
        with pytest.raises(AuthenticationError, match="current password is incorrect"):
            await service.change_password(account.id, "WrongPassword1", "BrandNewPass9")

        await service.change_password(account.id, PASSWORD, "BrandNewPass9")
        assert (await service.login("bob@example.com", "BrandNewPass9")).access_token

    async def test_update_profile_keeps_password_and_verification(self, service, store, recorder):
        account = await _verified(service, recorder)
        before = store.get_account(account.id).password_hash

        updated = await service.update_profile(account.id, name="Robert", email="Rob@Example.com")
        assert updated.name == "Robert"
        assert updated.email == "rob@example.com"
        assert updated.is_verified is True
        assert updated.password_hash == before

    async def test_update_profile_email_conflict(self, service, recorder):
        bob = await _verified(service, recorder)
        await _verified(service, recorder, "carol@example.com")
        with pytest.raises(ConflictError, match="already in use"):
            await service.update_profile(bob.id, email="carol@example.com")

    async def test_update_profile_own_email_is_not_a_conflict(self, service, recorder):
        bob = await _verified(service, recorder)
        updated = await service.update_profile(bob.id, email="bob@example.com", name="Bob B")
        assert updated.name == "Bob B"
