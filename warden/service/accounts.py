from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from warden.logging import get_logger, mask_email
from warden.service.email import EmailService
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
from warden.service.tokens import (
    TokenInvalid,
    TokenSigner,
    hash_one_time_token,
    issue_one_time_token,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account, utcnow

MIN_PASSWORD_LENGTH = 8
MAX_NAME_LENGTH = 100

INVALID_CREDENTIALS = "Incorrect email or password"


class AccountStore(Protocol):
    def create_account(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        roles: Optional[List[str]] = None,
        is_verified: bool = False,
        verification_token_hash: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self, *, search: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> Tuple[int, List[Account]]: ...

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def consume_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def consume_reset_token(
        self, token_hash: str, now: datetime, password_hash: str
    ) -> Optional[Account]: ...

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]: ...

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]: ...

    def update_roles(self, account_id: str, roles: List[str]) -> Optional[Account]: ...

    def touch_login(self, account_id: str, when: datetime) -> None: ...

    def delete_account(self, account_id: str) -> bool: ...


@dataclass
class LoginResult:
    account: Account
    access_token: str
    refresh_token: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _require_password(password: str, *, label: str = "Password") -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"{label} must be {MIN_PASSWORD_LENGTH} or more characters")


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


class AccountService:
    """Credential lifecycle: registration, verification, login and recovery.

    Collaborators are injected so the service never reaches for module-level
    transports. Each public call captures a single ``now`` and uses it for
    every expiry it issues or checks.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        access_signer: TokenSigner,
        refresh_signer: TokenSigner,
        email: EmailService,
        *,
        verification_ttl: timedelta = timedelta(minutes=60),
        reset_ttl: timedelta = timedelta(minutes=60),
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.access_signer = access_signer
        self.refresh_signer = refresh_signer
        self.email = email
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.logger = get_logger(__name__)

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, digest: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, digest)

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        now: Optional[datetime] = None,
    ) -> Account:
        """Create an unverified account and mail its verification link.

        The account is kept even when delivery fails; the caller sees
        :class:`DeliveryError` and can use resend-verification later.
        """
        now = now or utcnow()
        name = _clean_name(name)
        email = normalize_email(email)
        _require_password(password)

        if self.store.get_account_by_email(email):
            raise ConflictError("A user with this email already exists.")
        password_hash = await self._hash(password)
        token = issue_one_time_token(self.verification_ttl, now)
        try:
            account = self.store.create_account(
                name,
                email,
                password_hash,
                verification_token_hash=token.token_hash,
                verification_expires_at=token.expires_at,
                now=now,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same address
            raise ConflictError("A user with this email already exists.")
        self.logger.info("account_registered", account_id=account.id)

        sent = await asyncio.to_thread(
            self.email.send_email_verification, account.email, token.token
        )
        if not sent:
            self.logger.error("verification_email_failed", account_id=account.id)
            raise DeliveryError("Email could not be sent. Please try again later.")
        return account

    async def verify_email(self, token: str, *, now: Optional[datetime] = None) -> Account:
        now = now or utcnow()
        if not token:
            raise TokenInvalidOrExpiredError()
        account = self.store.consume_verification_token(hash_one_time_token(token), now)
        if not account:
            self.logger.info("email_verification_rejected")
            raise TokenInvalidOrExpiredError()
        self.logger.info("email_verified", account_id=account.id)
        return account

    async def resend_verification(self, email: str, *, now: Optional[datetime] = None) -> None:
        """Issue a fresh verification token for an unverified account.

        Silent for unknown or already verified addresses so the response does
        not reveal which emails are registered.
        """
        now = now or utcnow()
        account = self.store.get_account_by_email(normalize_email(email))
        if not account or account.is_verified:
            self.logger.info("verification_resend_skipped", email=mask_email(email))
            return
        token = issue_one_time_token(self.verification_ttl, now)
        self.store.set_verification_token(account.id, token.token_hash, token.expires_at)
        sent = await asyncio.to_thread(
            self.email.send_email_verification, account.email, token.token
        )
        if not sent:
            self.logger.error("verification_email_failed", account_id=account.id)
            return
        self.logger.info("verification_resent", account_id=account.id)

    async def login(
        self, email: str, password: str, *, now: Optional[datetime] = None
    ) -> LoginResult:
        now = now or utcnow()
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            # Keep the unknown-email path as slow as a wrong password
            await asyncio.to_thread(self.hasher.burn, password)
            self.logger.info("login_failed", reason="credentials")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self._verify(password, account.password_hash):
            self.logger.info("login_failed", reason="credentials", account_id=account.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not account.is_verified:
            self.logger.info("login_failed", reason="unverified", account_id=account.id)
            raise NotVerifiedError("Please verify your email before logging in.")

        self.store.touch_login(account.id, now)
        account.last_login_at = now
        self.logger.info("login_succeeded", account_id=account.id)
        return LoginResult(
            account=account,
            access_token=self.access_signer.mint(account.id, now),
            refresh_token=self.refresh_signer.mint(account.id, now),
        )

    async def refresh(
        self, refresh_token: Optional[str], *, now: Optional[datetime] = None
    ) -> str:
        """Exchange a refresh token for a new access token.

        A missing token and a vanished account are 401s; a token that fails
        verification is a 403.
        """
        now = now or utcnow()
        if not refresh_token:
            raise AuthenticationError("Refresh token not found")
        try:
            account_id = self.refresh_signer.verify(refresh_token, now)
        except TokenInvalid:
            self.logger.info("refresh_rejected")
            raise AuthorizationError("Invalid refresh token")
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("User not found")
        return self.access_signer.mint(account.id, now)

    async def forgot_password(self, email: str, *, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            self.logger.info("password_reset_unknown_email", email=mask_email(email))
            return
        token = issue_one_time_token(self.reset_ttl, now)
        self.store.set_reset_token(account.id, token.token_hash, token.expires_at)
        self.logger.info("password_reset_requested", account_id=account.id)
        sent = await asyncio.to_thread(
            self.email.send_password_reset, account.email, token.token
        )
        if not sent:
            self.logger.error("password_reset_email_failed", account_id=account.id)

    async def reset_password(
        self, token: str, password: str, *, now: Optional[datetime] = None
    ) -> Account:
        now = now or utcnow()
        _require_password(password)
        if not token:
            raise TokenInvalidOrExpiredError()
        # Hash first so the store swaps hash and clears the token in one step
        password_hash = await self._hash(password)
        account = self.store.consume_reset_token(
            hash_one_time_token(token), now, password_hash
        )
        if not account:
            self.logger.info("password_reset_rejected")
            raise TokenInvalidOrExpiredError()
        self.logger.info("password_reset_completed", account_id=account.id)
        return account

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> Account:
        _require_password(new_password, label="New password")
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("Invalid or expired access token")
        if not await self._verify(current_password, account.password_hash):
            self.logger.info("password_change_rejected", account_id=account_id)
            raise AuthenticationError("Your current password is incorrect")
        updated = self.store.update_password(account_id, await self._hash(new_password))
        if not updated:
            raise AuthenticationError("Invalid or expired access token")
        self.logger.info("password_changed", account_id=account_id)
        return updated

    async def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Account:
        """Change display name and/or email; the password hash is never touched."""
        clean_name = _clean_name(name) if name is not None else None
        clean_email = normalize_email(email) if email is not None else None
        if clean_email is not None:
            holder = self.store.get_account_by_email(clean_email)
            if holder and holder.id != account_id:
                raise ConflictError("This email is already in use.")
        try:
            account = self.store.update_profile(
                account_id, name=clean_name, email=clean_email
            )
        except ConstraintViolation:
            raise ConflictError("This email is already in use.")
        if not account:
            raise AuthenticationError("Invalid or expired access token")
        self.logger.info("profile_updated", account_id=account_id)
        return account


__all__ = [
    "AccountService",
    "AccountStore",
    "LoginResult",
    "MIN_PASSWORD_LENGTH",
    "normalize_email",
]
