from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"
VALID_ROLES = (ROLE_USER, ROLE_ADMIN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    """A registered identity and its authentication state.

    Verification and reset tokens are stored only as SHA-256 hashes; each hash
    travels together with its expiry or both are None.
    """

    id: str
    name: str
    email: str
    password_hash: str = field(repr=False)
    is_verified: bool = False
    roles: List[str] = field(default_factory=lambda: [ROLE_USER])
    email_verification_token_hash: Optional[str] = field(default=None, repr=False)
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = field(default=None, repr=False)
    password_reset_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        email: str,
        password_hash: str,
        *,
        roles: Optional[List[str]] = None,
        is_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> "Account":
        stamp = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=password_hash,
            is_verified=is_verified,
            roles=list(roles or [ROLE_USER]),
            created_at=stamp,
            updated_at=stamp,
        )

    def has_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)

    def redacted(self) -> "Account":
        """Copy with the password hash and token hashes removed."""
        return replace(
            self,
            password_hash="",
            roles=list(self.roles),
            email_verification_token_hash=None,
            email_verification_expires_at=None,
            password_reset_token_hash=None,
            password_reset_expires_at=None,
        )


__all__ = ["Account", "ROLE_ADMIN", "ROLE_USER", "VALID_ROLES", "utcnow"]
