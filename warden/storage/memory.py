from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account, utcnow


class MemoryStore:
    """In-process account store persisted to a JSON snapshot.

    Every public method holds ``_data_lock`` for its whole duration, so a
    read-check-write sequence (token consumption, email uniqueness) is atomic
    with respect to other threads.
    """

    def __init__(self, fs_root: str = "/tmp/warden") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if self._load_state():
            self.logger.info("memory_store_loaded", accounts=len(self.accounts))

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        needle = email.lower()
        return any(
            acct.email.lower() == needle and acct.id != exclude_id
            for acct in self.accounts.values()
        )

    # accounts
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
    ) -> Account:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", "email")
            account = Account.new(
                name, email, password_hash, roles=roles, is_verified=is_verified, now=now
            )
            if verification_token_hash:
                account.email_verification_token_hash = verification_token_hash
                account.email_verification_expires_at = verification_expires_at
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        needle = email.lower()
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.email.lower() == needle), None
            )

    def list_accounts(
        self, *, search: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> Tuple[int, List[Account]]:
        with self._data_lock:
            matches = list(self.accounts.values())
            if search:
                needle = search.lower()
                matches = [
                    a
                    for a in matches
                    if needle in a.name.lower() or needle in a.email.lower()
                ]
            matches.sort(key=lambda a: (a.created_at, a.id))
            return len(matches), matches[offset : offset + limit]

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verification_token_hash = token_hash
            account.email_verification_expires_at = expires_at
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def consume_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        """Mark the owner of a live verification token verified and clear the token."""
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.email_verification_token_hash == token_hash
                    and account.email_verification_expires_at is not None
                    and now < account.email_verification_expires_at
                ):
                    account.is_verified = True
                    account.email_verification_token_hash = None
                    account.email_verification_expires_at = None
                    account.updated_at = now
                    self._persist_state()
                    return account
            return None

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_reset_token_hash = token_hash
            account.password_reset_expires_at = expires_at
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def consume_reset_token(
        self, token_hash: str, now: datetime, password_hash: str
    ) -> Optional[Account]:
        """Swap in a new password hash for the owner of a live reset token."""
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.password_reset_token_hash == token_hash
                    and account.password_reset_expires_at is not None
                    and now < account.password_reset_expires_at
                ):
                    account.password_hash = password_hash
                    account.password_reset_token_hash = None
                    account.password_reset_expires_at = None
                    account.updated_at = now
                    self._persist_state()
                    return account
            return None

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if email is not None and self._email_taken(email, exclude_id=account_id):
                raise ConstraintViolation("email already exists", "email")
            if name is not None:
                account.name = name
            if email is not None:
                account.email = email
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_roles(self, account_id: str, roles: List[str]) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.roles = list(roles)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def touch_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_login_at = when
            self._persist_state()

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        state = {"accounts": [self._serialize_account(a) for a in self.accounts.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "name": account.name,
            "email": account.email,
            "password_hash": account.password_hash,
            "is_verified": account.is_verified,
            "roles": list(account.roles),
            "email_verification_token_hash": account.email_verification_token_hash,
            "email_verification_expires_at": self._serialize_datetime(
                account.email_verification_expires_at
            ),
            "password_reset_token_hash": account.password_reset_token_hash,
            "password_reset_expires_at": self._serialize_datetime(
                account.password_reset_expires_at
            ),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            password_hash=data["password_hash"],
            is_verified=bool(data.get("is_verified", False)),
            roles=list(data.get("roles") or ["user"]),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )


__all__ = ["MemoryStore"]
