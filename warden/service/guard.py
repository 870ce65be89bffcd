from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from warden.logging import get_logger
from warden.service.accounts import AccountStore
from warden.service.errors import AuthenticationError, AuthorizationError
from warden.service.tokens import TokenInvalid, TokenSigner
from warden.storage.models import Account

logger = get_logger(__name__)

TOKEN_REQUIRED = "Access token required"
TOKEN_REJECTED = "Invalid or expired access token"


@dataclass
class AuthContext:
    """The caller behind a verified access token, secrets already stripped."""

    account: Account

    @property
    def account_id(self) -> str:
        return self.account.id


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationGuard:
    def __init__(self, store: AccountStore, access_signer: TokenSigner) -> None:
        self.store = store
        self.access_signer = access_signer

    def authenticate(
        self, authorization: Optional[str], now: Optional[datetime] = None
    ) -> AuthContext:
        token = _bearer_token(authorization)
        if not token:
            raise AuthenticationError(TOKEN_REQUIRED)
        try:
            account_id = self.access_signer.verify(token, now)
        except TokenInvalid:
            raise AuthenticationError(TOKEN_REJECTED)
        account = self.store.get_account(account_id)
        if not account:
            logger.info("access_token_orphaned", account_id=account_id)
            raise AuthenticationError(TOKEN_REJECTED)
        return AuthContext(account=account.redacted())

    @staticmethod
    def require_roles(context: AuthContext, roles: Iterable[str]) -> AuthContext:
        if not context.account.has_role(*roles):
            raise AuthorizationError("Insufficient permissions")
        return context


__all__ = ["AuthContext", "AuthorizationGuard", "TOKEN_REQUIRED", "TOKEN_REJECTED"]
