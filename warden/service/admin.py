from __future__ import annotations

from typing import Any, Dict, List, Optional

from warden.logging import get_logger
from warden.service.accounts import AccountStore
from warden.service.errors import NotFoundError, SelfActionError, ValidationError
from warden.storage.models import Account, VALID_ROLES

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class AdminService:
    """Account administration for callers already holding the admin role."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def list_accounts(
        self,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return one page of accounts, oldest first.

        ``pagination`` only carries ``next``/``prev`` when such a page exists.
        """
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        search = (search or "").strip() or None
        offset = (page - 1) * limit
        total, accounts = self.store.list_accounts(search=search, offset=offset, limit=limit)

        pagination: Dict[str, Dict[str, int]] = {}
        if offset + limit < total:
            pagination["next"] = {"page": page + 1, "limit": limit}
        if offset > 0:
            pagination["prev"] = {"page": page - 1, "limit": limit}
        return {
            "total": total,
            "pagination": pagination,
            "count": len(accounts),
            "users": accounts,
        }

    def delete_account(self, actor_id: str, target_id: str) -> None:
        if actor_id == target_id:
            raise SelfActionError("You cannot delete your own account.")
        if not self.store.delete_account(target_id):
            raise NotFoundError("No user found with that ID")
        self.logger.info("account_deleted", actor_id=actor_id, account_id=target_id)

    def update_roles(self, actor_id: str, target_id: str, roles: List[str]) -> Account:
        """Replace the target's role set. Duplicates collapse, order is kept."""
        if actor_id == target_id:
            raise SelfActionError("You cannot change your own roles.")
        cleaned = validate_roles(roles)
        account = self.store.update_roles(target_id, cleaned)
        if not account:
            raise NotFoundError("No user found with that ID")
        self.logger.info(
            "account_roles_updated", actor_id=actor_id, account_id=target_id, roles=cleaned
        )
        return account


def validate_roles(roles: List[str]) -> List[str]:
    if not roles:
        raise ValidationError("Roles must be a non-empty list")
    cleaned: List[str] = []
    for role in roles:
        if role not in VALID_ROLES:
            raise ValidationError(
                f"Invalid role: {role}", detail={"field": "roles", "value": role}
            )
        if role not in cleaned:
            cleaned.append(role)
    return cleaned


__all__ = ["AdminService", "MAX_PAGE_SIZE", "validate_roles"]
