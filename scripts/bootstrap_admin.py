#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --name Admin --password SecurePassword123

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_NAME: Display name for a newly created account (default: Administrator)
    ADMIN_PASSWORD: Password for a newly created account (8 or more characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 8


def bootstrap_admin(email: str, name: str, password: str | None, dry_run: bool = False) -> dict:
    """Create a verified admin account, or promote an existing one.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.service.accounts import normalize_email
    from warden.service.runtime import get_runtime
    from warden.storage.models import ROLE_ADMIN, ROLE_USER

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_account_by_email(email)
    if existing:
        if existing.has_role(ROLE_ADMIN):
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}

        runtime.store.update_roles(existing.id, [*existing.roles, ROLE_ADMIN])
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be {MIN_PASSWORD_LENGTH} or more characters")

    # Created verified so the admin can log in without a mail round-trip
    account = runtime.store.create_account(
        name,
        email,
        runtime.hasher.hash(password),
        roles=[ROLE_USER, ROLE_ADMIN],
        is_verified=True,
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"user_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name for a new account (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password for a new account (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/warden-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Rate limits are never exercised here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.name, args.password, args.dry_run)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
