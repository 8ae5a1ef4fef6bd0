#!/usr/bin/env python3
"""Bootstrap an administrator account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@olakzride.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@olakzride.com --password SecurePassword123

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

from olakz_auth.api.schemas import _validate_email, _validate_password_strength
from olakz_auth.config import ADMIN_ROLE


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create a verified admin account or grant ``admin`` to an existing one.

    Returns:
        dict with account_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so the env defaults in main() apply first
    from olakz_auth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.has_role(ADMIN_ROLE):
            print(f"Account {email} already has the admin role (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant admin to existing account {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.roles.add_role(existing.id, ADMIN_ROLE)
        print(f"Granted admin to existing account {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email,
        password_hash=runtime.accounts.hash_password(password),
        roles=[ADMIN_ROLE, runtime.settings.default_role],
        active_role=ADMIN_ROLE,
        email_verified=True,
        first_name="Admin",
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the Olakz auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
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
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account granted the admin role!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
