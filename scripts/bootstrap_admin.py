#!/usr/bin/env python3
"""Seed an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_USERNAME: Username for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: Optional[str],
    username: Optional[str],
    password: str,
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Create an admin, or promote the existing account with that login.

    Returns:
        dict with user_id, login and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from offgrid_auth.service.runtime import Runtime
    from offgrid_auth.storage.models import Role

    runtime = runtime or Runtime()
    login = email or username

    existing_user = None
    for candidate in (email, username):
        if candidate:
            existing_user = runtime.credentials.find_by_login(candidate)
            if existing_user:
                break

    if existing_user:
        if existing_user.role == Role.ADMIN:
            print(f"User {login} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "login": login, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {login} to admin")
            return {"user_id": existing_user.id, "login": login, "status": "dry_run"}

        if existing_user.is_anonymous:
            # anonymous accounts carry no credential to sign in with
            print(f"Refusing to promote anonymous account {existing_user.id}")
            return {"user_id": existing_user.id, "login": login, "status": "skipped"}

        runtime.credentials.set_role(existing_user.id, Role.ADMIN)
        print(f"Promoted existing user {login} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "login": login, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {login}")
        return {"user_id": None, "login": login, "status": "dry_run"}

    password_hash = await asyncio.to_thread(runtime.credentials.hash_password, password)
    user = runtime.credentials.create_credentialed(
        password_hash,
        username=username,
        email=email,
        role=Role.ADMIN,
        verified=True,
    )
    print(f"Created admin user: {login} (id: {user.id})")
    return {"user_id": user.id, "login": login, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for offgrid-auth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=None,
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=None,
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=None,
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Fall back to ADMIN_* from the environment or .env
    from offgrid_auth.config import get_settings, reset_settings_cache

    settings = get_settings()
    args.email = args.email or settings.admin_email
    args.username = args.username or settings.admin_username
    args.password = args.password or settings.admin_password

    if not args.email and not args.username:
        print("Error: --email/--username or ADMIN_EMAIL/ADMIN_USERNAME required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/offgrid-auth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    reset_settings_cache()

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.username, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Login: {result['login']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
