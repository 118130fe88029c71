#!/usr/bin/env python3
"""Seed system roles and permissions, then create or promote an admin principal.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_USERNAME: Username for the admin principal (defaults to the email local part)
    ADMIN_PASSWORD: Password for the admin principal (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: signing secrets (generated if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

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
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin principal.

    Returns:
        dict with principal_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.service.runtime import get_runtime
    from warden.storage.models import ADMIN_ROLE

    runtime = get_runtime()
    admin_role = runtime.store.get_role_by_code(ADMIN_ROLE)
    if admin_role is None:
        raise RuntimeError("admin role missing after seeding")

    existing = runtime.store.get_principal_by_identifier(email)
    if existing:
        if runtime.rbac.has_role(existing.id, ADMIN_ROLE):
            print(f"Principal {email} already holds the admin role (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing principal {email} to admin")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.assign_role(existing.id, admin_role.id)
        runtime.grant_cache.invalidate(existing.id)
        print(f"Promoted existing principal {email} to admin (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin principal: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    tokens = await runtime.sessions.register(email, username, password)
    runtime.store.assign_role(tokens.principal.id, admin_role.id)
    runtime.grant_cache.invalidate(tokens.principal.id)
    print(f"Created admin principal: {email} (id: {tokens.principal.id})")
    return {"principal_id": tokens.principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    username = args.username or args.email.split("@", 1)[0]

    for var in ("JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET"):
        if not os.environ.get(var):
            os.environ[var] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, username, args.password, args.dry_run)
        )
        if result["status"] == "created":
            print("\nAdmin principal created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Principal ID: {result['principal_id']}")
        elif result["status"] == "promoted":
            print("\nExisting principal promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - principal is already an admin.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
