#!/usr/bin/env python3
"""Bootstrap an admin account for a fresh deployment.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Admin passwords need 12+ characters and three character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # imported late so the env defaults below are visible to get_settings()
    from toolflow.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.get_user_by_email(email)
        if existing:
            if existing.role == "ADMIN":
                print(f"User {email} already exists as admin (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            runtime.store.update_user(existing.id, role="ADMIN")
            print(f"Promoted existing user {email} to admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = runtime.auth.register(email, password, role="ADMIN")
        session = await runtime.auth.start_session(user)
        print(f"Created admin user: {email} (id: {user.id})")
        return {
            "user_id": user.id,
            "email": email,
            "status": "created",
            "session_token": session.session_token,
        }
    finally:
        await runtime.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for toolflow",
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
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("REMOTE_STORE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email.strip().lower(), args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
