#!/usr/bin/env python3
"""Create or promote the first administrator account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email root@example.com --password SecurePassword123! --role super_admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
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

ADMIN_ROLES = ("admin", "super_admin")


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    email: str, password: str, role: str = "admin", dry_run: bool = False
) -> dict:
    """Create or promote an administrator.

    Returns:
        dict with user_id, email, role and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sentinel.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == role:
            print(f"User {email} already has role {role} (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "role": role,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {role}")
            return {"user_id": existing_user.id, "email": email, "role": role, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, role)
        runtime.store.set_user_verified(existing_user.id, True)
        print(f"Promoted existing user {email} to {role} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": email,
            "role": role,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = runtime.store.create_user(email, None, role=role)
    runtime.auth.save_password(user.id, password)
    runtime.store.set_user_verified(user.id, True)

    print(f"Created {role} user: {email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": email,
        "role": role,
        "status": "created",
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for Sentinel",
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
        "--role",
        choices=ADMIN_ROLES,
        default="admin",
        help="Role to grant (default: admin)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/sentinel-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.role, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role: {result['role']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user already has that role.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
