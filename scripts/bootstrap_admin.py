#!/usr/bin/env python3
"""Bootstrap the super-admin account for a fresh installation.

Usage:
    # Defaults (admin / admin123, bound to the superAdmin role):
    python scripts/bootstrap_admin.py

    # Or with explicit credentials:
    python scripts/bootstrap_admin.py --username ops --password 'S3cure-pass' --email ops@yishan.com

Environment Variables:
    ADMIN_USERNAME / ADMIN_PASSWORD / ADMIN_EMAIL: defaults for the flags above
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SUPER_ADMIN_CODE = "superAdmin"


async def bootstrap_admin(
    username: str, password: str, email: str | None, dry_run: bool = False
) -> dict:
    """Create the admin user if missing and bind it to the super-admin role.

    Returns:
        dict with user_id, username, and status ('created', 'bound', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from yishan_auth.service.runtime import get_runtime

    runtime = get_runtime()
    role = runtime.store.get_role_by_code(SUPER_ADMIN_CODE)
    if role is None:
        print(f"Error: role '{SUPER_ADMIN_CODE}' is missing from the store")
        sys.exit(1)

    existing = runtime.store.get_user_by_identifier(username)
    if existing:
        role_ids = runtime.store.get_user_role_ids(existing.id)
        if role.id in role_ids:
            print(f"User {username} already holds {SUPER_ADMIN_CODE} (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would bind existing user {username} to {SUPER_ADMIN_CODE}")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        runtime.store.assign_user_roles(existing.id, [*role_ids, role.id])
        await runtime.menus.invalidate()
        print(f"Bound existing user {username} to {SUPER_ADMIN_CODE} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "bound"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.auth.create_user(
        username, password, email=email, real_name="Administrator", role_ids=[role.id]
    )
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the Yishan admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD", "admin123"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL", "admin@yishan.com"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if len(args.password) < 6:
        print("Error: Password must be at least 6 characters")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/yishan-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.password, args.email, args.dry_run)
        )
        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Username: {result['username']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "bound":
            print("\nExisting user promoted to super admin!")
        elif result["status"] == "exists":
            print("\nNo changes needed - user is already a super admin.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
