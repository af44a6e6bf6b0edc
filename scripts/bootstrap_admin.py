#!/usr/bin/env python3
"""Create or promote an admin account in the newsroom ``users`` table.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Password123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Password123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must pass the password policy)
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from gatehouse.service.credentials import assess_password  # noqa: E402
from gatehouse.storage.directory import hash_password, normalize_identifier  # noqa: E402


def bootstrap_admin(directory, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or update an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    email = normalize_identifier(email)
    existing = directory.find_by_identifier(email)

    if existing:
        if existing.role == "admin":
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        directory.update_role(existing.id, "admin")
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    principal = directory.create_user(
        email, hash_password(password), role="admin", display_name="Administrator"
    )
    print(f"Created admin user: {email} (id: {principal.id})")
    return {"user_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for gatehouse",
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
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
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

    assessment = assess_password(args.password)
    if not assessment.is_valid:
        print("Error: password does not meet the password policy:")
        for issue in assessment.issues:
            print(f"       - {issue}")
        sys.exit(1)
    print(f"Password strength: {assessment.strength} ({assessment.score}/10)")

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    from gatehouse.storage.postgres import PostgresDirectory

    directory = PostgresDirectory(args.database_url, min_size=1, max_size=1)
    try:
        result = bootstrap_admin(directory, args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        directory.close()

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
