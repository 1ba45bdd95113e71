#!/usr/bin/env python3
"""Create a user account for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=alice@example.com BOOTSTRAP_PASSWORD=correct-horse python scripts/bootstrap_user.py

    # Or with command line args, printing a fresh token:
    python scripts/bootstrap_user.py --email alice@example.com --password correct-horse --login

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user
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


async def bootstrap_user(
    email: str, password: str, *, login: bool = False, dry_run: bool = False
) -> dict:
    """Create a user, optionally logging in.

    Returns:
        dict with user_id, email, status ('created', 'exists' or 'dry_run') and
        the issued token when ``login`` is set
    """
    # Import here to avoid loading config before env vars are set
    from authledger.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "log in as" if existing_user else "create"
        print(f"[DRY RUN] Would {action} user: {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        result = {"user_id": existing_user.id, "email": email, "status": "exists"}
    else:
        signup = await runtime.auth.signup(email, password)
        if not signup.ok:
            raise RuntimeError(f"signup failed: {signup.error.value}")
        print(f"Created user: {email} (id: {signup.user.id})")
        result = {"user_id": signup.user.id, "email": email, "status": "created"}

    if login:
        attempt = await runtime.auth.login(email, password)
        if not attempt.ok:
            raise RuntimeError(f"login failed: {attempt.error.value}")
        result["token"] = attempt.token
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Create a user account for authledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--login",
        action="store_true",
        help="Log in after sign-up and print the issued token",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authledger-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_user(
                args.email, args.password, login=args.login, dry_run=args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo account created - user already exists.")
    if result.get("token"):
        print(f"  Token: {result['token']}")


if __name__ == "__main__":
    main()
