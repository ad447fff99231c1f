#!/usr/bin/env python3
"""Create a user account for initial setup or manual testing.

Usage:
    # Using environment variables:
    NEW_USERNAME=alice NEW_EMAIL=alice@example.com NEW_PASSWORD=correct-horse python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --username alice --email alice@example.com --password correct-horse

Environment Variables:
    NEW_USERNAME / NEW_EMAIL / NEW_PASSWORD: account fields
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: signing secret; a login token is printed only when this is set
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


async def create_user(
    username: str,
    email: str,
    password: str,
    dry_run: bool = False,
    issue_token: bool = True,
    runtime=None,
) -> dict:
    """Register the account; log it in when ``issue_token`` is set."""
    # Import here so config is read after the env defaults below are applied
    from harbinger.api.schemas import RegisterRequest
    from harbinger.service.errors import ConflictError
    from harbinger.service.runtime import Runtime

    body = RegisterRequest(username=username, email=email, password=password)
    runtime = runtime or Runtime()
    try:
        existing = runtime.store.get_user_by_username_or_email(body.username)
        if existing is None:
            existing = runtime.store.get_user_by_username_or_email(body.email)
        if existing is not None:
            print(f"User {existing.username} already exists (id: {existing.id})")
            return {"user_id": existing.id, "username": existing.username, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {body.username}")
            return {"user_id": None, "username": body.username, "status": "dry_run"}

        try:
            user = await runtime.sessions.register(body.username, body.email, body.password)
        except ConflictError as exc:
            print(f"User could not be created: {exc.message}")
            return {"user_id": None, "username": body.username, "status": "conflict"}
        result = {"user_id": user.id, "username": user.username, "status": "created"}
        if issue_token:
            result["token"] = await runtime.sessions.login(body.username, body.password)
        return result
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a Harbinger user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("NEW_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("NEW_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("NEW_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    missing = [name for name in ("username", "email", "password") if not getattr(args, name)]
    if missing:
        print(f"Error: missing {', '.join('--' + name for name in missing)}")
        sys.exit(1)

    # A token signed with a one-off secret would not verify anywhere else
    secret_supplied = bool(os.environ.get("JWT_SECRET"))
    if not secret_supplied:
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Account creation never touches Redis
    os.environ.setdefault("TEST_MODE", "true")

    try:
        result = asyncio.run(
            create_user(
                args.username,
                args.email,
                args.password,
                args.dry_run,
                issue_token=secret_supplied,
            )
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        if "token" in result:
            print(f"  Token: {result['token'][:24]}...")
        else:
            print("  No token issued: set JWT_SECRET to the server's signing secret to get one")


if __name__ == "__main__":
    main()
