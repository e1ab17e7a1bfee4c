#!/usr/bin/env python3
"""Provision a user with a phone number and password.

Usage:
    python scripts/create_user.py --username alice --phone 9876543210 --password 's3cret!'

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    REDIS_URL: Redis URL (optional for this script)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(username: str, phone: str, password: str, name: str | None) -> dict:
    # Import here to avoid loading config before env vars are set
    from consentmanager.service.runtime import get_runtime

    runtime = get_runtime()
    existing = await runtime.users.user_with(username)
    if existing:
        runtime.tokens.save_password(username, password)
        return {"username": username, "status": "password_updated"}

    await runtime.users.create_user(username, phone, name=name)
    runtime.tokens.save_password(username, password)
    return {"username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a consent manager user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", required=True)
    parser.add_argument("--phone", required=True, help="Phone number OTPs are sent to")
    parser.add_argument("--password", default=os.environ.get("USER_PASSWORD"))
    parser.add_argument("--name", default=None)
    args = parser.parse_args()

    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(create_user(args.username, args.phone, args.password, args.name))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['username']}")


if __name__ == "__main__":
    main()
