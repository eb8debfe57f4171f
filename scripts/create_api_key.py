#!/usr/bin/env python3
"""Issue an API key for a user out of band.

Usage:
    # Create the tables first on a fresh database:
    DATABASE_URL=postgresql://localhost:5432/mcp_gateway python scripts/create_api_key.py --apply-schema --user-id alice

    # Key with a quota that expires in 30 days:
    python scripts/create_api_key.py --user-id alice --usage-limit 1000 --expires-in-days 30

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the in-memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_api_key(
    user_id: str,
    *,
    usage_limit: int | None = None,
    expires_in_days: int | None = None,
    apply_schema: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create one API key record.

    Returns:
        dict with api_key, user_id, expires_at, usage_limit and status
        ('created' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from mcp_gateway.config import get_settings
    from mcp_gateway.service.credentials import generate_api_key
    from mcp_gateway.storage.memory import MemoryStore
    from mcp_gateway.storage.models import utcnow
    from mcp_gateway.storage.postgres import PostgresStore

    settings = get_settings()
    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
    api_key = generate_api_key()

    if dry_run:
        print(f"[DRY RUN] Would create API key for user {user_id}")
        return {
            "api_key": None,
            "user_id": user_id,
            "expires_at": expires_at,
            "usage_limit": usage_limit,
            "status": "dry_run",
        }

    if settings.use_memory_store:
        store = MemoryStore()
    else:
        store = PostgresStore(settings.database_url, min_size=1, max_size=1)
    await store.connect(verify_schema=not apply_schema)
    try:
        if apply_schema:
            await store.apply_schema()
            print("Applied gateway schema")
        record = await store.create_api_key(
            api_key, user_id, expires_at=expires_at, usage_limit=usage_limit
        )
    finally:
        await store.close()

    return {
        "api_key": record.api_key,
        "user_id": record.user_id,
        "expires_at": record.expires_at,
        "usage_limit": record.usage_limit,
        "status": "created",
    }


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return number


def main():
    parser = argparse.ArgumentParser(
        description="Create an API key for the MCP gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", required=True, help="Owner of the new key")
    parser.add_argument(
        "--usage-limit",
        type=_positive_int,
        default=None,
        help="Maximum successful calls (unlimited if omitted)",
    )
    parser.add_argument(
        "--expires-in-days",
        type=_positive_int,
        default=None,
        help="Days until the key expires (never if omitted)",
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create the gateway tables before inserting the key",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            create_api_key(
                args.user_id,
                usage_limit=args.usage_limit,
                expires_in_days=args.expires_in_days,
                apply_schema=args.apply_schema,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAPI key created successfully!")
        print(f"  User ID: {result['user_id']}")
        print(f"  API Key: {result['api_key']}")
        print(f"  Usage limit: {result['usage_limit'] or 'unlimited'}")
        print(f"  Expires at: {result['expires_at'] or 'never'}")


if __name__ == "__main__":
    main()
