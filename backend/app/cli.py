#!/usr/bin/env python3
# Admin command line for the email API database
# Key issuance, plaintext-key migration and pool diagnostics

import argparse
import asyncio
import json
import sys

from sqlalchemy import insert, select

from app.config import settings
from app.database import ConnectionPoolManager
from app.logging_config import configure_logging
from app.models.api_key import EmailApiKey
from app.services.api_keys import generate_api_key, hash_api_key, migrate_plaintext_keys


async def create_key(pool: ConnectionPoolManager, subdomain: str, description: str | None) -> str:
    """Insert a hashed key for ``subdomain`` and return the raw value."""
    existing = await pool.execute_query(select(EmailApiKey.id).where(EmailApiKey.subdomain == subdomain))
    if existing:
        raise SystemExit(f"An API key already exists for subdomain '{subdomain}'")

    raw_key = generate_api_key()
    await pool.execute_query(
        insert(EmailApiKey).values(
            subdomain=subdomain,
            key_hash=hash_api_key(raw_key),
            description=description,
            is_active=True,
        )
    )
    return raw_key


async def run(args: argparse.Namespace) -> int:
    pool = ConnectionPoolManager.from_settings(settings)
    await pool.initialize()
    try:
        if args.command == "init-db":
            await pool.create_all()
            print("Tables created")
        elif args.command == "create-key":
            raw_key = await create_key(pool, args.subdomain, args.description)
            print(f"API key for {args.subdomain} (shown once, store it securely):")
            print(raw_key)
        elif args.command == "migrate-keys":
            migrated = await migrate_plaintext_keys(pool)
            print(f"Migrated {migrated} plaintext key(s)")
        elif args.command == "pool-stats":
            healthy = await pool.health_check()
            print(json.dumps({**pool.get_connection_stats().as_dict(), "healthy": healthy}, indent=2))
    finally:
        await pool.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="MOLOCHAIN Email API - database administration"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create missing tables")

    create = sub.add_parser("create-key", help="Issue an API key for a subdomain")
    create.add_argument("--subdomain", required=True, help="Subdomain that will own the key")
    create.add_argument("--description", default=None, help="Free-text note shown in the admin list")

    sub.add_parser("migrate-keys", help="Hash legacy plaintext API keys")
    sub.add_parser("pool-stats", help="Print connection pool stats and health")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(level=settings.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
