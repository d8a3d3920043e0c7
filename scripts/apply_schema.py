#!/usr/bin/env python3
"""Create the standings tables in the database named by LS_DATABASE_URL."""

from __future__ import annotations

import argparse
import asyncio
import os

import asyncpg  # type: ignore[import-untyped]

from standings.services.schema import SCHEMA_SQL, apply_schema, truncate_all


async def _apply(database_url: str, *, truncate: bool) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await apply_schema(conn)
        if truncate:
            await truncate_all(conn)
    finally:
        await conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply the league standings schema.")
    parser.add_argument("--database-url", default=os.getenv("LS_DATABASE_URL"))
    parser.add_argument("--print", dest="print_only", action="store_true", help="Print the DDL and exit")
    parser.add_argument("--truncate", action="store_true", help="Empty every table after applying")
    args = parser.parse_args()

    if args.print_only:
        print(SCHEMA_SQL)
        return
    if not args.database_url:
        parser.error("--database-url or LS_DATABASE_URL is required")
    asyncio.run(_apply(args.database_url, truncate=args.truncate))
    print("schema applied")


if __name__ == "__main__":
    main()
