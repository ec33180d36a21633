from __future__ import annotations

import argparse
import os
import sys
from typing import Sequence

from pocketledger.persistence import SqlStorage
from pocketledger.tables import render_schema_sql


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create the finance tables or print their DDL.")
    parser.add_argument("--database-url", default=os.getenv("DATABASE_URL", ""))
    parser.add_argument("--print-sql", action="store_true", help="print PostgreSQL DDL for the Supabase SQL editor")
    args = parser.parse_args(argv)

    if args.print_sql:
        print(render_schema_sql())
        return 0
    if not args.database_url:
        print("DATABASE_URL is not set and --database-url was not given.", file=sys.stderr)
        return 2

    storage = SqlStorage(args.database_url, provider=args.database_url.split(":", 1)[0].split("+", 1)[0])
    try:
        missing = storage.missing_tables()
        storage.ensure_schema()
    finally:
        storage.close()
    if missing:
        print(f"Created: {', '.join(missing)}")
    print("Schema is up to date.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
