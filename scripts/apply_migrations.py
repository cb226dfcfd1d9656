#!/usr/bin/env python3
"""Apply the job scheduler migrations in filename order."""
import asyncio
import os
from pathlib import Path

import asyncpg

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            await conn.execute(path.read_text())
            print(f"Applied {path.name}")

        # Verify
        for table in ("scheduled_jobs", "job_executions"):
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = $1",
                table,
            )
            print(f"{table} has {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
