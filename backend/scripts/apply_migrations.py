"""Apply every SQL file under backend/migrations in filename order.

Usage: python backend/scripts/apply_migrations.py [migration_filename]
"""

import asyncio
import os
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_ROOT))

from instachat.infra.postgres import close_pool, get_pool  # noqa: E402

MIGRATION_DIR = BACKEND_ROOT / "migrations"


async def main(only: str | None = None) -> int:
    files = sorted(path for path in MIGRATION_DIR.glob("*.sql") if only is None or path.name == only)
    if not files:
        print(f"No migrations found in {MIGRATION_DIR}")
        return 1

    pool = await get_pool()
    try:
        async with pool.acquire() as conn:
            for path in files:
                print(f"Executing {path.name}...")
                # Migrations are idempotent (IF NOT EXISTS); each file runs in its own transaction
                async with conn.transaction():
                    await conn.execute(path.read_text())
                print(f"Finished {path.name}")
    finally:
        await close_pool()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else os.environ.get("MIGRATION"))))
