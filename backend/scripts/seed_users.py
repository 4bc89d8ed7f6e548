"""Seed directory users for local chat testing.

Usage: python backend/scripts/seed_users.py alice bob carol
"""

import asyncio
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from instachat.domain.directory import Directory, User  # noqa: E402
from instachat.infra.live import LiveHub  # noqa: E402
from instachat.infra.postgres import close_pool  # noqa: E402


async def main(usernames: list[str]) -> None:
    directory = Directory(LiveHub())
    try:
        for username in usernames:
            existing = await directory.lookup_by_username(username)
            uid = existing.uid if existing else str(uuid.uuid4())
            await directory.upsert(User(uid=uid, username=username, fullname=username.title()))
            print(f"Seeded {username} ({uid})")
    finally:
        await close_pool()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:] or ["alice", "bob", "carol", "dave", "erin"]))
