"""Directory lookups backed by Postgres with an in-memory fallback."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

import asyncpg

from instachat.domain.directory.models import User
from instachat.infra.live import LiveHub, Subscription
from instachat.infra.postgres import PoolOrMemory

USERS_TOPIC = "directory:users"


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.users: Dict[str, User] = {}

	async def upsert(self, user: User) -> User:
		async with self._lock:
			self.users[user.username] = user
			return user

	async def get(self, username: str) -> Optional[User]:
		async with self._lock:
			return self.users.get(username)

	async def list_users(self) -> List[User]:
		async with self._lock:
			return list(self.users.values())


_MEMORY = _MemoryStore()


def _row_to_user(row: asyncpg.Record) -> User:
	return User(
		uid=str(row["uid"]),
		username=str(row["username"]),
		fullname=row["fullname"] or "",
		bio=row["bio"] or "",
		avatar_url=row["avatar_url"],
		active=bool(row["active"]),
		last_seen=row["last_seen"],
	)


class DirectoryRepository(PoolOrMemory):
	async def get(self, username: str) -> Optional[User]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.get(username)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM users WHERE username = $1", username)
			return _row_to_user(row) if row else None

	async def list_users(self) -> List[User]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.list_users()
		async with pool.acquire() as conn:
			rows = await conn.fetch("SELECT * FROM users ORDER BY username")
			return [_row_to_user(row) for row in rows]

	async def upsert(self, user: User) -> User:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.upsert(user)
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO users (uid, username, fullname, bio, avatar_url, active, last_seen)
				VALUES ($1,$2,$3,$4,$5,$6,$7)
				ON CONFLICT (uid) DO UPDATE SET
					fullname = EXCLUDED.fullname,
					bio = EXCLUDED.bio,
					avatar_url = EXCLUDED.avatar_url,
					active = EXCLUDED.active,
					last_seen = EXCLUDED.last_seen
				""",
				user.uid,
				user.username,
				user.fullname,
				user.bio,
				user.avatar_url,
				user.active,
				user.last_seen,
			)
		return user


class Directory:
	"""Read view of user records used for avatars, names and role checks."""

	def __init__(self, hub: LiveHub, repository: DirectoryRepository | None = None) -> None:
		self._hub = hub
		self._repo = repository or DirectoryRepository()

	async def lookup_by_username(self, username: str) -> Optional[User]:
		if not username:
			return None
		return await self._repo.get(username)

	async def lookup_many(self, usernames: Iterable[str]) -> Dict[str, User]:
		found: Dict[str, User] = {}
		for username in dict.fromkeys(usernames):
			user = await self._repo.get(username)
			if user is not None:
				found[username] = user
		return found

	def all_users(self) -> Subscription[List[User]]:
		return self._hub.subscribe(USERS_TOPIC, self._repo.list_users)

	async def upsert(self, user: User) -> User:
		"""Seed or refresh a record (profile service sync, dev fixtures)."""
		stored = await self._repo.upsert(user)
		self._hub.publish(USERS_TOPIC)
		return stored
