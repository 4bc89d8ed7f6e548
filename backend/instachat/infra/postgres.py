"""AsyncPG pool management for the backend."""

from __future__ import annotations

from typing import Optional

import asyncpg

from instachat.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		# Force 127.0.0.1 instead of localhost to avoid IPv6 resolution issues
		dsn = settings.postgres_url.replace("localhost", "127.0.0.1")
		_pool = await asyncpg.create_pool(
			dsn=dsn,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


class PoolOrMemory:
	"""Mixin for repositories backed by asyncpg with an in-memory fallback.

	The pool lookup happens once per repository; when Postgres cannot be
	reached the repository keeps serving from process memory (dev and tests).
	"""

	def __init__(self) -> None:
		self._pool_checked = False
		self._pool_instance: Optional[asyncpg.Pool] = None

	async def _get_pool(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool_instance
		self._pool_checked = True
		try:
			pool = await get_pool()
		except (AssertionError, OSError, asyncpg.PostgresError):
			pool = None
		self._pool_instance = pool
		return pool
