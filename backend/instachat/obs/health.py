"""Health check helpers for liveness and readiness probes."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, Tuple

import asyncpg
from redis.exceptions import RedisError

from instachat.infra import postgres
from instachat.infra.redis import redis_client

LOGGER = logging.getLogger(__name__)


async def _redis_status(timeout: float = 0.2) -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
	except (RedisError, OSError, asyncio.TimeoutError) as exc:
		LOGGER.warning("Redis readiness check failed", exc_info=True)
		return {"ok": False, "error": str(exc) or exc.__class__.__name__}
	return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}


async def _postgres_status(timeout: float = 0.3) -> Dict[str, Any]:
	start = perf_counter()
	try:
		pool = await postgres.get_pool()
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
	except (AssertionError, OSError, asyncpg.PostgresError, asyncio.TimeoutError) as exc:
		LOGGER.warning("Postgres readiness query failed", exc_info=True)
		return {"ok": False, "error": str(exc) or exc.__class__.__name__}
	return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	redis_state = await _redis_status()
	postgres_state = await _postgres_status()
	ok = bool(redis_state.get("ok") and postgres_state.get("ok"))
	return (
		200 if ok else 503,
		{
			"status": "ok" if ok else "degraded",
			"redis": redis_state,
			"postgres": postgres_state,
		},
	)
