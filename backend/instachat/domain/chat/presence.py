"""Per-user online state kept in redis."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from redis.exceptions import RedisError

from instachat.domain.chat.errors import Unavailable
from instachat.domain.chat.models import Presence
from instachat.domain.directory import Directory
from instachat.infra.live import LiveHub, Subscription
from instachat.infra.redis import redis_client
from instachat.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_USER_KEY = "chat:presence:{username}"


def presence_key(username: str) -> str:
	return _USER_KEY.format(username=username)


def presence_topic(username: str) -> str:
	return f"presence:{username}"


def _now_ms() -> int:
	return int(time.time() * 1000)


class PresenceTracker:
	"""Last-write-wins active flag per username.

	There is no heartbeat: a client that drops without calling
	``set_active(username, False)`` stays active until it returns.
	"""

	def __init__(self, hub: LiveHub, directory: Directory, *, clock_ms: Callable[[], int] | None = None) -> None:
		self._hub = hub
		self._directory = directory
		self._clock_ms = clock_ms or _now_ms

	async def set_active(self, username: str, active: bool) -> Presence:
		now_ms = self._clock_ms()
		try:
			await redis_client.hset(presence_key(username), mapping={"active": "1" if active else "0", "ts": str(now_ms)})
		except (RedisError, OSError) as exc:
			logger.warning("presence_write_failed", extra={"active": active})
			raise Unavailable("presence_unavailable") from exc
		obs_metrics.inc_presence_update(active)
		self._hub.publish(presence_topic(username))
		return Presence(
			username=username,
			active=active,
			last_seen=datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc),
		)

	async def get(self, username: str) -> Presence:
		try:
			raw = await redis_client.hgetall(presence_key(username))
		except (RedisError, OSError) as exc:
			raise Unavailable("presence_unavailable") from exc
		if raw and raw.get("ts"):
			return Presence(
				username=username,
				active=raw.get("active") == "1",
				last_seen=datetime.fromtimestamp(int(raw["ts"]) / 1000, tz=timezone.utc),
			)
		user = await self._directory.lookup_by_username(username)
		last_seen: Optional[datetime] = user.last_seen if user else None
		return Presence(username=username, active=False, last_seen=last_seen)

	def observe(self, username: str) -> Subscription[Presence]:
		async def _load() -> Presence:
			return await self.get(username)

		return self._hub.subscribe(presence_topic(username), _load)
