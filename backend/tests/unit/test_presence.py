from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from instachat.domain.chat.errors import Unavailable
from instachat.domain.chat.presence import PresenceTracker, presence_key
from instachat.domain.directory import User


class FakeClock:
	def __init__(self, start_ms: int) -> None:
		self.ms = start_ms

	def __call__(self) -> int:
		return self.ms


@pytest.mark.asyncio
async def test_set_active_writes_redis_hash(engine, fake_redis):
	clock = FakeClock(1_700_000_000_000)
	tracker = PresenceTracker(engine.hub, engine.directory, clock_ms=clock)

	presence = await tracker.set_active("alice", True)

	assert presence.active is True
	stored = await fake_redis.hgetall(presence_key("alice"))
	assert stored == {"active": "1", "ts": "1700000000000"}


@pytest.mark.asyncio
async def test_last_write_wins(engine):
	clock = FakeClock(1_000)
	tracker = PresenceTracker(engine.hub, engine.directory, clock_ms=clock)

	await tracker.set_active("bob", True)
	clock.ms = 2_000
	await tracker.set_active("bob", False)

	presence = await tracker.get("bob")
	assert presence.active is False
	assert presence.last_seen == datetime.fromtimestamp(2, tz=timezone.utc)


@pytest.mark.asyncio
async def test_unknown_presence_falls_back_to_directory(engine):
	seen = datetime(2024, 2, 2, 8, 30, tzinfo=timezone.utc)
	await engine.directory.upsert(User(uid="uid-erin", username="erin", last_seen=seen))

	presence = await engine.presence.get("erin")
	assert presence.active is False
	assert presence.last_seen == seen

	nobody = await engine.presence.get("ghost")
	assert nobody.active is False
	assert nobody.last_seen is None


@pytest.mark.asyncio
async def test_observe_follows_changes(engine):
	subscription = engine.presence.observe("carol")
	assert (await subscription.next()).active is False

	await engine.presence.set_active("carol", True)

	assert (await subscription.next()).active is True


@pytest.mark.asyncio
async def test_redis_failure_maps_to_unavailable(engine, monkeypatch):
	from instachat.infra.redis import redis_client

	async def broken_hset(*args, **kwargs):
		raise RedisConnectionError("down")

	monkeypatch.setattr(redis_client.client, "hset", broken_hset)

	with pytest.raises(Unavailable) as exc:
		await engine.presence.set_active("alice", True)
	assert exc.value.reason == "presence_unavailable"
