import asyncio

import pytest

from instachat.infra.live import LiveHub


class Counter:
	def __init__(self) -> None:
		self.value = 0
		self.loads = 0
		self.fail = False

	async def load(self) -> int:
		self.loads += 1
		if self.fail:
			raise RuntimeError("backend down")
		return self.value


@pytest.mark.asyncio
async def test_first_next_delivers_initial_snapshot():
	hub = LiveHub()
	counter = Counter()
	subscription = hub.subscribe("messages:chat:alice:bob", counter.load)

	assert await subscription.next() == 0
	assert subscription.latest == 0
	assert hub.subscriber_count("messages:chat:alice:bob") == 1


@pytest.mark.asyncio
async def test_publish_coalesces_changes_between_awaits():
	hub = LiveHub()
	counter = Counter()
	subscription = hub.subscribe("t:1", counter.load)
	await subscription.next()

	counter.value = 1
	hub.publish("t:1")
	counter.value = 2
	hub.publish("t:1")

	assert await subscription.next() == 2
	assert counter.loads == 2


@pytest.mark.asyncio
async def test_publish_only_wakes_matching_topic():
	hub = LiveHub()
	counter = Counter()
	subscription = hub.subscribe("t:1", counter.load)
	await subscription.next()

	assert hub.publish("t:2") == 0
	with pytest.raises(asyncio.TimeoutError):
		await asyncio.wait_for(subscription.next(), timeout=0.05)


@pytest.mark.asyncio
async def test_cancel_detaches_only_that_subscription():
	hub = LiveHub()
	counter = Counter()
	first = hub.subscribe("t:1", counter.load)
	second = hub.subscribe("t:1", counter.load)

	first.cancel()
	assert first.closed
	assert hub.subscriber_count("t:1") == 1
	with pytest.raises(StopAsyncIteration):
		await first.next()
	assert await second.next() == 0


@pytest.mark.asyncio
async def test_cancel_wakes_blocked_consumer():
	hub = LiveHub()
	counter = Counter()
	subscription = hub.subscribe("t:1", counter.load)
	await subscription.next()

	waiter = asyncio.create_task(subscription.next())
	await asyncio.sleep(0)
	subscription.cancel()
	with pytest.raises(StopAsyncIteration):
		await waiter


@pytest.mark.asyncio
async def test_loader_error_keeps_subscription_open():
	hub = LiveHub()
	counter = Counter()
	subscription = hub.subscribe("t:1", counter.load)
	counter.fail = True

	with pytest.raises(RuntimeError):
		await subscription.next()
	assert not subscription.closed

	counter.fail = False
	counter.value = 7
	hub.publish("t:1")
	assert await subscription.next() == 7


@pytest.mark.asyncio
async def test_shutdown_cancels_everything():
	hub = LiveHub()
	counter = Counter()
	subscriptions = [hub.subscribe(f"t:{i}", counter.load) for i in range(3)]

	await hub.shutdown()

	assert all(sub.closed for sub in subscriptions)
	assert hub.subscriber_count("t:0") == 0
