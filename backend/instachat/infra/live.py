"""Live subscriptions over changing snapshots.

A subscription is bound to a topic (``messages:<conversation_id>``,
``conversation:<conversation_id>``, ``presence:<username>`` ...) and a loader
that produces the current snapshot. Writers call ``LiveHub.publish(topic)``
after committing a change; every open subscription on that topic is marked
stale and reloads its own snapshot the next time its consumer awaits it.
Several changes between two awaits coalesce into one reload, and cancelling a
subscription only detaches that subscription.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Generic, Optional, Set, TypeVar

from instachat.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")
Loader = Callable[[], Awaitable[T]]


def topic_family(topic: str) -> str:
	return topic.split(":", 1)[0]


class Subscription(Generic[T]):
	"""Cancellable stream of snapshots for one topic."""

	def __init__(self, hub: "LiveHub", topic: str, loader: Loader[T]) -> None:
		self._hub = hub
		self.topic = topic
		self._loader = loader
		self._changed = asyncio.Event()
		# The first await always delivers the initial snapshot
		self._changed.set()
		self._closed = False
		self.latest: Optional[T] = None
		self.delivered = 0

	@property
	def closed(self) -> bool:
		return self._closed

	def mark_stale(self) -> None:
		if not self._closed:
			self._changed.set()

	async def next(self) -> T:
		"""Wait for the next snapshot.

		Raises StopAsyncIteration once the subscription is cancelled. Loader
		errors propagate to the caller; the subscription stays open and the
		next change triggers a fresh attempt.
		"""
		if self._closed:
			raise StopAsyncIteration
		await self._changed.wait()
		if self._closed:
			raise StopAsyncIteration
		self._changed.clear()
		value = await self._loader()
		self.latest = value
		self.delivered += 1
		return value

	def cancel(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._hub._detach(self)
		# Wake a consumer blocked in next() so it can observe the close
		self._changed.set()

	def __aiter__(self) -> "Subscription[T]":
		return self

	async def __anext__(self) -> T:
		return await self.next()

	async def __aenter__(self) -> "Subscription[T]":
		return self

	async def __aexit__(self, *exc_info) -> None:
		self.cancel()


class LiveHub:
	"""Topic registry shared by the stores of one chat engine."""

	def __init__(self) -> None:
		self._topics: Dict[str, Set[Subscription]] = defaultdict(set)

	def subscribe(self, topic: str, loader: Loader[T]) -> Subscription[T]:
		subscription: Subscription[T] = Subscription(self, topic, loader)
		self._topics[topic].add(subscription)
		obs_metrics.live_subscription_opened(topic_family(topic))
		return subscription

	def publish(self, topic: str) -> int:
		"""Mark every subscription on ``topic`` stale; returns how many were woken."""
		subscribers = list(self._topics.get(topic, ()))
		for subscription in subscribers:
			subscription.mark_stale()
		return len(subscribers)

	def subscriber_count(self, topic: str) -> int:
		return len(self._topics.get(topic, ()))

	def _detach(self, subscription: Subscription) -> None:
		subscribers = self._topics.get(subscription.topic)
		if not subscribers or subscription not in subscribers:
			return
		subscribers.discard(subscription)
		if not subscribers:
			self._topics.pop(subscription.topic, None)
		obs_metrics.live_subscription_closed(topic_family(subscription.topic))

	async def shutdown(self) -> None:
		"""Cancel every open subscription (application shutdown/tests)."""
		subscriptions = [sub for subs in self._topics.values() for sub in subs]
		for subscription in subscriptions:
			subscription.cancel()
		if subscriptions:
			logger.info("live_hub_shutdown", extra={"cancelled": len(subscriptions)})
		# Let woken consumers observe the close before callers tear down further
		await asyncio.sleep(0)
