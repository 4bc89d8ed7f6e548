"""Push delivery collaborator.

The chat core hands one payload per recipient to a delivery backend and
ignores the outcome beyond logging it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from instachat.settings import settings

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PushPayload:
	target_uid: str
	title: str
	body: str
	icon: Optional[str]
	link: str

	def to_dict(self) -> dict:
		return {
			"targetUid": self.target_uid,
			"title": self.title,
			"body": self.body,
			"icon": self.icon,
			"link": self.link,
		}


class PushDelivery(Protocol):
	async def deliver(self, payload: PushPayload) -> None:
		...


class HttpPushDelivery:
	"""POST payloads as JSON to an external push gateway."""

	def __init__(self, endpoint: str, *, timeout: float | None = None, client: httpx.AsyncClient | None = None) -> None:
		self.endpoint = endpoint
		self._client = client or httpx.AsyncClient(timeout=timeout or settings.push_timeout_seconds)

	async def deliver(self, payload: PushPayload) -> None:
		response = await self._client.post(self.endpoint, json=payload.to_dict())
		response.raise_for_status()

	async def aclose(self) -> None:
		await self._client.aclose()


class DisabledPushDelivery:
	"""Used when no push gateway is configured."""

	async def deliver(self, payload: PushPayload) -> None:
		logger.debug("push_disabled", extra={"target_uid": payload.target_uid})


def build_push_delivery() -> PushDelivery:
	if settings.push_endpoint:
		return HttpPushDelivery(settings.push_endpoint)
	return DisabledPushDelivery()
