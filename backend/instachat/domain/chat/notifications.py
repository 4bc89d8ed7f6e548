"""Push-notification fan-out for chat events."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

import asyncpg

from instachat.domain.chat.models import Conversation, Group, MessageContent
from instachat.domain.directory import Directory, User
from instachat.infra.push import PushDelivery, PushPayload, build_push_delivery
from instachat.obs import metrics as obs_metrics
from instachat.settings import settings

logger = logging.getLogger(__name__)


def summary_for(content: MessageContent) -> str:
	"""Preview shown in the notification: the text, or ``<kind>/`` for media."""
	return content.summary()


class NotificationDispatcher:
	"""Sends one payload per recipient; delivery problems are logged, never raised."""

	def __init__(
		self,
		directory: Directory,
		push: PushDelivery | None = None,
		*,
		base_url: Optional[str] = None,
	) -> None:
		self._directory = directory
		self._push = push or build_push_delivery()
		self._base_url = (base_url or settings.public_base_url).rstrip("/")

	def link_for(self, conversation_id: str) -> str:
		return f"{self._base_url}/chat/{conversation_id}"

	async def _lookup(self, usernames: Sequence[str]) -> Optional[Dict[str, User]]:
		try:
			return await self._directory.lookup_many(usernames)
		except (asyncpg.PostgresError, OSError):
			logger.warning("notify_lookup_failed", extra={"recipients": len(usernames)})
			obs_metrics.inc_notification("lookup_failed")
			return None

	async def _deliver(self, payload: PushPayload) -> None:
		try:
			await self._push.deliver(payload)
		except Exception:
			logger.warning("push_delivery_failed", extra={"target_uid": payload.target_uid}, exc_info=True)
			obs_metrics.inc_notification("failed")
			return
		obs_metrics.inc_notification("sent")

	async def _fan_out(self, conversation_id: str, sender: str, recipients: Sequence[str], body: str) -> int:
		if not recipients:
			return 0
		users = await self._lookup((sender, *recipients))
		if users is None:
			return 0
		author = users.get(sender)
		title = author.display_name if author else sender
		icon = author.avatar_url if author else None
		link = self.link_for(conversation_id)
		handed = 0
		for username in recipients:
			user = users.get(username)
			if user is None:
				obs_metrics.inc_notification("unknown_recipient")
				continue
			await self._deliver(PushPayload(target_uid=user.uid, title=title, body=body, icon=icon, link=link))
			handed += 1
		logger.info("chat_notified", extra={"conversation_id": conversation_id, "recipients": handed})
		return handed

	async def notify(self, conversation: Conversation, sender: str, summary: str) -> int:
		return await self._fan_out(conversation.id, sender, conversation.recipients_for(sender), summary)

	async def notify_member_added(self, group: Group, actor: str, username: str) -> int:
		return await self._fan_out(group.id, actor, (username,), f"added you to {group.name}")

	async def aclose(self) -> None:
		close = getattr(self._push, "aclose", None)
		if close is not None:
			await close()
