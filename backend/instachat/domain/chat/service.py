"""Chat engine wiring and the send pipeline shared by sessions and the REST API."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from instachat.domain.chat.errors import ChatError, InvalidMessage
from instachat.domain.chat.models import (
	AttachmentContent,
	Conversation,
	Message,
	TextContent,
	text_content,
)
from instachat.domain.chat.notifications import NotificationDispatcher, summary_for
from instachat.domain.chat.presence import PresenceTracker
from instachat.domain.chat.registry import ConversationRegistry
from instachat.domain.chat.session import ChangeCallback, ChatSession
from instachat.domain.chat.store import MessageStore
from instachat.domain.chat.uploads import SURFACE_CHAT, MediaFile, ProgressCallback, UploadJob, UploadPipeline
from instachat.domain.directory import Directory
from instachat.infra.live import LiveHub
from instachat.infra.push import PushDelivery
from instachat.infra.storage import ObjectStorage
from instachat.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class ChatEngine:
	"""Owns one instance of every chat component, all sharing a LiveHub."""

	def __init__(
		self,
		*,
		hub: LiveHub | None = None,
		directory: Directory | None = None,
		store: MessageStore | None = None,
		registry: ConversationRegistry | None = None,
		uploads: UploadPipeline | None = None,
		notifier: NotificationDispatcher | None = None,
		presence: PresenceTracker | None = None,
		storage: ObjectStorage | None = None,
		push: PushDelivery | None = None,
	) -> None:
		self.hub = hub or LiveHub()
		self.directory = directory or Directory(self.hub)
		self.notifier = notifier or NotificationDispatcher(self.directory, push)
		self.registry = registry or ConversationRegistry(self.hub, self.directory, notifier=self.notifier)
		self.store = store or MessageStore(self.hub)
		self.uploads = uploads or UploadPipeline(storage)
		self.presence = presence or PresenceTracker(self.hub, self.directory)
		self._open_sessions: Dict[str, int] = {}

	def prepare_send(
		self,
		author: str,
		text: Optional[str],
		attachment: Optional[MediaFile],
	) -> Tuple[Optional[TextContent], Optional[UploadJob]]:
		"""Validate before any transfer: blank text is dropped, nothing at all is rejected."""
		text_value = text_content(text) if text is not None and text.strip() else None
		job = None
		if attachment is not None:
			job = self.uploads.prepare(attachment, surface=SURFACE_CHAT, username=author)
		if text_value is None and job is None:
			obs_metrics.inc_send_failure("empty_message")
			raise InvalidMessage("empty_message")
		return text_value, job

	async def submit(
		self,
		conversation: Conversation,
		author: str,
		*,
		text: Optional[TextContent] = None,
		job: Optional[UploadJob] = None,
		on_progress: ProgressCallback | None = None,
	) -> List[Message]:
		"""Upload, append the attachment then the text, notify per message, touch activity.

		A failing step stops the sequence; messages already appended stay.
		"""
		sent: List[Message] = []
		try:
			if job is not None:
				url = await self.uploads.upload(job, on_progress)
				attachment = AttachmentContent(kind=job.kind, url=url, mime_type=job.mime_type)
				sent.append(await self.store.append(conversation.id, author, attachment))
			if text is not None:
				sent.append(await self.store.append(conversation.id, author, text))
		except ChatError as exc:
			obs_metrics.inc_send_failure(exc.reason)
			logger.info("chat_send_failed", extra={"reason": exc.reason, "appended": len(sent)})
			raise
		for message in sent:
			await self.notifier.notify(conversation, author, summary_for(message.content))
		await self.registry.touch_activity(conversation.id)
		return sent

	async def send(
		self,
		conversation_id: str,
		author: str,
		*,
		text: Optional[str] = None,
		attachment: Optional[MediaFile] = None,
	) -> List[Message]:
		"""One-shot send for callers without an open session."""
		conversation = await self.registry.get(conversation_id, caller=author)
		text_value, job = self.prepare_send(author, text, attachment)
		return await self.submit(conversation, author, text=text_value, job=job)

	async def open_session(
		self,
		conversation_id: str,
		username: str,
		*,
		page_size: Optional[int] = None,
		on_change: Optional[ChangeCallback] = None,
	) -> ChatSession:
		session = ChatSession(self, conversation_id, username, page_size=page_size, on_change=on_change)
		return await session.open()

	async def session_presence(self, username: str, active: bool) -> None:
		"""Per-user presence across sessions: cleared only when the last one closes."""
		count = self._open_sessions.get(username, 0) + (1 if active else -1)
		if count > 0:
			self._open_sessions[username] = count
		else:
			self._open_sessions.pop(username, None)
		if active or count <= 0:
			await self.presence.set_active(username, active)

	async def shutdown(self) -> None:
		await self.hub.shutdown()
		await self.notifier.aclose()


_ENGINE: Optional[ChatEngine] = None


def get_engine() -> ChatEngine:
	global _ENGINE
	if _ENGINE is None:
		_ENGINE = ChatEngine()
	return _ENGINE


def set_engine(engine: Optional[ChatEngine]) -> None:
	global _ENGINE
	_ENGINE = engine
