"""Per-view chat session: live conversation state and the send sequence."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from instachat.domain.chat.errors import ChatError, Unavailable, UploadInFlight
from instachat.domain.chat.models import (
	Conversation,
	DirectChat,
	Group,
	Message,
	MessageWindow,
	MetadataPatch,
	Presence,
)
from instachat.domain.chat.uploads import MediaFile, UploadJob, UploadProgress
from instachat.infra.live import Subscription
from instachat.obs import logging as obs_logging
from instachat.obs import metrics as obs_metrics
from instachat.settings import settings

if TYPE_CHECKING:  # pragma: no cover - typing only
	from instachat.domain.chat.service import ChatEngine

logger = logging.getLogger(__name__)

IDLE = "idle"
RESOLVING = "resolving"
READY = "ready"
SENDING = "sending"
CLOSED = "closed"

EVENT_STATE = "state"
EVENT_CONVERSATION = "conversation"
EVENT_MESSAGES = "messages"
EVENT_PRESENCE = "presence"
EVENT_UPLOAD = "upload"
EVENT_ERROR = "error"

ChangeCallback = Callable[[str, "ChatSession"], Optional[Awaitable[Any]]]


class ChatSession:
	"""State owned by one open conversation view.

	``open`` moves IDLE -> RESOLVING -> READY once both the conversation and
	the first message window arrived. ``send`` runs READY -> SENDING -> READY
	and refuses a second send while the first is still running. Background
	pumps keep ``conversation``, ``window`` and ``counterpart_presence`` current
	and report every change through ``on_change``.
	"""

	def __init__(
		self,
		engine: "ChatEngine",
		conversation_id: str,
		username: str,
		*,
		page_size: Optional[int] = None,
		on_change: Optional[ChangeCallback] = None,
	) -> None:
		self._engine = engine
		self.conversation_id = conversation_id
		self.username = username
		self.page_size = max(1, int(page_size or settings.chat_page_size))
		self.limit = self.page_size
		self._on_change = on_change

		self.state = IDLE
		self.conversation: Optional[Conversation] = None
		self.window: Optional[MessageWindow] = None
		self.counterpart_presence: Optional[Presence] = None
		self.upload_progress = 0
		self.last_error: Optional[ChatError] = None

		self._subscriptions: Dict[str, Subscription] = {}
		self._pumps: Dict[str, asyncio.Task] = {}
		self._job: Optional[UploadJob] = None
		self._loading_more = False
		self._counted = False
		self._present = False

	@property
	def has_more(self) -> bool:
		return self.window.has_more if self.window is not None else False

	@property
	def messages(self) -> List[Message]:
		return list(self.window.messages) if self.window is not None else []

	@property
	def counterpart(self) -> Optional[str]:
		if isinstance(self.conversation, DirectChat):
			return self.conversation.counterpart(self.username)
		return None

	async def _emit(self, event: str) -> None:
		if self._on_change is None:
			return
		try:
			result = self._on_change(event, self)
			if inspect.isawaitable(result):
				await result
		except Exception:
			logger.exception("chat_session_callback_failed", extra={"event": event})

	def _set_state(self, state: str) -> None:
		self.state = state

	def _apply(self, event: str, value: Any) -> None:
		if event == EVENT_CONVERSATION:
			self.conversation = value
		elif event == EVENT_MESSAGES:
			self.window = value
		elif event == EVENT_PRESENCE:
			self.counterpart_presence = value

	async def _pump(self, event: str, subscription: Subscription) -> None:
		while True:
			try:
				value = await subscription.next()
			except StopAsyncIteration:
				return
			except ChatError as exc:
				# Keep the last good snapshot; the next change retries the load
				self.last_error = exc
				await self._emit(EVENT_ERROR)
				continue
			if subscription.closed:
				return
			self._apply(event, value)
			await self._emit(event)

	def _start(self, event: str, subscription: Subscription) -> None:
		previous = self._subscriptions.get(event)
		if previous is not None:
			previous.cancel()
		self._subscriptions[event] = subscription
		self._pumps[event] = asyncio.create_task(self._pump(event, subscription), name=f"chat-{event}-pump")

	async def open(self) -> "ChatSession":
		if self.state != IDLE:
			raise RuntimeError(f"session cannot be opened from state {self.state}")
		tokens = obs_logging.bind_context(conversation_id=self.conversation_id)
		try:
			self._set_state(RESOLVING)
			await self._mark_presence(True)
			try:
				conversation_sub = await self._engine.registry.resolve(self.conversation_id, caller=self.username)
				message_sub = self._engine.store.subscribe(self.conversation_id, self.limit)
				self._subscriptions[EVENT_CONVERSATION] = conversation_sub
				self._subscriptions[EVENT_MESSAGES] = message_sub
				self.conversation, self.window = await asyncio.gather(conversation_sub.next(), message_sub.next())
			except BaseException:
				await self.close()
				raise
			# Pumps pick up from the initial snapshots already delivered
			self._pumps[EVENT_CONVERSATION] = asyncio.create_task(self._pump(EVENT_CONVERSATION, conversation_sub))
			self._pumps[EVENT_MESSAGES] = asyncio.create_task(self._pump(EVENT_MESSAGES, message_sub))
			counterpart = self.counterpart
			if counterpart is not None:
				self._start(EVENT_PRESENCE, self._engine.presence.observe(counterpart))
			self._set_state(READY)
			obs_metrics.session_opened()
			self._counted = True
			logger.info("chat_session_opened", extra={"kind": self.conversation.kind})
		finally:
			obs_logging.reset_context(tokens)
		await self._emit(EVENT_STATE)
		return self

	async def _mark_presence(self, active: bool) -> None:
		if active == self._present:
			return
		self._present = active
		try:
			await self._engine.session_presence(self.username, active)
		except Unavailable:
			logger.warning("chat_session_presence_failed", extra={"active": active})

	def _require_ready(self) -> None:
		if self.state == SENDING:
			raise UploadInFlight()
		if self.state != READY:
			raise Unavailable("session_not_ready")

	async def _on_upload_progress(self, event: UploadProgress) -> None:
		self.upload_progress = event.percent
		await self._emit(EVENT_UPLOAD)

	async def send(self, text: Optional[str] = None, attachment: Optional[MediaFile] = None) -> List[Message]:
		"""Upload (if any), append, notify, then bump activity; only one send at a time."""
		self._require_ready()
		text_value, job = self._engine.prepare_send(self.username, text, attachment)
		assert self.conversation is not None
		self._set_state(SENDING)
		self._job = job
		try:
			return await self._engine.submit(
				self.conversation,
				self.username,
				text=text_value,
				job=job,
				on_progress=self._on_upload_progress,
			)
		except ChatError as exc:
			self.last_error = exc
			raise
		finally:
			self._job = None
			reset_progress = self.upload_progress != 0
			self.upload_progress = 0
			if self.state == SENDING:
				self._set_state(READY)
			if reset_progress:
				await self._emit(EVENT_UPLOAD)

	def cancel_upload(self) -> bool:
		if self._job is None:
			return False
		self._job.cancel()
		return True

	async def load_more(self) -> bool:
		"""Grow the window by one page; ignored while busy or when history is exhausted."""
		if self.state != READY or self._loading_more or not self.has_more:
			return False
		self._loading_more = True
		try:
			limit = self.limit + self.page_size
			subscription = self._engine.store.subscribe(self.conversation_id, limit)
			try:
				window = await subscription.next()
			except BaseException:
				subscription.cancel()
				raise
			if self.state not in (READY, SENDING):
				subscription.cancel()
				return False
			self.limit = limit
			self.window = window
			previous = self._subscriptions.get(EVENT_MESSAGES)
			if previous is not None:
				previous.cancel()
			self._subscriptions[EVENT_MESSAGES] = subscription
			self._pumps[EVENT_MESSAGES] = asyncio.create_task(self._pump(EVENT_MESSAGES, subscription))
		finally:
			self._loading_more = False
		await self._emit(EVENT_MESSAGES)
		return True

	async def unsend(self, message_id: str) -> Message:
		self._require_open()
		return await self._engine.store.remove(self.conversation_id, message_id, self.username)

	async def add_member(self, username: str) -> Group:
		self._require_open()
		return await self._engine.registry.add_member(self.conversation_id, username, actor=self.username)

	async def set_role(self, username: str, role: str) -> Group:
		self._require_open()
		return await self._engine.registry.set_role(self.conversation_id, username, role, actor=self.username)

	async def update_metadata(
		self,
		*,
		name: Optional[str] = None,
		description: Optional[str] = None,
		avatar_url: Optional[str] = None,
	) -> Group:
		self._require_open()
		patch = MetadataPatch(name=name, description=description, avatar_url=avatar_url)
		return await self._engine.registry.update_metadata(self.conversation_id, patch, actor=self.username)

	def _require_open(self) -> None:
		if self.state not in (READY, SENDING):
			raise Unavailable("session_not_ready")

	async def close(self) -> None:
		if self.state == CLOSED:
			return
		self._set_state(CLOSED)
		if self._job is not None:
			self._job.cancel()
		for subscription in self._subscriptions.values():
			subscription.cancel()
		current = asyncio.current_task()
		pumps = [task for task in self._pumps.values() if task is not current]
		for task in pumps:
			task.cancel()
		if pumps:
			await asyncio.gather(*pumps, return_exceptions=True)
		self._subscriptions.clear()
		self._pumps.clear()
		await self._mark_presence(False)
		if self._counted:
			obs_metrics.session_closed()
			self._counted = False
		logger.info("chat_session_closed", extra={"conversation_id": self.conversation_id})

	async def __aenter__(self) -> "ChatSession":
		if self.state == IDLE:
			await self.open()
		return self

	async def __aexit__(self, *exc_info) -> None:
		await self.close()

	def snapshot(self) -> dict:
		return {
			"conversation_id": self.conversation_id,
			"state": self.state,
			"limit": self.limit,
			"has_more": self.has_more,
			"upload_progress": self.upload_progress,
			"last_error": self.last_error.reason if self.last_error else None,
		}
