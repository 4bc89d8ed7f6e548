"""Socket.IO namespace driving chat sessions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import socketio

from instachat.domain.chat import session as chat_session
from instachat.domain.chat.errors import ChatError
from instachat.domain.chat.schemas import ConversationResponse, MessageResponse, MessageWindowResponse, PresenceResponse
from instachat.domain.chat.service import ChatEngine, get_engine
from instachat.domain.chat.uploads import MediaFile
from instachat.infra.auth import AuthenticatedUser, user_from_handshake
from instachat.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_namespace: "ChatNamespace" | None = None


def _headers(scope: dict) -> Dict[str, str]:
	return {key.decode().lower(): value.decode() for key, value in scope.get("headers", [])}


def _payload(payload: Any) -> dict:
	return payload if isinstance(payload, dict) else {}


def _page_size(payload: dict) -> Optional[int]:
	try:
		value = int(payload.get("page_size"))
	except (TypeError, ValueError):
		return None
	return value if value > 0 else None


def _conversation_id(payload: Any) -> str:
	if isinstance(payload, dict):
		return str(payload.get("conversation_id") or "")
	return ""


def _session_payload(event: str, session: chat_session.ChatSession) -> Optional[dict]:
	base = {"conversation_id": session.conversation_id}
	if event == chat_session.EVENT_CONVERSATION and session.conversation is not None:
		return {**base, "conversation": ConversationResponse.from_model(session.conversation).model_dump(mode="json")}
	if event == chat_session.EVENT_MESSAGES and session.window is not None:
		return {**base, "window": MessageWindowResponse.from_model(session.window).model_dump(mode="json")}
	if event == chat_session.EVENT_PRESENCE and session.counterpart_presence is not None:
		return {**base, "presence": PresenceResponse.from_model(session.counterpart_presence).model_dump(mode="json")}
	if event == chat_session.EVENT_UPLOAD:
		return {**base, "progress": session.upload_progress}
	if event == chat_session.EVENT_ERROR and session.last_error is not None:
		return {**base, "reason": session.last_error.reason}
	if event == chat_session.EVENT_STATE:
		return session.snapshot()
	return None


class ChatNamespace(socketio.AsyncNamespace):
	"""One ChatSession per (socket, conversation); session changes are pushed back to the socket."""

	def __init__(self, engine: ChatEngine | None = None) -> None:
		super().__init__("/chat")
		self._engine = engine
		self._users: Dict[str, AuthenticatedUser] = {}
		self._sessions: Dict[str, Dict[str, chat_session.ChatSession]] = {}

	@property
	def engine(self) -> ChatEngine:
		return self._engine or get_engine()

	async def trigger_event(self, event: str, *args):
		# Clients use "chat:open" style names; handlers are on_chat_open
		return await super().trigger_event(event.replace(":", "_"), *args)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		try:
			user = user_from_handshake(auth or {}, _headers(scope))
		except ValueError:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("unauthorized") from None
		self._users[sid] = user
		self._sessions[sid] = {}
		await self.enter_room(sid, self.user_room(user.username))
		await self.emit("chat:ack", {"ok": True, "username": user.username}, room=sid)

	async def on_disconnect(self, sid: str, *args) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		user = self._users.pop(sid, None)
		sessions = self._sessions.pop(sid, {})
		for session in sessions.values():
			await session.close()
		if user:
			await self.leave_room(sid, self.user_room(user.username))

	def _user(self, sid: str) -> AuthenticatedUser:
		user = self._users.get(sid)
		if not user:
			raise ConnectionRefusedError("unauthenticated")
		return user

	def _relay(self, sid: str) -> Callable[[str, chat_session.ChatSession], Any]:
		async def _on_change(event: str, session: chat_session.ChatSession) -> None:
			payload = _session_payload(event, session)
			if payload is None:
				return
			name = f"chat:{event}"
			obs_metrics.socket_event(self.namespace, name)
			await self.emit(name, payload, room=sid)

		return _on_change

	async def _fail(self, sid: str, conversation_id: str, exc: ChatError) -> dict:
		await self.emit("chat:error", {"conversation_id": conversation_id, "reason": exc.reason}, room=sid)
		return {"ok": False, "reason": exc.reason}

	def _session(self, sid: str, conversation_id: str) -> Optional[chat_session.ChatSession]:
		return self._sessions.get(sid, {}).get(conversation_id)

	async def on_chat_open(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "chat:open")
		payload = _payload(payload)
		user = self._user(sid)
		conversation_id = _conversation_id(payload)
		existing = self._session(sid, conversation_id)
		if existing is not None:
			return {"ok": True, **existing.snapshot()}
		try:
			session = await self.engine.open_session(
				conversation_id,
				user.username,
				page_size=_page_size(payload),
				on_change=self._relay(sid),
			)
		except ChatError as exc:
			return await self._fail(sid, conversation_id, exc)
		self._sessions.setdefault(sid, {})[conversation_id] = session
		await self._relay(sid)(chat_session.EVENT_CONVERSATION, session)
		await self._relay(sid)(chat_session.EVENT_MESSAGES, session)
		return {"ok": True, **session.snapshot()}

	async def on_chat_load_more(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "chat:load_more")
		self._user(sid)
		conversation_id = _conversation_id(payload)
		session = self._session(sid, conversation_id)
		if session is None:
			return {"ok": False, "reason": "not_open"}
		try:
			grown = await session.load_more()
		except ChatError as exc:
			return await self._fail(sid, conversation_id, exc)
		return {"ok": True, "loaded": grown, "has_more": session.has_more}

	async def on_chat_send(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "chat:send")
		payload = _payload(payload)
		self._user(sid)
		conversation_id = _conversation_id(payload)
		session = self._session(sid, conversation_id)
		if session is None:
			return {"ok": False, "reason": "not_open"}
		attachment = None
		raw = payload.get("attachment")
		if isinstance(raw, dict) and raw.get("data") is not None:
			attachment = MediaFile(
				filename=str(raw.get("filename") or "upload"),
				content_type=str(raw.get("content_type") or ""),
				data=bytes(raw["data"]),
			)
		try:
			messages = await session.send(text=payload.get("text"), attachment=attachment)
		except ChatError as exc:
			return await self._fail(sid, conversation_id, exc)
		return {"ok": True, "items": [MessageResponse.from_model(m).model_dump(mode="json") for m in messages]}

	async def on_chat_cancel_upload(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "chat:cancel_upload")
		self._user(sid)
		session = self._session(sid, _conversation_id(payload))
		return {"ok": bool(session and session.cancel_upload())}

	async def on_chat_unsend(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "chat:unsend")
		payload = _payload(payload)
		self._user(sid)
		conversation_id = _conversation_id(payload)
		session = self._session(sid, conversation_id)
		if session is None:
			return {"ok": False, "reason": "not_open"}
		try:
			await session.unsend(str(payload.get("message_id") or ""))
		except ChatError as exc:
			return await self._fail(sid, conversation_id, exc)
		return {"ok": True}

	async def on_chat_close(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "chat:close")
		self._user(sid)
		session = self._sessions.get(sid, {}).pop(_conversation_id(payload), None)
		if session is not None:
			await session.close()
		return {"ok": True}

	@staticmethod
	def user_room(username: str) -> str:
		return f"user:{username}"


def set_namespace(namespace: ChatNamespace) -> None:
	global _namespace
	_namespace = namespace


async def emit_user_event(username: str, event: str, payload: dict) -> None:
	if _namespace is None:
		return
	obs_metrics.socket_event(_namespace.namespace, event)
	await _namespace.emit(event, payload, room=ChatNamespace.user_room(username))
