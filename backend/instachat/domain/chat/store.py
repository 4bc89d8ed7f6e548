"""Per-conversation message log with live windows."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import asyncpg
import ulid

from instachat.domain.chat import outbox
from instachat.domain.chat.errors import Forbidden, InvalidMessage, NotFound, Unavailable
from instachat.domain.chat.models import (
	Message,
	MessageContent,
	MessageWindow,
	content_from_dict,
	content_to_dict,
	parse_conversation_id,
	validate_content,
)
from instachat.infra.live import LiveHub, Subscription
from instachat.infra.postgres import PoolOrMemory
from instachat.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def messages_topic(conversation_id: str) -> str:
	return f"messages:{conversation_id}"


class _MemoryStore:
	"""Fallback store used in dev and tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._messages: Dict[str, List[Message]] = {}
		self._last_seq: Dict[str, int] = {}

	async def append(self, conversation_id: str, author: str, content: MessageContent, now: datetime) -> Message:
		async with self._lock:
			messages = self._messages.setdefault(conversation_id, [])
			seq = self._last_seq.get(conversation_id, 0) + 1
			self._last_seq[conversation_id] = seq
			created_at = max(now, messages[-1].created_at) if messages else now
			message = Message(
				id=str(ulid.new()),
				conversation_id=conversation_id,
				author=author,
				seq=seq,
				created_at=created_at,
				content=content,
			)
			messages.append(message)
			return message

	async def latest(self, conversation_id: str, limit: int) -> Tuple[Message, ...]:
		async with self._lock:
			messages = self._messages.get(conversation_id, [])
			return tuple(messages[-limit:]) if limit > 0 else ()

	async def get(self, conversation_id: str, message_id: str) -> Optional[Message]:
		async with self._lock:
			for message in self._messages.get(conversation_id, []):
				if message.id == message_id:
					return message
			return None

	async def delete(self, conversation_id: str, message_id: str) -> bool:
		async with self._lock:
			messages = self._messages.get(conversation_id, [])
			for index, message in enumerate(messages):
				if message.id == message_id:
					del messages[index]
					return True
			return False

	async def count(self, conversation_id: str) -> int:
		async with self._lock:
			return len(self._messages.get(conversation_id, []))


_MEMORY = _MemoryStore()


def _row_to_message(row: asyncpg.Record) -> Message:
	raw = row["content"]
	payload = json.loads(raw) if isinstance(raw, str) else (raw or {})
	return Message(
		id=str(row["message_id"]),
		conversation_id=str(row["conversation_id"]),
		author=str(row["author"]),
		seq=int(row["seq"]),
		created_at=row["created_at"],
		content=content_from_dict(payload),
	)


class MessageRepository(PoolOrMemory):
	"""Repository backed by asyncpg with an in-memory fallback."""

	async def append(self, conversation_id: str, author: str, content: MessageContent, now: datetime) -> Message:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.append(conversation_id, author, content, now)
		async with pool.acquire() as conn:
			async with conn.transaction():
				# The sequence row lock serialises appends within a conversation
				seq = await self._next_sequence(conn, conversation_id)
				newest = await conn.fetchval(
					"SELECT max(created_at) FROM chat_messages WHERE conversation_id = $1",
					conversation_id,
				)
				created_at = max(now, newest) if newest else now
				message = Message(
					id=str(ulid.new()),
					conversation_id=conversation_id,
					author=author,
					seq=seq,
					created_at=created_at,
					content=content,
				)
				await conn.execute(
					"""
					INSERT INTO chat_messages (message_id, conversation_id, seq, author, content, created_at)
					VALUES ($1, $2, $3, $4, $5, $6)
					""",
					message.id,
					conversation_id,
					seq,
					author,
					json.dumps(content_to_dict(content)),
					created_at,
				)
				return message

	async def latest(self, conversation_id: str, limit: int) -> Tuple[Message, ...]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.latest(conversation_id, limit)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT message_id, conversation_id, seq, author, content, created_at
				FROM chat_messages
				WHERE conversation_id = $1
				ORDER BY created_at DESC, seq DESC
				LIMIT $2
				""",
				conversation_id,
				limit,
			)
			return tuple(_row_to_message(row) for row in reversed(rows))

	async def get(self, conversation_id: str, message_id: str) -> Optional[Message]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.get(conversation_id, message_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT message_id, conversation_id, seq, author, content, created_at
				FROM chat_messages
				WHERE conversation_id = $1 AND message_id = $2
				""",
				conversation_id,
				message_id,
			)
			return _row_to_message(row) if row else None

	async def delete(self, conversation_id: str, message_id: str) -> bool:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.delete(conversation_id, message_id)
		async with pool.acquire() as conn:
			result = await conn.execute(
				"DELETE FROM chat_messages WHERE conversation_id = $1 AND message_id = $2",
				conversation_id,
				message_id,
			)
			return result.endswith(" 1")

	async def count(self, conversation_id: str) -> int:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.count(conversation_id)
		async with pool.acquire() as conn:
			value = await conn.fetchval("SELECT count(*) FROM chat_messages WHERE conversation_id = $1", conversation_id)
			return int(value or 0)

	async def _next_sequence(self, conn, conversation_id: str) -> int:
		row = await conn.fetchrow(
			"SELECT last_seq FROM chat_message_seq WHERE conversation_id = $1 FOR UPDATE",
			conversation_id,
		)
		if row:
			next_seq = int(row["last_seq"]) + 1
			await conn.execute(
				"UPDATE chat_message_seq SET last_seq = $2 WHERE conversation_id = $1",
				conversation_id,
				next_seq,
			)
			return next_seq
		await conn.execute(
			"INSERT INTO chat_message_seq (conversation_id, last_seq) VALUES ($1, 1)",
			conversation_id,
		)
		return 1


class MessageStore:
	"""Append-only log per conversation.

	Readers see the newest ``limit`` messages through live subscriptions; the
	window only ever grows backwards in time, so a larger limit always returns
	a superset of a smaller one. Every append and removal wakes the open
	windows of that conversation.
	"""

	def __init__(
		self,
		hub: LiveHub,
		repository: MessageRepository | None = None,
		*,
		clock: Clock | None = None,
	) -> None:
		self._hub = hub
		self._repo = repository or MessageRepository()
		self._clock = clock or _utcnow

	def _window_limit(self, limit: int) -> int:
		if limit < 1:
			raise InvalidMessage("invalid_limit")
		return int(limit)

	async def _load_window(self, conversation_id: str, limit: int) -> MessageWindow:
		try:
			messages = await self._repo.latest(conversation_id, limit)
		except (asyncpg.PostgresError, OSError) as exc:
			logger.warning("message_window_load_failed", extra={"conversation_id": conversation_id})
			raise Unavailable("message_store_unavailable") from exc
		return MessageWindow(conversation_id=conversation_id, limit=limit, messages=messages)

	def subscribe(self, conversation_id: str, limit: int) -> Subscription[MessageWindow]:
		ref = parse_conversation_id(conversation_id)
		window = self._window_limit(limit)

		async def _load() -> MessageWindow:
			return await self._load_window(ref.id, window)

		return self._hub.subscribe(messages_topic(ref.id), _load)

	async def load_older(self, conversation_id: str, before_limit: int) -> MessageWindow:
		ref = parse_conversation_id(conversation_id)
		return await self._load_window(ref.id, self._window_limit(before_limit))

	async def append(self, conversation_id: str, author: str, content: MessageContent) -> Message:
		ref = parse_conversation_id(conversation_id)
		content = validate_content(content)
		message = await self._repo.append(ref.id, author, content, self._clock())
		obs_metrics.inc_message_appended(ref.kind, content.kind)
		self._hub.publish(messages_topic(ref.id))
		await outbox.append_chat_event(
			"message.appended",
			ref.id,
			msg_id=message.id,
			seq=message.seq,
			user_id=author,
			meta={"content_kind": content.kind},
		)
		logger.info("chat_message_appended", extra={"conversation_id": ref.id, "seq": message.seq})
		return message

	async def remove(self, conversation_id: str, message_id: str, actor: str) -> Message:
		ref = parse_conversation_id(conversation_id)
		message = await self._repo.get(ref.id, message_id)
		if message is None:
			raise NotFound("message_not_found")
		if message.author != actor:
			raise Forbidden("not_author")
		if not await self._repo.delete(ref.id, message_id):
			raise NotFound("message_not_found")
		obs_metrics.inc_message_removed()
		self._hub.publish(messages_topic(ref.id))
		await outbox.append_chat_event("message.removed", ref.id, msg_id=message.id, seq=message.seq, user_id=actor)
		logger.info("chat_message_removed", extra={"conversation_id": ref.id, "seq": message.seq})
		return message

	async def get(self, conversation_id: str, message_id: str) -> Optional[Message]:
		ref = parse_conversation_id(conversation_id)
		return await self._repo.get(ref.id, message_id)

	async def count(self, conversation_id: str) -> int:
		ref = parse_conversation_id(conversation_id)
		return await self._repo.count(ref.id)
