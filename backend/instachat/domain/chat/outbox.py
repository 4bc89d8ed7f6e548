"""Outbox helpers for chat-domain events."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from redis.exceptions import RedisError

from instachat.infra.redis import redis_client

logger = logging.getLogger(__name__)

CHAT_EVENT_STREAM = "x:chat.events"
CHAT_EVENT_MAXLEN = 10_000


async def append_chat_event(
	event: str,
	conversation_id: str,
	*,
	msg_id: Optional[str] = None,
	seq: Optional[int] = None,
	user_id: Optional[str] = None,
	meta: Mapping[str, Any] | None = None,
) -> None:
	fields: dict[str, Any] = {
		"event": event,
		"conversation_id": conversation_id,
	}
	if msg_id:
		fields["msg_id"] = msg_id
	if seq is not None:
		fields["seq"] = str(seq)
	if user_id:
		fields["user_id"] = str(user_id)
	if meta:
		for key, value in meta.items():
			if value is not None:
				fields[f"meta_{key}"] = str(value)
	try:
		await redis_client.xadd(CHAT_EVENT_STREAM, fields, maxlen=CHAT_EVENT_MAXLEN, approximate=True)
	except (RedisError, OSError):
		# The stream feeds out-of-process consumers only; the write already committed
		logger.warning("chat_event_append_failed", extra={"event": event, "conversation_id": conversation_id})
