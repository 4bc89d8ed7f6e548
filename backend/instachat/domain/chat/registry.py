"""Conversation registry: direct chats, groups, membership and metadata."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

import asyncpg

from instachat.domain.chat import outbox
from instachat.domain.chat.errors import AlreadyMember, Forbidden, InvalidMessage, NotFound, Unavailable
from instachat.domain.chat.models import (
	ROLE_ADMIN,
	ROLE_CREATOR,
	ROLE_MEMBER,
	Conversation,
	ConversationRef,
	DirectChat,
	DirectRef,
	Group,
	GroupMember,
	GroupRef,
	MetadataPatch,
	parse_conversation_id,
)
from instachat.domain.directory import Directory
from instachat.infra.live import LiveHub, Subscription
from instachat.infra.postgres import PoolOrMemory

if TYPE_CHECKING:  # pragma: no cover - typing only
	from instachat.domain.chat.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def conversation_topic(conversation_id: str) -> str:
	return f"conversation:{conversation_id}"


def _activity_key(conversation: Conversation):
	stamp = conversation.last_activity or conversation.created_at
	return stamp.timestamp()


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.conversations: Dict[str, Conversation] = {}

	async def get(self, conversation_id: str) -> Optional[Conversation]:
		async with self._lock:
			return self.conversations.get(conversation_id)

	async def insert(self, conversation: Conversation) -> Conversation:
		async with self._lock:
			return self.conversations.setdefault(conversation.id, conversation)

	async def add_member(self, conversation_id: str, member: GroupMember) -> Group:
		async with self._lock:
			group = self.conversations.get(conversation_id)
			if not isinstance(group, Group):
				raise NotFound("conversation_not_found")
			if group.includes(member.username):
				raise AlreadyMember()
			updated = group.with_member(member)
			self.conversations[conversation_id] = updated
			return updated

	async def set_role(self, conversation_id: str, username: str, role: str) -> Group:
		async with self._lock:
			group = self.conversations[conversation_id]
			assert isinstance(group, Group)
			updated = group.with_role(username, role)
			self.conversations[conversation_id] = updated
			return updated

	async def update_metadata(self, conversation_id: str, patch: MetadataPatch) -> Group:
		async with self._lock:
			group = self.conversations[conversation_id]
			assert isinstance(group, Group)
			updated = patch.apply(group)
			self.conversations[conversation_id] = updated
			return updated

	async def touch(self, conversation_id: str, now: datetime) -> Optional[datetime]:
		async with self._lock:
			conversation = self.conversations.get(conversation_id)
			if conversation is None:
				return None
			current = conversation.last_activity
			if current is not None and current >= now:
				return current
			self.conversations[conversation_id] = replace(conversation, last_activity=now)
			return now

	async def list_for_user(self, username: str) -> List[Conversation]:
		async with self._lock:
			return [c for c in self.conversations.values() if c.includes(username)]


_MEMORY = _MemoryStore()


def _row_to_conversation(row: asyncpg.Record, members: Iterable[asyncpg.Record] = ()) -> Conversation:
	conversation_id = str(row["conversation_id"])
	if row["kind"] == "direct":
		return DirectChat(
			ref=DirectRef(id=conversation_id, participants=(str(row["user_a"]), str(row["user_b"]))),
			created_at=row["created_at"],
			last_activity=row["last_activity"],
		)
	return Group(
		ref=GroupRef(id=conversation_id),
		name=row["name"] or "",
		description=row["description"] or "",
		avatar_url=row["avatar_url"],
		created_at=row["created_at"],
		last_activity=row["last_activity"],
		members=tuple(GroupMember(username=str(m["username"]), role=str(m["role"])) for m in members),
	)


class ConversationRepository(PoolOrMemory):
	async def get(self, conversation_id: str) -> Optional[Conversation]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.get(conversation_id)
		async with pool.acquire() as conn:
			return await self._fetch(conn, conversation_id)

	async def _fetch(self, conn, conversation_id: str) -> Optional[Conversation]:
		row = await conn.fetchrow("SELECT * FROM chat_conversations WHERE conversation_id = $1", conversation_id)
		if not row:
			return None
		members: List[asyncpg.Record] = []
		if row["kind"] == "group":
			members = await conn.fetch(
				"SELECT username, role FROM chat_group_members WHERE conversation_id = $1 ORDER BY position",
				conversation_id,
			)
		return _row_to_conversation(row, members)

	async def insert(self, conversation: Conversation) -> Conversation:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.insert(conversation)
		async with pool.acquire() as conn:
			async with conn.transaction():
				if isinstance(conversation, DirectChat):
					await conn.execute(
						"""
						INSERT INTO chat_conversations (conversation_id, kind, user_a, user_b, created_at)
						VALUES ($1, 'direct', $2, $3, $4)
						ON CONFLICT (conversation_id) DO NOTHING
						""",
						conversation.id,
						conversation.participant_a,
						conversation.participant_b,
						conversation.created_at,
					)
				else:
					await conn.execute(
						"""
						INSERT INTO chat_conversations (conversation_id, kind, name, description, avatar_url, created_at)
						VALUES ($1, 'group', $2, $3, $4, $5)
						""",
						conversation.id,
						conversation.name,
						conversation.description,
						conversation.avatar_url,
						conversation.created_at,
					)
					await conn.executemany(
						"INSERT INTO chat_group_members (conversation_id, username, role) VALUES ($1, $2, $3)",
						[(conversation.id, m.username, m.role) for m in conversation.members],
					)
				stored = await self._fetch(conn, conversation.id)
		assert stored is not None
		return stored

	async def add_member(self, conversation_id: str, member: GroupMember) -> Group:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.add_member(conversation_id, member)
		async with pool.acquire() as conn:
			try:
				await conn.execute(
					"INSERT INTO chat_group_members (conversation_id, username, role) VALUES ($1, $2, $3)",
					conversation_id,
					member.username,
					member.role,
				)
			except asyncpg.UniqueViolationError as exc:
				raise AlreadyMember() from exc
			group = await self._fetch(conn, conversation_id)
		assert isinstance(group, Group)
		return group

	async def set_role(self, conversation_id: str, username: str, role: str) -> Group:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.set_role(conversation_id, username, role)
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE chat_group_members SET role = $3 WHERE conversation_id = $1 AND username = $2",
				conversation_id,
				username,
				role,
			)
			group = await self._fetch(conn, conversation_id)
		assert isinstance(group, Group)
		return group

	async def update_metadata(self, conversation_id: str, patch: MetadataPatch) -> Group:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.update_metadata(conversation_id, patch)
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				UPDATE chat_conversations
				SET name = COALESCE($2, name),
					description = COALESCE($3, description),
					avatar_url = COALESCE($4, avatar_url)
				WHERE conversation_id = $1
				""",
				conversation_id,
				patch.name,
				patch.description,
				patch.avatar_url,
			)
			group = await self._fetch(conn, conversation_id)
		assert isinstance(group, Group)
		return group

	async def touch(self, conversation_id: str, now: datetime) -> Optional[datetime]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.touch(conversation_id, now)
		async with pool.acquire() as conn:
			return await conn.fetchval(
				"""
				UPDATE chat_conversations
				SET last_activity = GREATEST(COALESCE(last_activity, $2), $2)
				WHERE conversation_id = $1
				RETURNING last_activity
				""",
				conversation_id,
				now,
			)

	async def list_for_user(self, username: str) -> List[Conversation]:
		pool = await self._get_pool()
		if pool is None:
			return await _MEMORY.list_for_user(username)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT DISTINCT c.conversation_id
				FROM chat_conversations c
				LEFT JOIN chat_group_members m ON m.conversation_id = c.conversation_id
				WHERE c.user_a = $1 OR c.user_b = $1 OR m.username = $1
				""",
				username,
			)
			found: List[Conversation] = []
			for row in rows:
				conversation = await self._fetch(conn, str(row["conversation_id"]))
				if conversation is not None:
					found.append(conversation)
			return found


def _ensure_group(conversation: Conversation) -> Group:
	if not isinstance(conversation, Group):
		raise Forbidden("not_a_group")
	return conversation


def _ensure_privileged(group: Group, actor: str) -> GroupMember:
	member = group.member(actor)
	if member is None or not member.is_privileged():
		raise Forbidden("not_group_admin")
	return member


def _ensure_participant(conversation: Conversation, caller: str) -> None:
	if not conversation.includes(caller):
		raise Forbidden("not_participant")


class ConversationRegistry:
	"""Resolves conversation ids and owns membership, roles and metadata."""

	def __init__(
		self,
		hub: LiveHub,
		directory: Directory,
		repository: ConversationRepository | None = None,
		*,
		notifier: "NotificationDispatcher | None" = None,
		clock: Clock | None = None,
	) -> None:
		self._hub = hub
		self._directory = directory
		self._repo = repository or ConversationRepository()
		self._notifier = notifier
		self._clock = clock or _utcnow

	async def _read(self, conversation_id: str) -> Optional[Conversation]:
		try:
			return await self._repo.get(conversation_id)
		except (asyncpg.PostgresError, OSError) as exc:
			logger.warning("conversation_load_failed", extra={"conversation_id": conversation_id})
			raise Unavailable("conversation_unavailable") from exc

	async def _require(self, ref: ConversationRef) -> Conversation:
		conversation = await self._read(ref.id)
		if conversation is None:
			raise NotFound("conversation_not_found")
		return conversation

	async def _materialize(self, ref: ConversationRef, caller: str) -> Conversation:
		if isinstance(ref, DirectRef):
			if not ref.includes(caller):
				raise Forbidden("not_participant")
			existing = await self._read(ref.id)
			if existing is not None:
				return existing
			return await self.ensure_direct(caller, ref.counterpart(caller))
		conversation = await self._require(ref)
		_ensure_participant(conversation, caller)
		return conversation

	async def get(self, conversation_id: str, *, caller: Optional[str] = None) -> Conversation:
		"""One-shot read. With ``caller`` the read is authorised and a direct chat is created on first access."""
		ref = parse_conversation_id(conversation_id)
		if caller is None:
			return await self._require(ref)
		return await self._materialize(ref, caller)

	async def resolve(self, conversation_id: str, *, caller: str) -> Subscription[Conversation]:
		ref = parse_conversation_id(conversation_id)
		await self._materialize(ref, caller)

		async def _load() -> Conversation:
			return await self._require(ref)

		return self._hub.subscribe(conversation_topic(ref.id), _load)

	async def ensure_direct(self, caller: str, peer: str) -> DirectChat:
		ref = DirectRef.from_participants(caller, peer)
		existing = await self._read(ref.id)
		if isinstance(existing, DirectChat):
			return existing
		users = await self._directory.lookup_many(ref.participants)
		missing = [username for username in ref.participants if username not in users]
		if missing:
			raise NotFound("unknown_user")
		stored = await self._repo.insert(DirectChat(ref=ref, created_at=self._clock()))
		await outbox.append_chat_event("conversation.created", ref.id, user_id=caller, meta={"kind": "direct"})
		logger.info("chat_direct_created", extra={"conversation_id": ref.id})
		assert isinstance(stored, DirectChat)
		return stored

	async def create_group(
		self,
		creator: str,
		name: str,
		members: Iterable[str] = (),
		*,
		description: str = "",
		avatar_url: Optional[str] = None,
	) -> Group:
		if not name or not name.strip():
			raise InvalidMessage("invalid_group_name")
		usernames = [creator] + [u for u in dict.fromkeys(members) if u != creator]
		users = await self._directory.lookup_many(usernames)
		if len(users) != len(usernames):
			raise NotFound("unknown_user")
		group = Group(
			ref=GroupRef.new(),
			name=name.strip(),
			description=description,
			avatar_url=avatar_url,
			created_at=self._clock(),
			members=(GroupMember(creator, ROLE_CREATOR),) + tuple(GroupMember(u, ROLE_MEMBER) for u in usernames[1:]),
		)
		stored = await self._repo.insert(group)
		await outbox.append_chat_event(
			"conversation.created",
			group.id,
			user_id=creator,
			meta={"kind": "group", "members": len(group.members)},
		)
		logger.info("chat_group_created", extra={"conversation_id": group.id, "members": len(group.members)})
		assert isinstance(stored, Group)
		return stored

	async def add_member(self, conversation_id: str, username: str, *, actor: str) -> Group:
		ref = parse_conversation_id(conversation_id)
		group = _ensure_group(await self._require(ref))
		_ensure_privileged(group, actor)
		user = await self._directory.lookup_by_username(username)
		if user is None:
			raise NotFound("unknown_user")
		if group.includes(user.username):
			raise AlreadyMember()
		updated = await self._repo.add_member(ref.id, GroupMember(user.username, ROLE_MEMBER))
		self._hub.publish(conversation_topic(ref.id))
		await outbox.append_chat_event("member.added", ref.id, user_id=actor, meta={"username": user.username})
		logger.info("chat_member_added", extra={"conversation_id": ref.id, "members": len(updated.members)})
		if self._notifier is not None:
			await self._notifier.notify_member_added(updated, actor, user.username)
		return updated

	async def set_role(self, conversation_id: str, username: str, role: str, *, actor: str) -> Group:
		if role == ROLE_CREATOR:
			raise Forbidden("creator_immutable")
		if role not in (ROLE_ADMIN, ROLE_MEMBER):
			raise InvalidMessage("invalid_role")
		ref = parse_conversation_id(conversation_id)
		group = _ensure_group(await self._require(ref))
		_ensure_privileged(group, actor)
		target = group.member(username)
		if target is None:
			raise NotFound("not_member")
		if target.role == ROLE_CREATOR:
			raise Forbidden("creator_immutable")
		if target.role == role:
			return group
		updated = await self._repo.set_role(ref.id, username, role)
		self._hub.publish(conversation_topic(ref.id))
		await outbox.append_chat_event("member.role", ref.id, user_id=actor, meta={"username": username, "role": role})
		return updated

	async def update_metadata(self, conversation_id: str, patch: MetadataPatch, *, actor: str) -> Group:
		ref = parse_conversation_id(conversation_id)
		group = _ensure_group(await self._require(ref))
		_ensure_privileged(group, actor)
		if patch.name is not None and not patch.name.strip():
			raise InvalidMessage("invalid_group_name")
		if patch.is_empty():
			return group
		updated = await self._repo.update_metadata(ref.id, patch)
		self._hub.publish(conversation_topic(ref.id))
		await outbox.append_chat_event(
			"conversation.updated",
			ref.id,
			user_id=actor,
			meta={key: "1" for key, value in patch.as_dict().items() if value is not None},
		)
		return updated

	async def touch_activity(self, conversation_id: str) -> Optional[datetime]:
		"""Bump last activity to now; never moves it backwards and never raises."""
		try:
			ref = parse_conversation_id(conversation_id)
			stamp = await self._repo.touch(ref.id, self._clock())
		except (NotFound, asyncpg.PostgresError, OSError):
			logger.warning("chat_touch_failed", extra={"conversation_id": conversation_id})
			return None
		if stamp is not None:
			self._hub.publish(conversation_topic(ref.id))
		return stamp

	async def list_for_user(self, username: str) -> List[Conversation]:
		conversations = await self._repo.list_for_user(username)
		return sorted(conversations, key=_activity_key, reverse=True)
