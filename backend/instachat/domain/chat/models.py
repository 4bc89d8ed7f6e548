"""Domain models for the chat engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import ClassVar, Iterable, Mapping, Optional, Tuple, Union

import ulid

from instachat.domain.chat.errors import Forbidden, InvalidMessage, NotFound

DIRECT_PREFIX = "chat"
GROUP_PREFIX = "group"

ROLE_CREATOR = "creator"
ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
ROLES = (ROLE_CREATOR, ROLE_ADMIN, ROLE_MEMBER)
PRIVILEGED_ROLES = frozenset({ROLE_CREATOR, ROLE_ADMIN})

ATTACHMENT_KINDS = ("image", "video", "audio")


def _check_username(username: str) -> str:
	value = str(username or "").strip()
	if not value or ":" in value:
		raise NotFound("invalid_username")
	return value


@dataclass(slots=True, frozen=True)
class DirectRef:
	"""Canonical reference to a 1:1 conversation.

	The id is derived from the sorted usernames so both sides resolve the same
	conversation without a lookup table.
	"""

	id: str
	participants: Tuple[str, str]

	kind: ClassVar[str] = "direct"

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "DirectRef":
		first, second = sorted((_check_username(user_one), _check_username(user_two)))
		if first == second:
			raise Forbidden("cannot_dm_self")
		return cls(id=f"{DIRECT_PREFIX}:{first}:{second}", participants=(first, second))

	def includes(self, username: str) -> bool:
		return username in self.participants

	def counterpart(self, username: str) -> str:
		first, second = self.participants
		return second if username == first else first


@dataclass(slots=True, frozen=True)
class GroupRef:
	id: str

	kind: ClassVar[str] = "group"

	@classmethod
	def new(cls) -> "GroupRef":
		return cls(id=f"{GROUP_PREFIX}:{ulid.new()}")


ConversationRef = Union[DirectRef, GroupRef]


def parse_conversation_id(value: str) -> ConversationRef:
	"""Classify an id as direct or group from its prefix alone."""
	prefix, _, rest = str(value or "").partition(":")
	if prefix == GROUP_PREFIX and rest:
		return GroupRef(id=value)
	if prefix == DIRECT_PREFIX:
		parts = rest.split(":")
		if len(parts) == 2:
			ref = DirectRef.from_participants(parts[0], parts[1])
			if ref.id == value:
				return ref
	raise NotFound("unknown_conversation")


@dataclass(slots=True, frozen=True)
class GroupMember:
	username: str
	role: str = ROLE_MEMBER

	def is_privileged(self) -> bool:
		return self.role in PRIVILEGED_ROLES

	def to_dict(self) -> dict:
		return {"username": self.username, "role": self.role}


@dataclass(slots=True, frozen=True)
class DirectChat:
	ref: DirectRef
	created_at: datetime
	last_activity: Optional[datetime] = None

	kind: ClassVar[str] = "direct"

	@property
	def id(self) -> str:
		return self.ref.id

	@property
	def participant_a(self) -> str:
		return self.ref.participants[0]

	@property
	def participant_b(self) -> str:
		return self.ref.participants[1]

	def includes(self, username: str) -> bool:
		return self.ref.includes(username)

	def counterpart(self, username: str) -> str:
		return self.ref.counterpart(username)

	def recipients_for(self, sender: str) -> Tuple[str, ...]:
		return (self.counterpart(sender),)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"kind": self.kind,
			"participants": list(self.ref.participants),
			"created_at": self.created_at.isoformat(),
			"last_activity": self.last_activity.isoformat() if self.last_activity else None,
		}


@dataclass(slots=True, frozen=True)
class Group:
	ref: GroupRef
	name: str
	created_at: datetime
	members: Tuple[GroupMember, ...]
	description: str = ""
	avatar_url: Optional[str] = None
	last_activity: Optional[datetime] = None

	kind: ClassVar[str] = "group"

	@property
	def id(self) -> str:
		return self.ref.id

	@property
	def creator(self) -> Optional[GroupMember]:
		return next((m for m in self.members if m.role == ROLE_CREATOR), None)

	def member(self, username: str) -> Optional[GroupMember]:
		return next((m for m in self.members if m.username == username), None)

	def includes(self, username: str) -> bool:
		return self.member(username) is not None

	def usernames(self) -> Tuple[str, ...]:
		return tuple(member.username for member in self.members)

	def recipients_for(self, sender: str) -> Tuple[str, ...]:
		return tuple(m.username for m in self.members if m.username != sender)

	def with_member(self, member: GroupMember) -> "Group":
		return replace(self, members=self.members + (member,))

	def with_role(self, username: str, role: str) -> "Group":
		members = tuple(replace(m, role=role) if m.username == username else m for m in self.members)
		return replace(self, members=members)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"kind": self.kind,
			"name": self.name,
			"description": self.description,
			"avatar_url": self.avatar_url,
			"members": [member.to_dict() for member in self.members],
			"created_at": self.created_at.isoformat(),
			"last_activity": self.last_activity.isoformat() if self.last_activity else None,
		}


Conversation = Union[DirectChat, Group]


@dataclass(slots=True, frozen=True)
class MetadataPatch:
	"""Partial conversation metadata update; None means "leave unchanged"."""

	name: Optional[str] = None
	description: Optional[str] = None
	avatar_url: Optional[str] = None

	def is_empty(self) -> bool:
		return self.name is None and self.description is None and self.avatar_url is None

	def apply(self, group: Group) -> Group:
		changes = {key: value for key, value in self.as_dict().items() if value is not None}
		return replace(group, **changes) if changes else group

	def as_dict(self) -> dict:
		return {"name": self.name, "description": self.description, "avatar_url": self.avatar_url}


@dataclass(slots=True, frozen=True)
class TextContent:
	text: str

	kind: ClassVar[str] = "text"

	def summary(self) -> str:
		return self.text


@dataclass(slots=True, frozen=True)
class AttachmentContent:
	kind: str
	url: str
	mime_type: Optional[str] = None

	def summary(self) -> str:
		return f"{self.kind}/"


MessageContent = Union[TextContent, AttachmentContent]


def text_content(text: Optional[str]) -> TextContent:
	if text is None or not str(text).strip():
		raise InvalidMessage("empty_message")
	return TextContent(text=str(text))


def attachment_content(kind: str, url: str, mime_type: Optional[str] = None) -> AttachmentContent:
	if kind not in ATTACHMENT_KINDS:
		raise InvalidMessage("invalid_attachment_kind")
	if not url or not str(url).strip():
		raise InvalidMessage("attachment_url_required")
	return AttachmentContent(kind=kind, url=str(url), mime_type=mime_type)


def validate_content(content: MessageContent) -> MessageContent:
	if isinstance(content, TextContent):
		return text_content(content.text)
	if isinstance(content, AttachmentContent):
		return attachment_content(content.kind, content.url, content.mime_type)
	raise InvalidMessage("empty_message")


def content_to_dict(content: MessageContent) -> dict:
	if isinstance(content, TextContent):
		return {"type": "text", "text": content.text}
	return {"type": "attachment", "kind": content.kind, "url": content.url, "mime_type": content.mime_type}


def content_from_dict(payload: Mapping[str, object]) -> MessageContent:
	if payload.get("type") == "attachment":
		return AttachmentContent(
			kind=str(payload["kind"]),
			url=str(payload["url"]),
			mime_type=str(payload["mime_type"]) if payload.get("mime_type") else None,
		)
	return TextContent(text=str(payload.get("text") or ""))


@dataclass(slots=True, frozen=True)
class Message:
	id: str
	conversation_id: str
	author: str
	seq: int
	created_at: datetime
	content: MessageContent

	@property
	def text(self) -> Optional[str]:
		return self.content.text if isinstance(self.content, TextContent) else None

	@property
	def attachment(self) -> Optional[AttachmentContent]:
		return self.content if isinstance(self.content, AttachmentContent) else None

	def sort_key(self) -> Tuple[datetime, int]:
		return (self.created_at, self.seq)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"conversation_id": self.conversation_id,
			"author": self.author,
			"seq": self.seq,
			"created_at": self.created_at.isoformat(),
			"content": content_to_dict(self.content),
		}


@dataclass(slots=True, frozen=True)
class MessageWindow:
	"""Newest ``limit`` messages of a conversation, oldest first."""

	conversation_id: str
	limit: int
	messages: Tuple[Message, ...] = field(default_factory=tuple)

	@property
	def has_more(self) -> bool:
		return len(self.messages) >= self.limit

	def ids(self) -> Tuple[str, ...]:
		return tuple(message.id for message in self.messages)

	def __len__(self) -> int:
		return len(self.messages)

	def to_dict(self) -> dict:
		return {
			"conversation_id": self.conversation_id,
			"limit": self.limit,
			"has_more": self.has_more,
			"items": [message.to_dict() for message in self.messages],
		}


@dataclass(slots=True, frozen=True)
class Presence:
	username: str
	active: bool
	last_seen: Optional[datetime] = None

	def to_dict(self) -> dict:
		return {
			"username": self.username,
			"active": self.active,
			"last_seen": self.last_seen.isoformat() if self.last_seen else None,
		}


def order_messages(messages: Iterable[Message]) -> Tuple[Message, ...]:
	return tuple(sorted(messages, key=Message.sort_key))
