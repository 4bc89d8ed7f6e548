"""Pydantic schemas for the chat API."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from instachat.domain.chat.models import (
	AttachmentContent,
	Conversation,
	DirectChat,
	Message,
	MessageContent,
	MessageWindow,
	MetadataPatch,
	Presence,
)


class TextContentSchema(BaseModel):
	type: Literal["text"] = "text"
	text: str


class AttachmentContentSchema(BaseModel):
	type: Literal["attachment"] = "attachment"
	kind: Literal["image", "video", "audio"]
	url: str
	mime_type: Optional[str] = None


ContentSchema = Annotated[Union[TextContentSchema, AttachmentContentSchema], Field(discriminator="type")]


def _content_schema(content: MessageContent) -> Union[TextContentSchema, AttachmentContentSchema]:
	if isinstance(content, AttachmentContent):
		return AttachmentContentSchema(kind=content.kind, url=content.url, mime_type=content.mime_type)
	return TextContentSchema(text=content.text)


class MessageResponse(BaseModel):
	id: str = Field(..., examples=["01HZY5AJ6HT7PM1F8M3X2W8Z9V"])
	conversation_id: str
	author: str
	seq: int
	created_at: datetime
	content: ContentSchema

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			conversation_id=message.conversation_id,
			author=message.author,
			seq=message.seq,
			created_at=message.created_at,
			content=_content_schema(message.content),
		)


class MessageWindowResponse(BaseModel):
	conversation_id: str
	limit: int
	has_more: bool
	items: List[MessageResponse]

	@classmethod
	def from_model(cls, window: MessageWindow) -> "MessageWindowResponse":
		return cls(
			conversation_id=window.conversation_id,
			limit=window.limit,
			has_more=window.has_more,
			items=[MessageResponse.from_model(message) for message in window.messages],
		)


class SendMessageRequest(BaseModel):
	text: str = Field(..., max_length=4000)


class SendMessageResponse(BaseModel):
	items: List[MessageResponse]


class GroupMemberResponse(BaseModel):
	username: str
	role: Literal["creator", "admin", "member"]


class ConversationResponse(BaseModel):
	id: str
	kind: Literal["direct", "group"]
	participants: List[str] = Field(default_factory=list)
	name: Optional[str] = None
	description: Optional[str] = None
	avatar_url: Optional[str] = None
	members: List[GroupMemberResponse] = Field(default_factory=list)
	created_at: datetime
	last_activity: Optional[datetime] = None

	@classmethod
	def from_model(cls, conversation: Conversation) -> "ConversationResponse":
		if isinstance(conversation, DirectChat):
			return cls(
				id=conversation.id,
				kind="direct",
				participants=list(conversation.ref.participants),
				created_at=conversation.created_at,
				last_activity=conversation.last_activity,
			)
		return cls(
			id=conversation.id,
			kind="group",
			participants=list(conversation.usernames()),
			name=conversation.name,
			description=conversation.description,
			avatar_url=conversation.avatar_url,
			members=[GroupMemberResponse(username=m.username, role=m.role) for m in conversation.members],
			created_at=conversation.created_at,
			last_activity=conversation.last_activity,
		)


class ConversationListResponse(BaseModel):
	items: List[ConversationResponse]


class CreateGroupRequest(BaseModel):
	name: str = Field(..., min_length=1, max_length=100)
	members: List[str] = Field(default_factory=list)
	description: str = Field(default="", max_length=500)
	avatar_url: Optional[str] = None


class UpdateMetadataRequest(BaseModel):
	name: Optional[str] = Field(default=None, max_length=100)
	description: Optional[str] = Field(default=None, max_length=500)
	avatar_url: Optional[str] = None

	def to_patch(self) -> MetadataPatch:
		return MetadataPatch(name=self.name, description=self.description, avatar_url=self.avatar_url)


class AddMemberRequest(BaseModel):
	username: str = Field(..., min_length=1)


class SetRoleRequest(BaseModel):
	role: str


class PresenceUpdateRequest(BaseModel):
	active: bool


class PresenceResponse(BaseModel):
	username: str
	active: bool
	last_seen: Optional[datetime] = None

	@classmethod
	def from_model(cls, presence: Presence) -> "PresenceResponse":
		return cls(username=presence.username, active=presence.active, last_seen=presence.last_seen)
