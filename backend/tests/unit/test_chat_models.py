from datetime import datetime, timedelta, timezone

import pytest

from instachat.domain.chat.errors import Forbidden, InvalidMessage, NotFound
from instachat.domain.chat.models import (
	AttachmentContent,
	DirectRef,
	GroupRef,
	Message,
	MessageWindow,
	MetadataPatch,
	TextContent,
	attachment_content,
	content_from_dict,
	content_to_dict,
	order_messages,
	parse_conversation_id,
	text_content,
	validate_content,
)


def test_direct_ref_is_order_independent():
	first = DirectRef.from_participants("bob", "alice")
	second = DirectRef.from_participants("alice", "bob")
	assert first == second
	assert first.id == "chat:alice:bob"
	assert first.counterpart("alice") == "bob"
	assert first.counterpart("bob") == "alice"


def test_direct_ref_rejects_self_chat():
	with pytest.raises(Forbidden) as exc:
		DirectRef.from_participants("alice", "alice")
	assert exc.value.reason == "cannot_dm_self"


@pytest.mark.parametrize("username", ["", "  ", "a:b"])
def test_direct_ref_rejects_bad_usernames(username):
	with pytest.raises(NotFound):
		DirectRef.from_participants("alice", username)


def test_parse_conversation_id_classifies_by_prefix():
	direct = parse_conversation_id("chat:alice:bob")
	assert isinstance(direct, DirectRef)
	assert direct.participants == ("alice", "bob")

	group = GroupRef.new()
	parsed = parse_conversation_id(group.id)
	assert isinstance(parsed, GroupRef)
	assert parsed.id == group.id


@pytest.mark.parametrize("value", ["", "room:1", "group:", "chat:alice", "chat:bob:alice", "chat:alice:alice"])
def test_parse_conversation_id_rejects_unknown_ids(value):
	with pytest.raises((NotFound, Forbidden)):
		parse_conversation_id(value)


def test_text_content_requires_non_blank_text():
	assert text_content("hi").text == "hi"
	with pytest.raises(InvalidMessage) as exc:
		text_content("   ")
	assert exc.value.reason == "empty_message"


def test_attachment_content_validates_kind_and_url():
	assert attachment_content("image", "http://x/1.png").kind == "image"
	with pytest.raises(InvalidMessage) as exc:
		attachment_content("pdf", "http://x/1.pdf")
	assert exc.value.reason == "invalid_attachment_kind"
	with pytest.raises(InvalidMessage) as exc:
		attachment_content("video", "")
	assert exc.value.reason == "attachment_url_required"


def test_validate_content_rechecks_text():
	with pytest.raises(InvalidMessage):
		validate_content(TextContent(text="\n\t"))


def test_content_dict_conversion_keeps_attachment_fields():
	content = AttachmentContent(kind="video", url="http://x/v.mp4", mime_type="video/mp4")
	payload = content_to_dict(content)
	assert payload == {"type": "attachment", "kind": "video", "url": "http://x/v.mp4", "mime_type": "video/mp4"}
	assert content_from_dict(payload) == content
	assert content_from_dict({"type": "text", "text": "yo"}) == TextContent(text="yo")


def test_summaries():
	assert TextContent(text="see you").summary() == "see you"
	assert AttachmentContent(kind="image", url="u").summary() == "image/"


def _message(seq: int, created_at: datetime) -> Message:
	return Message(
		id=f"m{seq}",
		conversation_id="chat:alice:bob",
		author="alice",
		seq=seq,
		created_at=created_at,
		content=TextContent(text=str(seq)),
	)


def test_order_messages_breaks_timestamp_ties_by_seq():
	now = datetime(2024, 1, 1, tzinfo=timezone.utc)
	messages = [_message(3, now), _message(1, now), _message(2, now - timedelta(seconds=1))]
	assert [m.seq for m in order_messages(messages)] == [2, 1, 3]


def test_window_has_more_when_full():
	now = datetime(2024, 1, 1, tzinfo=timezone.utc)
	full = MessageWindow("chat:alice:bob", 2, (_message(1, now), _message(2, now)))
	partial = MessageWindow("chat:alice:bob", 3, (_message(1, now), _message(2, now)))
	assert full.has_more is True
	assert partial.has_more is False
	assert partial.ids() == ("m1", "m2")


def test_metadata_patch_only_applies_given_fields():
	patch = MetadataPatch(description="weekend plans")
	assert not patch.is_empty()
	assert MetadataPatch().is_empty()
	assert patch.as_dict() == {"name": None, "description": "weekend plans", "avatar_url": None}
