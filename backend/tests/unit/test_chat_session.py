import asyncio
from typing import List

import pytest

from instachat.domain.chat import session as chat_session
from instachat.domain.chat.errors import Forbidden, InvalidMessage, TooLarge, TransferFailed, Unavailable, UploadInFlight
from instachat.domain.chat.models import TextContent
from instachat.domain.chat.service import ChatEngine
from instachat.domain.chat.uploads import MediaFile
from instachat.infra.live import LiveHub

DIRECT = "chat:alice:bob"


async def eventually(predicate, timeout: float = 1.0) -> None:
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not predicate():
		if loop.time() > deadline:
			raise AssertionError("condition not met in time")
		await asyncio.sleep(0.01)


class GatedStorage:
	"""Storage whose transfer waits until the test opens the gate."""

	def __init__(self) -> None:
		self.gate = asyncio.Event()
		self.discarded: List[str] = []

	async def put(self, key, data, content_type):
		half = len(data) // 2
		yield half
		await self.gate.wait()
		yield len(data)

	def url_for(self, key):
		return f"http://media.test/{key}"

	async def discard(self, key):
		self.discarded.append(key)


def _photo(size: int = 2048) -> MediaFile:
	return MediaFile(filename="photo.jpg", content_type="image/jpeg", data=b"p" * size)


class Recorder:
	def __init__(self) -> None:
		self.events: List[str] = []

	def __call__(self, event, session) -> None:
		self.events.append(event)


@pytest.mark.asyncio
async def test_open_resolves_direct_chat_and_counterpart_presence(engine, users):
	await engine.presence.set_active("bob", True)
	recorder = Recorder()

	session = await engine.open_session(DIRECT, "alice", on_change=recorder)
	try:
		assert session.state == chat_session.READY
		assert session.counterpart == "bob"
		assert session.messages == []
		assert session.has_more is False
		assert recorder.events[-1] == chat_session.EVENT_STATE
		await eventually(lambda: session.counterpart_presence is not None)
		assert session.counterpart_presence.active is True
		assert (await engine.presence.get("alice")).active is True
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_messages_from_the_other_side_arrive_live(engine, users, push):
	session = await engine.open_session(DIRECT, "alice")
	try:
		await engine.send(DIRECT, "bob", text="hi alice")

		await eventually(lambda: [m.text for m in session.messages] == ["hi alice"])
		assert push.targets() == ["uid-alice"]
		assert push.payloads[0].body == "hi alice"
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_send_text_and_attachment_appends_two_messages(engine, users, push):
	recorder = Recorder()
	session = await engine.open_session(DIRECT, "alice", on_change=recorder)
	try:
		sent = await session.send("look at this", attachment=_photo())

		assert [m.attachment is not None for m in sent] == [True, False]
		assert sent[1].text == "look at this"
		assert sent[0].seq < sent[1].seq
		assert [p.body for p in push.payloads] == ["image/", "look at this"]
		assert session.state == chat_session.READY
		assert session.upload_progress == 0
		assert chat_session.EVENT_UPLOAD in recorder.events
		await eventually(lambda: len(session.messages) == 2)
		conversation = await engine.registry.get(DIRECT)
		assert conversation.last_activity is not None
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_blank_send_is_rejected_without_state_change(engine, users):
	session = await engine.open_session(DIRECT, "alice")
	try:
		with pytest.raises(InvalidMessage):
			await session.send("   ")
		assert session.state == chat_session.READY
		assert await engine.store.count(DIRECT) == 0
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_oversized_attachment_is_rejected_before_upload(engine, users):
	session = await engine.open_session(DIRECT, "alice")
	try:
		with pytest.raises(TooLarge):
			await session.send("big one", attachment=_photo(4 * 1024 * 1024))
		assert session.state == chat_session.READY
		assert await engine.store.count(DIRECT) == 0
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_second_send_while_uploading_is_refused(users, push):
	storage = GatedStorage()
	engine = ChatEngine(hub=LiveHub(), push=push, storage=storage)
	session = await engine.open_session(DIRECT, "alice")
	try:
		first = asyncio.create_task(session.send(attachment=_photo()))
		await eventually(lambda: session.upload_progress == 50)
		assert session.state == chat_session.SENDING

		with pytest.raises(UploadInFlight):
			await session.send("me too")

		storage.gate.set()
		sent = await first
		assert len(sent) == 1
		assert session.state == chat_session.READY
	finally:
		await session.close()
		await engine.shutdown()


@pytest.mark.asyncio
async def test_cancel_upload_fails_send_and_appends_nothing(users, push):
	storage = GatedStorage()
	engine = ChatEngine(hub=LiveHub(), push=push, storage=storage)
	session = await engine.open_session(DIRECT, "alice")
	try:
		pending = asyncio.create_task(session.send("caption", attachment=_photo()))
		await eventually(lambda: session.upload_progress == 50)

		assert session.cancel_upload() is True
		storage.gate.set()
		with pytest.raises(TransferFailed) as exc:
			await pending

		assert exc.value.reason == "cancelled"
		assert session.last_error is exc.value
		assert session.state == chat_session.READY
		assert await engine.store.count(DIRECT) == 0
		assert len(storage.discarded) == 1
		assert push.payloads == []
	finally:
		await session.close()
		await engine.shutdown()


@pytest.mark.asyncio
async def test_load_more_grows_window_by_one_page(engine, users):
	for i in range(5):
		await engine.store.append(DIRECT, "bob", TextContent(text=f"old {i}"))
	session = await engine.open_session(DIRECT, "alice", page_size=2)
	try:
		assert [m.text for m in session.messages] == ["old 3", "old 4"]
		assert session.has_more is True

		assert await session.load_more() is True
		assert session.limit == 4
		assert [m.text for m in session.messages] == ["old 1", "old 2", "old 3", "old 4"]

		assert await session.load_more() is True
		assert len(session.messages) == 5
		assert session.has_more is False
		assert await session.load_more() is False
		assert engine.hub.subscriber_count("messages:" + DIRECT) == 1
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_unsend_only_own_messages(engine, users):
	session = await engine.open_session(DIRECT, "alice")
	try:
		mine = (await session.send("typo"))[0]
		theirs = (await engine.send(DIRECT, "bob", text="hey"))[0]

		with pytest.raises(Forbidden):
			await session.unsend(theirs.id)
		await session.unsend(mine.id)

		await eventually(lambda: [m.text for m in session.messages] == ["hey"])
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_group_session_tracks_membership(engine, users):
	group = await engine.registry.create_group("carol", "Trip", ["dave"])
	session = await engine.open_session(group.id, "carol")
	try:
		assert session.counterpart is None
		await session.add_member("erin")
		await eventually(lambda: session.conversation.usernames() == ("carol", "dave", "erin"))
		await session.update_metadata(name="Trip 2024")
		await eventually(lambda: session.conversation.name == "Trip 2024")
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_open_fails_for_outsiders_and_leaves_session_closed(engine, users):
	group = await engine.registry.create_group("carol", "Trip", ["dave"])
	session = chat_session.ChatSession(engine, group.id, "alice")

	with pytest.raises(Forbidden):
		await session.open()
	assert session.state == chat_session.CLOSED
	assert engine.hub.subscriber_count("messages:" + group.id) == 0


@pytest.mark.asyncio
async def test_close_releases_subscriptions_and_marks_inactive(engine, users):
	session = await engine.open_session(DIRECT, "alice")
	await session.close()

	assert session.state == chat_session.CLOSED
	assert engine.hub.subscriber_count("messages:" + DIRECT) == 0
	assert engine.hub.subscriber_count("conversation:" + DIRECT) == 0
	assert engine.hub.subscriber_count("presence:bob") == 0
	assert (await engine.presence.get("alice")).active is False
	with pytest.raises(Unavailable):
		await session.send("late")


@pytest.mark.asyncio
async def test_only_the_author_can_unsend(engine, users, push):
	sent = await engine.send(DIRECT, "alice", text="hi")
	message = sent[0]
	assert await engine.store.count(DIRECT) == 1
	assert message.author == "alice"

	with pytest.raises(Forbidden):
		await engine.store.remove(DIRECT, message.id, "bob")
	await engine.store.remove(DIRECT, message.id, "alice")

	assert await engine.store.count(DIRECT) == 0
	assert push.targets() == ["uid-bob"]


@pytest.mark.asyncio
async def test_load_more_reaches_the_oldest_message_then_stops(engine, users):
	for i in range(11):
		await engine.store.append(DIRECT, "bob", TextContent(text=f"m{i}"))
	session = await engine.open_session(DIRECT, "alice", page_size=2)
	try:
		grown = 0
		while await session.load_more():
			grown += 1
			assert grown <= 6

		assert grown == 5
		assert session.limit == 12
		assert [m.text for m in session.messages] == [f"m{i}" for i in range(11)]
		assert session.has_more is False
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_send_survives_activity_touch_failure(engine, users, push, monkeypatch):
	session = await engine.open_session(DIRECT, "alice")
	try:
		before = (await engine.registry.get(DIRECT)).last_activity

		async def failing_touch(conversation_id, now):
			raise OSError("connection reset")

		monkeypatch.setattr(engine.registry._repo, "touch", failing_touch)
		sent = await session.send("hi")

		assert [m.text for m in sent] == ["hi"]
		assert session.state == chat_session.READY
		assert push.targets() == ["uid-bob"]
		await eventually(lambda: [m.id for m in session.messages] == [sent[0].id])
		assert (await engine.registry.get(DIRECT)).last_activity == before
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_push_failure_keeps_the_message(engine, users, push):
	push.fail_for.add("uid-bob")
	session = await engine.open_session(DIRECT, "alice")
	try:
		sent = await session.send("are you there?")

		assert len(sent) == 1
		assert session.state == chat_session.READY
		assert session.last_error is None
		assert push.payloads == []
		assert await engine.store.count(DIRECT) == 1
		assert (await engine.registry.get(DIRECT)).last_activity is not None
	finally:
		await session.close()


@pytest.mark.asyncio
async def test_presence_stays_active_until_last_session_closes(engine, users):
	group = await engine.registry.create_group("carol", "Trip", ["alice"])
	first = await engine.open_session(DIRECT, "alice")
	second = await engine.open_session(group.id, "alice")

	await first.close()
	assert second.state == chat_session.READY
	assert (await engine.presence.get("alice")).active is True

	await second.close()
	assert (await engine.presence.get("alice")).active is False
