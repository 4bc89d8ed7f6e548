import pytest

from instachat.domain.chat.outbox import CHAT_EVENT_STREAM

DIRECT = "chat:alice:bob"


@pytest.mark.asyncio
async def test_requires_authentication(api_client, users):
	response = await api_client.get("/chat/conversations")
	assert response.status_code == 401
	assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_direct_chat_round_trip(api_client, users, auth_headers, push, fake_redis):
	created = await api_client.post("/chat/direct/bob", headers=auth_headers("alice"))
	assert created.status_code == 200
	assert created.json()["id"] == DIRECT
	assert created.json()["participants"] == ["alice", "bob"]

	sent = await api_client.post(
		f"/chat/conversations/{DIRECT}/messages",
		json={"text": "coffee at 3?"},
		headers=auth_headers("alice"),
	)
	assert sent.status_code == 201
	assert sent.headers["X-Request-Id"]
	item = sent.json()["items"][0]
	assert item["author"] == "alice"
	assert item["content"] == {"type": "text", "text": "coffee at 3?"}
	assert push.targets() == ["uid-bob"]

	window = await api_client.get(f"/chat/conversations/{DIRECT}/messages", headers=auth_headers("bob"))
	assert window.status_code == 200
	body = window.json()
	assert [m["id"] for m in body["items"]] == [item["id"]]
	assert body["has_more"] is False

	events = await fake_redis.xrange(CHAT_EVENT_STREAM)
	assert [fields["event"] for _, fields in events] == ["conversation.created", "message.appended"]


@pytest.mark.asyncio
async def test_blank_message_is_rejected(api_client, users, auth_headers):
	response = await api_client.post(
		f"/chat/conversations/{DIRECT}/messages",
		json={"text": "   "},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 400
	assert response.json()["detail"] == "empty_message"


@pytest.mark.asyncio
async def test_outsider_cannot_read_direct_chat(api_client, users, auth_headers):
	await api_client.post("/chat/direct/bob", headers=auth_headers("alice"))

	response = await api_client.get(f"/chat/conversations/{DIRECT}/messages", headers=auth_headers("carol"))
	assert response.status_code == 403
	assert response.json()["detail"] == "not_participant"


@pytest.mark.asyncio
async def test_unknown_conversation_id(api_client, users, auth_headers):
	response = await api_client.get("/chat/conversations/lobby", headers=auth_headers("alice"))
	assert response.status_code == 404
	assert response.json()["detail"] == "unknown_conversation"


@pytest.mark.asyncio
async def test_group_lifecycle(api_client, users, auth_headers, push):
	created = await api_client.post(
		"/chat/groups",
		json={"name": "Trip", "members": ["dave"]},
		headers=auth_headers("carol"),
	)
	assert created.status_code == 201
	group = created.json()
	assert group["kind"] == "group"
	assert [m["role"] for m in group["members"]] == ["creator", "member"]
	group_id = group["id"]

	denied = await api_client.post(
		f"/chat/conversations/{group_id}/members",
		json={"username": "erin"},
		headers=auth_headers("dave"),
	)
	assert denied.status_code == 403

	promoted = await api_client.post(
		f"/chat/conversations/{group_id}/members/dave/role",
		json={"role": "admin"},
		headers=auth_headers("carol"),
	)
	assert promoted.status_code == 200

	added = await api_client.post(
		f"/chat/conversations/{group_id}/members",
		json={"username": "erin"},
		headers=auth_headers("dave"),
	)
	assert added.status_code == 200
	assert [m["username"] for m in added.json()["members"]] == ["carol", "dave", "erin"]
	assert push.payloads[-1].body == "added you to Trip"

	again = await api_client.post(
		f"/chat/conversations/{group_id}/members",
		json={"username": "erin"},
		headers=auth_headers("carol"),
	)
	assert again.status_code == 409

	renamed = await api_client.patch(
		f"/chat/conversations/{group_id}",
		json={"description": "Lisbon"},
		headers=auth_headers("dave"),
	)
	assert renamed.status_code == 200
	assert renamed.json()["description"] == "Lisbon"
	assert renamed.json()["name"] == "Trip"

	listed = await api_client.get("/chat/conversations", headers=auth_headers("erin"))
	assert [c["id"] for c in listed.json()["items"]] == [group_id]


@pytest.mark.asyncio
async def test_attachment_upload(api_client, users, auth_headers, push):
	response = await api_client.post(
		f"/chat/conversations/{DIRECT}/attachments",
		files={"file": ("photo.png", b"\x89PNG" + b"0" * 4000, "image/png")},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 201
	content = response.json()["items"][0]["content"]
	assert content["type"] == "attachment"
	assert content["kind"] == "image"
	assert content["url"].startswith("http://media.test/uploads/chats/image/alice-")
	assert push.payloads[0].body == "image/"


@pytest.mark.asyncio
async def test_unsupported_attachment(api_client, users, auth_headers):
	response = await api_client.post(
		f"/chat/conversations/{DIRECT}/attachments",
		files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 415


@pytest.mark.asyncio
async def test_unsend_own_message(api_client, users, auth_headers):
	sent = await api_client.post(
		f"/chat/conversations/{DIRECT}/messages",
		json={"text": "wrong chat"},
		headers=auth_headers("alice"),
	)
	message_id = sent.json()["items"][0]["id"]

	forbidden = await api_client.delete(
		f"/chat/conversations/{DIRECT}/messages/{message_id}", headers=auth_headers("bob")
	)
	assert forbidden.status_code == 403

	deleted = await api_client.delete(
		f"/chat/conversations/{DIRECT}/messages/{message_id}", headers=auth_headers("alice")
	)
	assert deleted.status_code == 204

	missing = await api_client.delete(
		f"/chat/conversations/{DIRECT}/messages/{message_id}", headers=auth_headers("alice")
	)
	assert missing.status_code == 404


@pytest.mark.asyncio
async def test_presence_endpoints(api_client, users, auth_headers, fake_redis):
	updated = await api_client.put("/chat/presence", json={"active": True}, headers=auth_headers("bob"))
	assert updated.status_code == 200
	assert updated.json()["active"] is True
	assert (await fake_redis.hgetall("chat:presence:bob"))["active"] == "1"

	seen = await api_client.get("/chat/presence/bob", headers=auth_headers("alice"))
	assert seen.json()["username"] == "bob"
	assert seen.json()["active"] is True


@pytest.mark.asyncio
async def test_bearer_token_identifies_caller(api_client, users):
	from instachat.infra import jwt as jwt_helper

	token = jwt_helper.encode_access({"sub": "uid-alice", "username": "alice"})
	response = await api_client.post("/chat/direct/bob", headers={"Authorization": f"Bearer {token}"})
	assert response.status_code == 200
	assert response.json()["id"] == DIRECT

	rejected = await api_client.get("/chat/conversations", headers={"Authorization": "Bearer not-a-jwt"})
	assert rejected.status_code == 401


@pytest.mark.asyncio
async def test_oversized_attachment_is_refused(api_client, users, auth_headers, push):
	from instachat.settings import settings

	response = await api_client.post(
		f"/chat/conversations/{DIRECT}/attachments",
		files={"file": ("big.jpg", b"0" * (settings.chat_image_max_bytes + 1), "image/jpeg")},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 413
	assert response.json()["detail"] == "too_large"
	assert push.payloads == []


@pytest.mark.asyncio
async def test_message_window_limit_is_bounded(api_client, users, auth_headers):
	from instachat.settings import settings

	response = await api_client.get(
		f"/chat/conversations/{DIRECT}/messages",
		params={"limit": settings.chat_max_window + 1},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 422
