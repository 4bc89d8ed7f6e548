"""FastAPI endpoints for the chat engine."""

from __future__ import annotations

from typing import Iterable, Optional

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile, status

from instachat.api.request_id import get_request_id
from instachat.domain.chat import sockets
from instachat.domain.chat.schemas import (
	AddMemberRequest,
	ConversationListResponse,
	ConversationResponse,
	CreateGroupRequest,
	MessageResponse,
	MessageWindowResponse,
	PresenceResponse,
	PresenceUpdateRequest,
	SendMessageRequest,
	SendMessageResponse,
	SetRoleRequest,
	UpdateMetadataRequest,
)
from instachat.domain.chat.service import ChatEngine, get_engine
from instachat.domain.chat.uploads import SURFACE_CHAT, MediaFile
from instachat.infra.auth import AuthenticatedUser, get_current_user
from instachat.settings import settings

router = APIRouter(prefix="/chat", tags=["chat"])


def engine_dep() -> ChatEngine:
	return get_engine()


async def _read_upload(engine: ChatEngine, file: UploadFile) -> MediaFile:
	"""Read the upload in chunks, stopping as soon as it passes the chat ceiling."""
	kind, ceiling = engine.uploads.ceiling_for(file.content_type, surface=SURFACE_CHAT)
	chunks = []
	total = 0
	while True:
		chunk = await file.read(settings.upload_chunk_bytes)
		if not chunk:
			break
		total += len(chunk)
		engine.uploads.check_size(kind, ceiling, total)
		chunks.append(chunk)
	return MediaFile(filename=file.filename or "upload", content_type=file.content_type or "", data=b"".join(chunks))


async def _announce(usernames: Iterable[str], conversation: ConversationResponse) -> None:
	payload = conversation.model_dump(mode="json")
	for username in usernames:
		await sockets.emit_user_event(username, "chat:inbox", payload)


@router.post("/direct/{username}", response_model=ConversationResponse)
async def ensure_direct_endpoint(
	username: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationResponse:
	conversation = await engine.registry.ensure_direct(auth_user.username, username)
	return ConversationResponse.from_model(conversation)


@router.post("/groups", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_group_endpoint(
	payload: CreateGroupRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationResponse:
	group = await engine.registry.create_group(
		auth_user.username,
		payload.name,
		payload.members,
		description=payload.description,
		avatar_url=payload.avatar_url,
	)
	result = ConversationResponse.from_model(group)
	await _announce(group.usernames(), result)
	return result


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationListResponse:
	conversations = await engine.registry.list_for_user(auth_user.username)
	return ConversationListResponse(items=[ConversationResponse.from_model(c) for c in conversations])


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationResponse:
	conversation = await engine.registry.get(conversation_id, caller=auth_user.username)
	return ConversationResponse.from_model(conversation)


@router.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
async def update_conversation_endpoint(
	conversation_id: str,
	payload: UpdateMetadataRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationResponse:
	group = await engine.registry.update_metadata(conversation_id, payload.to_patch(), actor=auth_user.username)
	return ConversationResponse.from_model(group)


@router.post("/conversations/{conversation_id}/members", response_model=ConversationResponse)
async def add_member_endpoint(
	conversation_id: str,
	payload: AddMemberRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationResponse:
	group = await engine.registry.add_member(conversation_id, payload.username, actor=auth_user.username)
	result = ConversationResponse.from_model(group)
	await _announce((payload.username,), result)
	return result


@router.post("/conversations/{conversation_id}/members/{username}/role", response_model=ConversationResponse)
async def set_role_endpoint(
	conversation_id: str,
	username: str,
	payload: SetRoleRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> ConversationResponse:
	group = await engine.registry.set_role(conversation_id, username, payload.role, actor=auth_user.username)
	return ConversationResponse.from_model(group)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageWindowResponse)
async def list_messages_endpoint(
	conversation_id: str,
	limit: Optional[int] = Query(default=None, ge=1, le=settings.chat_max_window),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> MessageWindowResponse:
	await engine.registry.get(conversation_id, caller=auth_user.username)
	window = await engine.store.load_older(conversation_id, limit or settings.chat_page_size)
	return MessageWindowResponse.from_model(window)


@router.post(
	"/conversations/{conversation_id}/messages",
	response_model=SendMessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendMessageRequest,
	request: Request,
	response: Response,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> SendMessageResponse:
	messages = await engine.send(conversation_id, auth_user.username, text=payload.text)
	response.headers["X-Request-Id"] = get_request_id(request)
	return SendMessageResponse(items=[MessageResponse.from_model(m) for m in messages])


@router.post(
	"/conversations/{conversation_id}/attachments",
	response_model=SendMessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_attachment_endpoint(
	conversation_id: str,
	request: Request,
	response: Response,
	file: UploadFile = File(...),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> SendMessageResponse:
	media = await _read_upload(engine, file)
	messages = await engine.send(conversation_id, auth_user.username, attachment=media)
	response.headers["X-Request-Id"] = get_request_id(request)
	return SendMessageResponse(items=[MessageResponse.from_model(m) for m in messages])


@router.delete("/conversations/{conversation_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unsend_message_endpoint(
	conversation_id: str,
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> Response:
	await engine.store.remove(conversation_id, message_id, auth_user.username)
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/presence", response_model=PresenceResponse)
async def set_presence_endpoint(
	payload: PresenceUpdateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> PresenceResponse:
	presence = await engine.presence.set_active(auth_user.username, payload.active)
	return PresenceResponse.from_model(presence)


@router.get("/presence/{username}", response_model=PresenceResponse)
async def get_presence_endpoint(
	username: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: ChatEngine = Depends(engine_dep),
) -> PresenceResponse:
	presence = await engine.presence.get(username)
	return PresenceResponse.from_model(presence)
