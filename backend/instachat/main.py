"""ASGI entrypoint: FastAPI REST API plus the Socket.IO chat namespace."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import asyncpg
import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from instachat.api import chat, ops
from instachat.api.errors import install_error_handlers
from instachat.api.middleware_request_id import RequestIdMiddleware
from instachat.domain.chat.service import get_engine
from instachat.domain.chat.sockets import ChatNamespace, set_namespace
from instachat.infra import postgres
from instachat.obs import init as obs_init
from instachat.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	try:
		await postgres.init_pool()
	except (OSError, asyncpg.PostgresError):
		# Repositories fall back to process memory when no pool is reachable
		logger.warning("postgres_unavailable", extra={"fallback": "memory"})
	try:
		yield
	finally:
		await get_engine().shutdown()
		await postgres.close_pool()


app = FastAPI(title="InstaChat", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else [settings.public_base_url]

# Starlette disallows wildcard '*' with allow_credentials=True
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else [settings.public_base_url]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Static serving for chat media written by the local storage backend
if settings.is_dev():
	settings.upload_dir.mkdir(parents=True, exist_ok=True)
	app.mount("/uploads", StaticFiles(directory=str(settings.upload_dir), check_dir=True), name="uploads")

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
chat_namespace = ChatNamespace()
sio.register_namespace(chat_namespace)
set_namespace(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.add_middleware(RequestIdMiddleware)

app.include_router(chat.router, tags=["chat"])
app.include_router(ops.router, tags=["ops"])
