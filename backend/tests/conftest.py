import sys
from pathlib import Path
from typing import List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from instachat.domain.chat import registry as chat_registry
from instachat.domain.chat import store as chat_store
from instachat.domain.chat.service import ChatEngine, set_engine
from instachat.domain.directory import User
from instachat.domain.directory import repo as directory_repo
from instachat.infra import postgres
from instachat.infra.live import LiveHub
from instachat.infra.push import PushPayload
from instachat.infra.storage import LocalObjectStorage
from instachat.main import app
from instachat.settings import settings

USERNAMES = ("alice", "bob", "carol", "dave", "erin")


class RecordingPush:
	"""Push collaborator that keeps every payload instead of sending it."""

	def __init__(self) -> None:
		self.payloads: List[PushPayload] = []
		self.fail_for: set[str] = set()

	async def deliver(self, payload: PushPayload) -> None:
		if payload.target_uid in self.fail_for:
			raise RuntimeError("push gateway down")
		self.payloads.append(payload)

	def targets(self) -> List[str]:
		return [payload.target_uid for payload in self.payloads]


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from instachat.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via X-User-Id/X-Username headers, which are only
	accepted in dev mode.
	"""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture(autouse=True)
def fresh_memory(monkeypatch):
	# A fresh store per test also gives each event loop its own locks
	for module in (directory_repo, chat_store, chat_registry):
		monkeypatch.setattr(module, "_MEMORY", module._MemoryStore())


@pytest.fixture
def push() -> RecordingPush:
	return RecordingPush()


@pytest.fixture
def storage(tmp_path) -> LocalObjectStorage:
	return LocalObjectStorage(tmp_path / "uploads", base_url="http://media.test/uploads", chunk_bytes=1024)


@pytest_asyncio.fixture(autouse=True)
async def engine(push, storage):
	chat_engine = ChatEngine(hub=LiveHub(), push=push, storage=storage)
	set_engine(chat_engine)
	try:
		yield chat_engine
	finally:
		await chat_engine.shutdown()
		set_engine(None)


@pytest_asyncio.fixture
async def users(engine):
	seeded = {}
	for username in USERNAMES:
		seeded[username] = await engine.directory.upsert(
			User(uid=f"uid-{username}", username=username, fullname=username.title(), avatar_url=f"http://media.test/{username}.png")
		)
	return seeded


@pytest.fixture
def auth_headers():
	def _headers(username: str) -> dict:
		return {"X-User-Id": f"uid-{username}", "X-Username": username}

	return _headers


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
