import asyncio
import sys
from pathlib import Path
from typing import Iterable

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from whereabouts.infra.docstore import RedisDocumentStore
from whereabouts.infra.session import SessionInfo
from whereabouts.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from whereabouts.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def fast_settings():
	"""Shrink poll/retry/stabilization intervals so streams settle quickly."""
	original = (
		settings.subscription_poll_seconds,
		settings.subscription_retry_seconds,
		settings.suggestion_stabilize_seconds,
	)
	settings.subscription_poll_seconds = 0.05
	settings.subscription_retry_seconds = 0.05
	settings.suggestion_stabilize_seconds = 0.0
	try:
		yield
	finally:
		(
			settings.subscription_poll_seconds,
			settings.subscription_retry_seconds,
			settings.suggestion_stabilize_seconds,
		) = original


@pytest.fixture
def store():
	return RedisDocumentStore()


@pytest.fixture
def make_user(store):
	"""Seed a user document and return its SessionInfo."""

	async def _make(
		user_id: str,
		email: str,
		*,
		friends: Iterable[str] = (),
		requests: Iterable[str] = (),
		**fields,
	) -> SessionInfo:
		data = {
			"email": email,
			"displayName": fields.pop("displayName", user_id.title()),
			"photoURL": fields.pop("photoURL", None),
			"isInLibrary": False,
			"friends": list(friends),
			"requests": list(requests),
		}
		data.update(fields)
		await store.set_document(settings.users_kind, user_id, data)
		return SessionInfo(user_id=user_id, email=email, display_name=data["displayName"])

	return _make


@pytest.fixture
def eventually():
	"""Poll an (optionally async) predicate until it holds or the timeout expires."""

	async def _wait(predicate, timeout: float = 2.0, interval: float = 0.02):
		loop = asyncio.get_running_loop()
		deadline = loop.time() + timeout
		while True:
			result = predicate()
			if asyncio.iscoroutine(result):
				result = await result
			if result:
				return result
			if loop.time() >= deadline:
				raise AssertionError("condition not met before timeout")
			await asyncio.sleep(interval)

	return _wait


async def read_user(store: RedisDocumentStore, user_id: str) -> dict:
	doc = await store.get_document(settings.users_kind, user_id)
	assert doc is not None
	return doc.data


@pytest.fixture
def read(store):
	async def _read(user_id: str) -> dict:
		return await read_user(store, user_id)

	return _read
