import asyncio
from datetime import datetime

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from whereabouts.infra.docstore import (
	DocumentMissing,
	Query,
	RedisDocumentStore,
	StoreUnavailable,
	add_to_set,
	remove_from_set,
	server_timestamp,
)
from whereabouts.infra.redis import RedisProxy


@pytest.mark.asyncio
async def test_set_then_get_round_trips_fields(store):
	await store.set_document("users", "u1", {"email": "a@x.edu", "friends": []})
	doc = await store.get_document("users", "u1")
	assert doc is not None
	assert doc.id == "u1"
	assert doc.data == {"email": "a@x.edu", "friends": []}
	assert await store.get_document("users", "missing") is None


@pytest.mark.asyncio
async def test_set_operations_are_idempotent(store):
	await store.set_document("users", "u1", {"email": "a@x.edu", "requests": []})
	await store.update_fields("users", "u1", {"requests": add_to_set("b@x.edu")})
	await store.update_fields("users", "u1", {"requests": add_to_set("b@x.edu")})
	doc = await store.get_document("users", "u1")
	assert doc.data["requests"] == ["b@x.edu"]

	await store.update_fields("users", "u1", {"requests": remove_from_set("b@x.edu")})
	await store.update_fields("users", "u1", {"requests": remove_from_set("b@x.edu")})
	doc = await store.get_document("users", "u1")
	assert doc.data["requests"] == []


@pytest.mark.asyncio
async def test_server_timestamp_resolves_on_commit(store):
	await store.set_document("users", "u1", {"email": "a@x.edu"})
	updated = await store.update_fields("users", "u1", {"lastCheckIn": server_timestamp(), "note": "desk 4"})
	stamp = datetime.fromisoformat(updated.data["lastCheckIn"])
	assert stamp.tzinfo is not None
	assert updated.data["note"] == "desk 4"
	assert updated.data["email"] == "a@x.edu"


@pytest.mark.asyncio
async def test_update_of_missing_document_raises(store):
	with pytest.raises(DocumentMissing):
		await store.update_fields("users", "ghost", {"isInLibrary": True})


@pytest.mark.asyncio
async def test_equality_and_membership_queries(store):
	await store.set_document("users", "u1", {"email": "a@x.edu"})
	await store.set_document("users", "u2", {"email": "b@x.edu"})
	await store.set_document("users", "u3", {"email": "c@x.edu"})

	found = await store.query_equals("users", "email", "b@x.edu")
	assert [doc.id for doc in found] == ["u2"]

	found = await store.query_membership("users", "email", ["a@x.edu", "c@x.edu", "nobody@x.edu"])
	assert [doc.id for doc in found] == ["u1", "u3"]


@pytest.mark.asyncio
async def test_membership_query_enforces_cap():
	store = RedisDocumentStore(membership_cap=2)
	with pytest.raises(ValueError):
		await store.query_membership("users", "email", ["a", "b", "c"])
	with pytest.raises(ValueError):
		await store.query_membership("users", "email", [])


@pytest.mark.asyncio
async def test_document_subscription_streams_commits(store, eventually):
	await store.set_document("users", "u1", {"email": "a@x.edu", "isInLibrary": False})
	seen = []
	sub = await store.subscribe_document("users", "u1", seen.append)
	try:
		assert seen[0].data["isInLibrary"] is False
		await store.update_fields("users", "u1", {"isInLibrary": True})
		await eventually(lambda: len(seen) == 2)
		assert seen[-1].data["isInLibrary"] is True

		# writes to other documents do not re-emit this one
		await store.set_document("users", "u2", {"email": "b@x.edu"})
		await asyncio.sleep(0.15)
		assert len(seen) == 2
	finally:
		await sub.close()

	await store.update_fields("users", "u1", {"isInLibrary": False})
	await asyncio.sleep(0.15)
	assert len(seen) == 2
	assert sub.closed


@pytest.mark.asyncio
async def test_query_subscription_emits_only_on_change(store, eventually):
	await store.set_document("users", "u1", {"email": "a@x.edu", "isInLibrary": False})
	seen = []
	sub = await store.subscribe_query("users", Query.membership("email", ["a@x.edu"]), seen.append)
	try:
		assert [doc.id for doc in seen[0]] == ["u1"]
		await store.set_document("users", "u2", {"email": "b@x.edu"})
		await asyncio.sleep(0.15)
		assert len(seen) == 1

		await store.update_fields("users", "u1", {"isInLibrary": True})
		await eventually(lambda: len(seen) == 2)
		assert seen[-1][0].data["isInLibrary"] is True
	finally:
		await sub.close()


@pytest.mark.asyncio
async def test_corrupt_snapshot_is_reported_and_stream_recovers(store, fake_redis, eventually):
	await fake_redis.set("doc:users:u1", "{not json")
	seen = []
	errors = []
	sub = await store.subscribe_document("users", "u1", seen.append, errors.append)
	try:
		await eventually(lambda: errors)
		assert isinstance(errors[0], StoreUnavailable)
		assert seen == []

		await store.set_document("users", "u1", {"email": "a@x.edu"})
		await eventually(lambda: seen)
		assert seen[-1].data["email"] == "a@x.edu"
		assert not sub.closed
	finally:
		await sub.close()


class _DownRedis:
	async def time(self):
		raise RedisConnectionError("connection refused")

	async def get(self, *_args, **_kwargs):
		raise RedisConnectionError("connection refused")

	async def smembers(self, *_args, **_kwargs):
		raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_transport_failures_become_store_unavailable():
	store = RedisDocumentStore(RedisProxy(_DownRedis()))
	with pytest.raises(StoreUnavailable):
		await store.get_document("users", "u1")
	with pytest.raises(StoreUnavailable):
		await store.set_document("users", "u1", {"email": "a@x.edu"})
	with pytest.raises(StoreUnavailable):
		await store.list_documents("users")
