import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from whereabouts.domain.roster.models import RosterEntry, RosterState
from whereabouts.domain.roster.synchronizer import RosterSynchronizer
from whereabouts.infra.docstore import RedisDocumentStore, add_to_set, remove_from_set, server_timestamp


@pytest.mark.asyncio
async def test_roster_follows_friend_presence(store, make_user, eventually):
	alice = await make_user("uid-a", "a@x.edu", friends=["b@x.edu"], requests=["c@x.edu"])
	await make_user("uid-b", "b@x.edu", friends=["a@x.edu"])
	await make_user("uid-c", "c@x.edu")
	roster = RosterSynchronizer(store, alice)
	states = []
	roster.on_change(states.append)
	await roster.start()
	try:
		await eventually(lambda: roster.state.friends)
		assert roster.state.requests == ("c@x.edu",)
		assert roster.state.friend_emails == ("b@x.edu",)
		assert [entry.email for entry in roster.state.friends] == ["b@x.edu"]
		assert roster.state.here() == []

		await store.update_fields(
			"users",
			"uid-b",
			{"isInLibrary": True, "lastCheckIn": server_timestamp(), "statusNote": "quiet floor"},
		)
		await eventually(lambda: roster.state.here())
		entry = roster.state.here()[0]
		assert entry.status_note == "quiet floor"
		assert states[-1] is roster.state
	finally:
		await roster.stop()


@pytest.mark.asyncio
async def test_friend_set_change_replaces_membership_subscription(store, make_user, eventually):
	alice = await make_user("uid-a", "a@x.edu", friends=["b@x.edu"])
	await make_user("uid-b", "b@x.edu", friends=["a@x.edu"])
	await make_user("uid-c", "c@x.edu")
	roster = RosterSynchronizer(store, alice)
	await roster.start()
	try:
		await eventually(lambda: roster.state.friends)
		first = roster.membership_subscription
		assert first is not None

		await store.update_fields("users", "uid-a", {"friends": add_to_set("c@x.edu")})
		await eventually(lambda: len(roster.state.friends) == 2)
		second = roster.membership_subscription
		assert second is not first
		assert first.closed
		assert not second.closed
	finally:
		await roster.stop()
	assert second.closed


@pytest.mark.asyncio
async def test_removing_last_friend_clears_roster(store, make_user, eventually):
	alice = await make_user("uid-a", "a@x.edu", friends=["b@x.edu"])
	await make_user("uid-b", "b@x.edu", friends=["a@x.edu"])
	roster = RosterSynchronizer(store, alice)
	await roster.start()
	try:
		await eventually(lambda: roster.state.friends)
		membership = roster.membership_subscription

		await store.update_fields("users", "uid-a", {"friends": remove_from_set("b@x.edu")})
		await eventually(lambda: roster.state.friend_emails == ())
		assert roster.state.friends == ()
		assert roster.membership_subscription is None
		assert membership.closed

		# the former friend's later changes no longer reach the roster
		await store.update_fields("users", "uid-b", {"isInLibrary": True, "lastCheckIn": server_timestamp()})
		await asyncio.sleep(0.15)
		assert roster.state.friends == ()
	finally:
		await roster.stop()


@pytest.mark.asyncio
async def test_membership_query_is_capped(make_user, eventually):
	store = RedisDocumentStore(membership_cap=2)
	alice = await make_user("uid-a", "a@x.edu", friends=["b@x.edu", "c@x.edu", "d@x.edu"])
	for uid, email in (("uid-b", "b@x.edu"), ("uid-c", "c@x.edu"), ("uid-d", "d@x.edu")):
		await make_user(uid, email, friends=["a@x.edu"])
	roster = RosterSynchronizer(store, alice)
	await roster.start()
	try:
		await eventually(lambda: roster.state.friends)
		assert roster.state.truncated
		assert roster.state.friend_emails == ("b@x.edu", "c@x.edu", "d@x.edu")
		assert sorted(entry.email for entry in roster.state.friends) == ["b@x.edu", "c@x.edu"]
	finally:
		await roster.stop()


@pytest.mark.asyncio
async def test_stream_failure_marks_roster_degraded(store, make_user, eventually):
	alice = await make_user("uid-a", "a@x.edu", friends=["b@x.edu"])
	await make_user("uid-b", "b@x.edu")
	roster = RosterSynchronizer(store, alice)
	await roster.start()
	try:
		await eventually(lambda: roster.state.friends)
		from whereabouts.infra.docstore import StoreUnavailable

		await roster._on_stream_error(StoreUnavailable("stream lost"))
		assert roster.state.degraded
		assert [entry.email for entry in roster.state.friends] == ["b@x.edu"]

		await store.update_fields("users", "uid-b", {"statusNote": "back"})
		await eventually(lambda: not roster.state.degraded)
	finally:
		await roster.stop()


def test_ordered_puts_present_friends_first():
	now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
	away = RosterEntry("a@x.edu", "A", None, False, None, "")
	here = RosterEntry("b@x.edu", "B", None, True, now - timedelta(minutes=5), "desk")
	expired = RosterEntry("c@x.edu", "C", None, True, now - timedelta(hours=5), "")
	state = RosterState(friend_emails=("a@x.edu", "b@x.edu", "c@x.edu"), friends=(away, here, expired))
	assert [e.email for e in state.ordered(now)] == ["b@x.edu", "a@x.edu", "c@x.edu"]
	assert state.here(now) == [here]
