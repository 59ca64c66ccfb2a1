"""Live roster: self document -> friend email set -> membership query.

The synchronizer holds one subscription to the caller's own user record. Each
emission yields the pending ``requests`` (published as-is) and the friend email
set. When that set changes, the membership subscription over it is closed and a
new one opened, so at most one is ever live; its emissions become the roster.
Friends' presence therefore reaches the caller only through the second level,
with no polling.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import replace
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from whereabouts.domain.roster.models import RosterEntry, RosterState
from whereabouts.domain.users.models import UserRecord
from whereabouts.infra.docstore import Document, Query, RedisDocumentStore, StoreUnavailable, Subscription
from whereabouts.infra.session import SessionInfo
from whereabouts.obs import metrics as obs_metrics
from whereabouts.settings import settings

logger = logging.getLogger(__name__)

RosterListener = Callable[[RosterState], Union[Awaitable[None], None]]


class RosterSynchronizer:
	def __init__(self, store: RedisDocumentStore, session: SessionInfo) -> None:
		self._store = store
		self._session = session
		self._kind = settings.users_kind
		self._state = RosterState()
		self._listeners: List[RosterListener] = []
		self._self_sub: Optional[Subscription] = None
		self._friends_sub: Optional[Subscription] = None
		self._generation = 0

	@property
	def state(self) -> RosterState:
		return self._state

	@property
	def membership_subscription(self) -> Optional[Subscription]:
		return self._friends_sub

	def on_change(self, listener: RosterListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return unsubscribe

	async def start(self) -> None:
		if self._self_sub is not None:
			return
		self._self_sub = await self._store.subscribe_document(
			self._kind,
			self._session.user_id,
			self._on_self,
			self._on_stream_error,
		)

	async def stop(self) -> None:
		"""Release both subscription levels; the roster stays frozen at its last state."""
		self_sub, self._self_sub = self._self_sub, None
		if self_sub is not None:
			await self_sub.close()
		await self._close_membership()
		self._listeners.clear()

	async def _close_membership(self) -> None:
		self._generation += 1
		friends_sub, self._friends_sub = self._friends_sub, None
		if friends_sub is not None:
			await friends_sub.close()

	async def _publish(self, state: RosterState) -> None:
		if state == self._state:
			return
		self._state = state
		for listener in list(self._listeners):
			try:
				result = listener(state)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("roster listener failed")

	def _friend_emails(self, record: UserRecord) -> Tuple[str, ...]:
		own = self._session.email
		return tuple(dict.fromkeys(email for email in record.friends if email and email != own))

	async def _on_self(self, doc: Optional[Document]) -> None:
		if doc is None:
			logger.debug("own user record not found yet")
			return
		record = UserRecord.from_document(doc.data)
		requests = tuple(email for email in dict.fromkeys(record.requests) if email != self._session.email)
		friend_emails = self._friend_emails(record)
		in_library = record.is_in_library

		if set(friend_emails) == set(self._state.friend_emails) and self._friends_sub is not None:
			await self._publish(
				replace(
					self._state,
					requests=requests,
					friend_emails=friend_emails,
					self_in_library=in_library,
					degraded=False,
				)
			)
			return

		await self._close_membership()
		if not friend_emails:
			# No friends left: nothing may linger in the roster.
			await self._publish(RosterState(requests=requests, self_in_library=in_library))
			return

		cap = self._store.membership_cap
		truncated = len(friend_emails) > cap
		if truncated:
			obs_metrics.inc_roster_truncation()
			logger.warning(
				"friend set exceeds membership query cap; only the first %s get live presence",
				cap,
				extra={"friend_count": len(friend_emails)},
			)
		keep = set(friend_emails)
		self._state = replace(
			self._state,
			requests=requests,
			friend_emails=friend_emails,
			friends=tuple(entry for entry in self._state.friends if entry.email in keep),
			truncated=truncated,
			self_in_library=in_library,
		)
		obs_metrics.inc_roster_resubscribe()
		generation = self._generation
		self._friends_sub = await self._store.subscribe_query(
			self._kind,
			Query.membership("email", friend_emails[:cap]),
			self._membership_listener(generation),
			self._on_stream_error,
		)

	def _membership_listener(self, generation: int) -> Callable[[List[Document]], Awaitable[None]]:
		async def on_friends(docs: List[Document]) -> None:
			if generation != self._generation:
				return
			entries = tuple(RosterEntry.from_record(UserRecord.from_document(doc.data)) for doc in docs)
			await self._publish(replace(self._state, friends=entries, degraded=False))

		return on_friends

	async def _on_stream_error(self, exc: StoreUnavailable) -> None:
		logger.warning("roster is serving stale data: %s", exc)
		await self._publish(replace(self._state, degraded=True))


__all__ = ["RosterSynchronizer", "RosterListener"]
