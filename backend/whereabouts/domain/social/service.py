"""Friend graph service: mutual request / accept / remove over two documents.

Every friendship lives twice, once in each user's ``friends`` set. Accept and
remove therefore issue two writes with no transaction between them: the caller's
own document first, then the peer's. When the second write fails the pair is left
asymmetric and :class:`PartialMutation` is raised; re-running the same operation
repairs it because every write uses set semantics.
"""

from __future__ import annotations

import logging
from typing import Optional

from whereabouts.domain.social import audit
from whereabouts.domain.social.exceptions import (
	AlreadyFriends,
	AlreadyRequested,
	InvalidTarget,
	NoPendingRequest,
	PartialMutation,
	RequestRejected,
	TargetNotFound,
)
from whereabouts.domain.social.models import SendResult
from whereabouts.domain.users.models import UserRecord, normalize_email
from whereabouts.infra.docstore import (
	Document,
	DocumentMissing,
	RedisDocumentStore,
	StoreUnavailable,
	add_to_set,
	remove_from_set,
)
from whereabouts.infra.session import SessionInfo
from whereabouts.settings import settings

logger = logging.getLogger(__name__)


class FriendGraphService:
	def __init__(self, store: RedisDocumentStore) -> None:
		self._store = store
		self._kind = settings.users_kind

	async def find_by_email(self, email: str) -> Optional[Document]:
		matches = await self._store.query_equals(self._kind, "email", normalize_email(email))
		return matches[0] if matches else None

	def _reject(self, exc: RequestRejected, operation: str) -> RequestRejected:
		audit.inc_reject(exc.reason)
		logger.info("%s rejected: %s", operation, exc.reason)
		return exc

	def _guard_peer(self, user: SessionInfo, peer_email: str, operation: str) -> str:
		peer = normalize_email(peer_email)
		if not peer:
			raise self._reject(InvalidTarget("empty_email"), operation)
		if peer == user.email:
			raise self._reject(InvalidTarget(), operation)
		return peer

	async def send_request(self, from_user: SessionInfo, to_email: str, *, strict: bool = False) -> SendResult:
		"""Add the sender's email to the target's ``requests`` set.

		Repeating a pending request is a no-op reported as ``"already_requested"``;
		with ``strict=True`` it raises :class:`AlreadyRequested` instead.
		"""
		target_email = self._guard_peer(from_user, to_email, "send_request")
		target = await self.find_by_email(target_email)
		if target is None:
			raise self._reject(TargetNotFound(), "send_request")
		record = UserRecord.from_document(target.data)
		if from_user.email in record.friends:
			raise self._reject(AlreadyFriends(), "send_request")
		result: SendResult = "already_requested" if from_user.email in record.requests else "sent"
		if strict and result == "already_requested":
			audit.inc_reject(AlreadyRequested.reason)
			raise AlreadyRequested()
		await self._store.update_fields(self._kind, target.id, {"requests": add_to_set(from_user.email)})
		audit.inc_request_sent(result)
		if result == "sent":
			await audit.log_friend_event("request_sent", {"from": from_user.user_id, "to": target.id})
		else:
			logger.debug("friend request already pending")
		return result

	async def accept_request(self, self_user: SessionInfo, requester_email: str) -> None:
		"""Befriend ``requester_email``; safe to repeat after a partial failure.

		The requester must still be in ``requests``, or already in ``friends`` when
		a previous accept only landed on this side.
		"""
		requester = self._guard_peer(self_user, requester_email, "accept_request")
		own = await self._store.get_document(self._kind, self_user.user_id)
		if own is None:
			raise DocumentMissing(self._kind, self_user.user_id)
		record = UserRecord.from_document(own.data)
		if requester not in record.requests and requester not in record.friends:
			raise self._reject(NoPendingRequest(), "accept_request")
		await self._store.update_fields(
			self._kind,
			self_user.user_id,
			{"friends": add_to_set(requester), "requests": remove_from_set(requester)},
		)
		try:
			peer = await self.find_by_email(requester)
			if peer is None:
				logger.warning("accepted a request from an email with no user record")
				return
			# Also drop a crossing request so the peer's requests never name a friend.
			await self._store.update_fields(
				self._kind,
				peer.id,
				{"friends": add_to_set(self_user.email), "requests": remove_from_set(self_user.email)},
			)
		except (StoreUnavailable, DocumentMissing) as exc:
			audit.inc_partial("accept")
			logger.warning("accept left the friendship one-sided: %s", exc)
			raise PartialMutation("accept", requester, exc) from exc
		audit.inc_accept()
		await audit.log_friend_event("friend_accepted", {"user": self_user.user_id, "peer": peer.id})

	async def remove_friend(self, self_user: SessionInfo, peer_email: str) -> None:
		"""Drop the friendship from both documents; safe to repeat after a partial failure."""
		peer_address = self._guard_peer(self_user, peer_email, "remove_friend")
		await self._store.update_fields(self._kind, self_user.user_id, {"friends": remove_from_set(peer_address)})
		try:
			peer = await self.find_by_email(peer_address)
			if peer is None:
				logger.debug("removed friend has no user record; nothing to mirror")
				audit.inc_remove()
				return
			await self._store.update_fields(self._kind, peer.id, {"friends": remove_from_set(self_user.email)})
		except (StoreUnavailable, DocumentMissing) as exc:
			audit.inc_partial("remove")
			logger.warning("remove left the friendship one-sided: %s", exc)
			raise PartialMutation("remove", peer_address, exc) from exc
		audit.inc_remove()
		await audit.log_friend_event("friend_removed", {"user": self_user.user_id, "peer": peer.id})


__all__ = ["FriendGraphService"]
