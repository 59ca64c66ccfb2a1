"""Mutual-friend suggestions.

Suggestions are recomputed from a full enumeration of user records, which bounds
the engine to groups where listing every user is cheap. Before reading, the
ranker waits a short stabilization interval: accept/remove are two
non-atomic writes, and reading between them could credit a just-removed friend
as a mutual. Mutual counts are always taken against the caller's *current*
friend set rather than the candidate's raw list, so a stale peer document cannot
inflate them either.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from whereabouts.domain.users.models import UserRecord, normalize_email
from whereabouts.infra.docstore import Document, RedisDocumentStore, StoreUnavailable
from whereabouts.obs import metrics as obs_metrics
from whereabouts.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Suggestion:
	email: str
	display_name: str
	photo_url: Optional[str]
	mutual_count: int


SuggestionListener = Callable[[Tuple[Suggestion, ...]], Union[Awaitable[None], None]]


def rank_suggestions(
	self_email: str,
	friend_emails: Iterable[str],
	requests: Iterable[str],
	users: Iterable[UserRecord],
) -> List[Suggestion]:
	"""Rank non-friends by how many of the caller's friends they share.

	Candidates that are the caller, already friends, or pending requesters are
	skipped. Ties keep enumeration order.
	"""
	own = normalize_email(self_email)
	friends = set(friend_emails)
	if not friends:
		return []
	pending = set(requests)
	ranked: List[Suggestion] = []
	for user in users:
		email = user.email
		if not email or email == own or email in friends or email in pending:
			continue
		mutual_count = len(friends.intersection(user.friends))
		if mutual_count > 0:
			ranked.append(
				Suggestion(
					email=email,
					display_name=user.display_name or email,
					photo_url=user.photo_url or settings.default_photo_url,
					mutual_count=mutual_count,
				)
			)
	ranked.sort(key=lambda suggestion: suggestion.mutual_count, reverse=True)
	return ranked


def _load_users(docs: Sequence[Document]) -> List[UserRecord]:
	users: List[UserRecord] = []
	for doc in docs:
		try:
			users.append(UserRecord.from_document(doc.data))
		except ValidationError:
			logger.debug("skipping malformed user record %s", doc.id)
	return users


class SuggestionRanker:
	"""Recomputes suggestions on demand; a newer request supersedes an in-flight one."""

	def __init__(self, store: RedisDocumentStore, *, stabilize_seconds: Optional[float] = None) -> None:
		self._store = store
		self._kind = settings.users_kind
		self._stabilize_seconds = stabilize_seconds
		self._suggestions: Tuple[Suggestion, ...] = ()
		self._listeners: List[SuggestionListener] = []
		self._task: Optional[asyncio.Task] = None

	@property
	def suggestions(self) -> Tuple[Suggestion, ...]:
		return self._suggestions

	@property
	def pending(self) -> Optional[asyncio.Task]:
		return self._task

	def _delay(self) -> float:
		if self._stabilize_seconds is not None:
			return max(0.0, self._stabilize_seconds)
		return max(0.0, settings.suggestion_stabilize_seconds)

	def on_change(self, listener: SuggestionListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return unsubscribe

	def schedule(self, self_email: str, friend_emails: Sequence[str], requests: Sequence[str]) -> asyncio.Task:
		"""Start a recomputation, cancelling any one still waiting or reading."""
		previous = self._task
		if previous is not None and not previous.done():
			previous.cancel()
		self._task = asyncio.create_task(
			self.recompute(self_email, tuple(friend_emails), tuple(requests)),
			name="suggestions-recompute",
		)
		return self._task

	async def recompute(
		self,
		self_email: str,
		friend_emails: Sequence[str],
		requests: Sequence[str],
	) -> Tuple[Suggestion, ...]:
		if not friend_emails:
			obs_metrics.inc_suggestion_run("empty")
			await self._publish(())
			return ()

		await asyncio.sleep(self._delay())

		started = time.perf_counter()
		try:
			docs = await self._store.list_documents(self._kind)
		except StoreUnavailable as exc:
			obs_metrics.inc_suggestion_run("error")
			logger.warning("suggestions kept stale; user enumeration failed: %s", exc)
			return self._suggestions
		ranked = tuple(rank_suggestions(self_email, friend_emails, requests, _load_users(docs)))
		obs_metrics.observe_suggestion_duration(time.perf_counter() - started)
		obs_metrics.inc_suggestion_run("ok")
		logger.debug("ranked %s suggestions out of %s users", len(ranked), len(docs))
		await self._publish(ranked)
		return ranked

	async def _publish(self, suggestions: Tuple[Suggestion, ...]) -> None:
		if suggestions == self._suggestions:
			return
		self._suggestions = suggestions
		for listener in list(self._listeners):
			try:
				result = listener(suggestions)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("suggestion listener failed")

	async def stop(self) -> None:
		task, self._task = self._task, None
		self._listeners.clear()
		if task is None or task.done():
			return
		task.cancel()
		with suppress(asyncio.CancelledError):
			await task


__all__ = ["Suggestion", "SuggestionRanker", "rank_suggestions"]
