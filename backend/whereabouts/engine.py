"""Session-scoped wiring of presence, friend graph, live roster and suggestions."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from whereabouts.domain.presence.manager import PresenceManager
from whereabouts.domain.roster.models import RosterState
from whereabouts.domain.roster.synchronizer import RosterSynchronizer
from whereabouts.domain.social.exceptions import PartialMutation
from whereabouts.domain.social.models import SendResult
from whereabouts.domain.social.service import FriendGraphService
from whereabouts.domain.suggestions.ranker import Suggestion, SuggestionRanker
from whereabouts.infra.docstore import RedisDocumentStore
from whereabouts.infra.session import SessionBridge, SessionInfo
from whereabouts.obs import logging as obs_logging
from whereabouts.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

WarningListener = Callable[[str, Exception], None]


class NotSignedIn(RuntimeError):
	"""Raised when an action needs a session and none is active."""


class SessionScope:
	"""Everything owned by one signed-in session; closing it releases every subscription."""

	def __init__(
		self,
		store: RedisDocumentStore,
		session: SessionInfo,
		*,
		on_warning: WarningListener,
		stabilize_seconds: Optional[float] = None,
	) -> None:
		self.session = session
		self.scope_id = uuid4().hex[:12]
		self.presence = PresenceManager(store, on_warning=on_warning)
		self.friends = FriendGraphService(store)
		self.roster = RosterSynchronizer(store, session)
		self.ranker = SuggestionRanker(store, stabilize_seconds=stabilize_seconds)
		self._ranked_for: Optional[Tuple[frozenset, frozenset]] = None

	async def open(self) -> None:
		await self.presence.on_session_established(self.session)
		self.roster.on_change(self._on_roster)
		await self.roster.start()

	def _on_roster(self, state: RosterState) -> None:
		self.presence.sync(state.self_in_library)
		key = (frozenset(state.friend_emails), frozenset(state.requests))
		if key == self._ranked_for:
			return
		self._ranked_for = key
		self.ranker.schedule(self.session.email, state.friend_emails, state.requests)

	async def close(self) -> None:
		await self.roster.stop()
		await self.ranker.stop()
		self.presence.reset()


class PresenceEngine:
	"""Follows the session bridge and exposes the signed-in user's view and actions."""

	def __init__(
		self,
		store: Optional[RedisDocumentStore] = None,
		bridge: Optional[SessionBridge] = None,
		*,
		stabilize_seconds: Optional[float] = None,
	) -> None:
		self._store = store or RedisDocumentStore()
		self._stabilize_seconds = stabilize_seconds
		self._scope: Optional[SessionScope] = None
		self._warning_listeners: List[WarningListener] = []
		self._lock = asyncio.Lock()
		self._detach = bridge.on_session_change(self.handle_session) if bridge is not None else None

	@property
	def scope(self) -> Optional[SessionScope]:
		return self._scope

	@property
	def session(self) -> Optional[SessionInfo]:
		return self._scope.session if self._scope else None

	@property
	def is_in_library(self) -> bool:
		return self._scope.presence.is_in_library if self._scope else False

	@property
	def roster(self) -> RosterState:
		return self._scope.roster.state if self._scope else RosterState()

	@property
	def suggestions(self) -> Tuple[Suggestion, ...]:
		return self._scope.ranker.suggestions if self._scope else ()

	def on_warning(self, listener: WarningListener) -> Callable[[], None]:
		self._warning_listeners.append(listener)

		def unsubscribe() -> None:
			if listener in self._warning_listeners:
				self._warning_listeners.remove(listener)

		return unsubscribe

	def _warn(self, kind: str, exc: Exception) -> None:
		logger.warning("%s: %s", kind, exc)
		for listener in list(self._warning_listeners):
			try:
				listener(kind, exc)
			except Exception:
				logger.exception("warning listener failed")

	async def handle_session(self, session: Optional[SessionInfo]) -> None:
		async with self._lock:
			current = self._scope
			if current is not None and session == current.session:
				return
			if current is not None:
				self._scope = None
				await current.close()
				obs_metrics.session_ended()
			if session is None:
				return
			scope = SessionScope(
				self._store,
				session,
				on_warning=self._warn,
				stabilize_seconds=self._stabilize_seconds,
			)
			# Streams started here inherit scope and user, not an operation.
			with self._bound(scope):
				try:
					await scope.open()
				except BaseException:
					await scope.close()
					raise
			self._scope = scope
			obs_metrics.session_started()

	def _require_scope(self) -> SessionScope:
		if self._scope is None:
			raise NotSignedIn("sign in first")
		return self._scope

	def _bound(self, scope: SessionScope, operation: Optional[str] = None):
		return obs_logging.bound(scope_id=scope.scope_id, user_id=scope.session.user_id, operation=operation)

	def toggle(self, note: str = "") -> bool:
		scope = self._require_scope()
		with self._bound(scope, "toggle"):
			return scope.presence.toggle(note)

	async def send_request(self, email: str) -> SendResult:
		scope = self._require_scope()
		with self._bound(scope, "send_request"):
			return await scope.friends.send_request(scope.session, email)

	async def accept_request(self, email: str) -> bool:
		"""Return False when the friendship was left one-sided (a warning is emitted)."""
		scope = self._require_scope()
		with self._bound(scope, "accept_request"):
			try:
				await scope.friends.accept_request(scope.session, email)
			except PartialMutation as exc:
				self._warn("partial_mutation", exc)
				return False
		return True

	async def remove_friend(self, email: str) -> bool:
		"""Return False when the removal was left one-sided (a warning is emitted)."""
		scope = self._require_scope()
		with self._bound(scope, "remove_friend"):
			try:
				await scope.friends.remove_friend(scope.session, email)
			except PartialMutation as exc:
				self._warn("partial_mutation", exc)
				return False
		return True

	async def close(self) -> None:
		if self._detach is not None:
			self._detach()
			self._detach = None
		await self.handle_session(None)


__all__ = ["NotSignedIn", "PresenceEngine", "SessionScope"]
