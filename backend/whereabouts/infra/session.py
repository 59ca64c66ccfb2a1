"""Session bridge between an identity provider and the presence engine."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionInfo:
	"""Signed-in identity: a stable user id plus the lowercase email."""

	user_id: str
	email: str
	display_name: Optional[str] = None
	photo_url: Optional[str] = None

	def __post_init__(self) -> None:
		object.__setattr__(self, "email", self.email.strip().lower())


SessionCallback = Callable[[Optional[SessionInfo]], Union[Awaitable[None], None]]


class SessionBridge:
	"""In-process fan-out of session changes.

	Identity providers call :meth:`publish` after sign-in (with a
	:class:`SessionInfo`) and after sign-out or session loss (with ``None``).
	"""

	def __init__(self) -> None:
		self._callbacks: List[SessionCallback] = []
		self._current: Optional[SessionInfo] = None

	@property
	def current(self) -> Optional[SessionInfo]:
		return self._current

	def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
		self._callbacks.append(callback)

		def unsubscribe() -> None:
			if callback in self._callbacks:
				self._callbacks.remove(callback)

		return unsubscribe

	async def publish(self, session: Optional[SessionInfo]) -> None:
		self._current = session
		logger.info("session changed", extra={"signed_in": session is not None})
		for callback in list(self._callbacks):
			result = callback(session)
			if inspect.isawaitable(result):
				await result


__all__ = ["SessionBridge", "SessionInfo"]
