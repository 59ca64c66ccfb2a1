"""Domain-level exceptions for friend requests & friendships."""

from __future__ import annotations

from whereabouts.infra.docstore import StoreUnavailable


class SocialError(Exception):
	"""Base class for friend graph errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class RequestRejected(SocialError):
	"""User-facing rejection: the attempted action does not proceed."""

	reason = "rejected"


class TargetNotFound(RequestRejected):
	reason = "not_found"


class InvalidTarget(RequestRejected):
	reason = "self_request"


class AlreadyFriends(RequestRejected):
	reason = "already_friends"


class NoPendingRequest(RequestRejected):
	"""Accept named someone who never asked and is not already a friend."""

	reason = "no_pending_request"


class AlreadyRequested(SocialError):
	"""Repeated request; callers see success, never this exception."""

	reason = "already_requested"


class PartialMutation(SocialError):
	"""The first write of a two-document mutation committed, the second did not."""

	reason = "partial_mutation"

	def __init__(self, operation: str, peer_email: str, cause: BaseException | None = None) -> None:
		super().__init__()
		self.operation = operation
		self.peer_email = peer_email
		self.cause = cause


__all__ = [
	"AlreadyFriends",
	"AlreadyRequested",
	"InvalidTarget",
	"NoPendingRequest",
	"PartialMutation",
	"RequestRejected",
	"SocialError",
	"StoreUnavailable",
	"TargetNotFound",
]
