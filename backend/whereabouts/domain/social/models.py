"""Relationship states between two user records."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from whereabouts.domain.users.models import UserRecord

SendResult = Literal["sent", "already_requested"]


class RelationshipState(str, Enum):
	"""State of the (self, peer) pair, seen from ``self``."""

	NONE = "none"
	REQUESTED_OUT = "requested_out"
	REQUESTED_IN = "requested_in"
	FRIENDS = "friends"


def relationship_state(self_record: UserRecord, peer_record: UserRecord) -> RelationshipState:
	if peer_record.email in self_record.friends:
		return RelationshipState.FRIENDS
	if peer_record.email in self_record.requests:
		return RelationshipState.REQUESTED_IN
	if self_record.email in peer_record.requests:
		return RelationshipState.REQUESTED_OUT
	return RelationshipState.NONE
