"""Immutable roster snapshots published to listeners."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from whereabouts.domain.users.models import UserRecord, is_present


@dataclass(frozen=True, slots=True)
class RosterEntry:
	"""A friend's live presence record."""

	email: str
	display_name: Optional[str]
	photo_url: Optional[str]
	is_in_library: bool
	last_check_in: Optional[datetime]
	status_note: str

	@classmethod
	def from_record(cls, record: UserRecord) -> "RosterEntry":
		return cls(
			email=record.email,
			display_name=record.display_name,
			photo_url=record.photo_url,
			is_in_library=record.is_in_library,
			last_check_in=record.last_check_in,
			status_note=record.status_note,
		)

	def is_present(self, now: Optional[datetime] = None) -> bool:
		return is_present(
			UserRecord(
				email=self.email,
				is_in_library=self.is_in_library,
				last_check_in=self.last_check_in,
			),
			now,
		)


@dataclass(frozen=True)
class RosterState:
	requests: Tuple[str, ...] = ()
	friend_emails: Tuple[str, ...] = ()
	friends: Tuple[RosterEntry, ...] = ()
	truncated: bool = False
	degraded: bool = False
	# The owner's own stored isInLibrary, as last pushed by the store.
	self_in_library: bool = False

	def here(self, now: Optional[datetime] = None) -> List[RosterEntry]:
		"""Friends currently present, in roster order."""
		return [entry for entry in self.friends if entry.is_present(now)]

	def ordered(self, now: Optional[datetime] = None) -> List[RosterEntry]:
		"""All friends, present ones first; relative order is otherwise kept."""
		return sorted(self.friends, key=lambda entry: not entry.is_present(now))
