"""User record model shared by every component of the engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from whereabouts.settings import settings


def normalize_email(raw: str) -> str:
	return (raw or "").strip().lower()


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class UserRecord(BaseModel):
	"""One document per identity, keyed by user id.

	Relationship fields (``friends`` and ``requests``) hold peer *emails*, never
	user ids; email is the cross-reference key between documents.
	"""

	model_config = ConfigDict(populate_by_name=True, extra="ignore")

	email: str
	display_name: Optional[str] = Field(default=None, alias="displayName")
	photo_url: Optional[str] = Field(default=None, alias="photoURL")
	is_in_library: bool = Field(default=False, alias="isInLibrary")
	last_check_in: Optional[datetime] = Field(default=None, alias="lastCheckIn")
	status_note: str = Field(default="", alias="statusNote")
	friends: List[str] = Field(default_factory=list)
	requests: List[str] = Field(default_factory=list)

	@field_validator("email", mode="before")
	def _lower_email(cls, value):  # type: ignore[override]
		return normalize_email(str(value or ""))

	@field_validator("friends", "requests", mode="before")
	def _none_is_empty(cls, value):  # type: ignore[override]
		return list(value or [])

	@field_validator("status_note", mode="before")
	def _note_default(cls, value):  # type: ignore[override]
		return value or ""

	@field_validator("last_check_in", mode="after")
	def _aware(cls, value):  # type: ignore[override]
		if value is not None and value.tzinfo is None:
			return value.replace(tzinfo=timezone.utc)
		return value

	@classmethod
	def from_document(cls, data: Dict[str, Any]) -> "UserRecord":
		return cls.model_validate(data)

	@classmethod
	def new(cls, email: str, display_name: Optional[str] = None, photo_url: Optional[str] = None) -> "UserRecord":
		"""Defaults for a first sign-in: away, no friends, no requests."""
		return cls(email=email, display_name=display_name, photo_url=photo_url)

	def to_document(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True, mode="json")

	def has_friend(self, email: str) -> bool:
		return normalize_email(email) in self.friends


def presence_age(record: UserRecord, now: Optional[datetime] = None) -> Optional[timedelta]:
	if record.last_check_in is None:
		return None
	return (now or _utcnow()) - record.last_check_in


def is_stale(record: UserRecord, now: Optional[datetime] = None) -> bool:
	"""True when a present flag has outlived the staleness window."""
	if not record.is_in_library:
		return False
	age = presence_age(record, now)
	# A present flag without a check-in time cannot be validated.
	if age is None:
		return False
	return age >= timedelta(seconds=settings.presence_stale_seconds)


def is_present(record: UserRecord, now: Optional[datetime] = None) -> bool:
	if not record.is_in_library or record.last_check_in is None:
		return False
	return not is_stale(record, now)
