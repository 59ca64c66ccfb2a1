"""User record exports."""

from .models import UserRecord, is_present, is_stale, normalize_email, presence_age  # noqa: F401
