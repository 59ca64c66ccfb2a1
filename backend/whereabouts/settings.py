"""Settings for the whereabouts presence engine."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
	if env_names:
		alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
		return Field(default=default, validation_alias=alias)
	return Field(default=default)


class Settings(BaseSettings):
	redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
	docstore_prefix: str = _env_field("doc", "DOCSTORE_PREFIX")
	users_kind: str = _env_field("users", "USERS_KIND")
	# Optimistic WATCH/MULTI retries before an update gives up
	docstore_watch_retries: int = _env_field(10, "DOCSTORE_WATCH_RETRIES")
	# Delay before a failed subscription stream is re-established
	subscription_retry_seconds: float = _env_field(1.0, "SUBSCRIPTION_RETRY_SECONDS")
	subscription_poll_seconds: float = _env_field(1.0, "SUBSCRIPTION_POLL_SECONDS")
	# Upper bound on the values of a single membership ("in") query
	membership_query_cap: int = _env_field(30, "MEMBERSHIP_QUERY_CAP")
	# Presence flags older than this are corrected to "away" by their owner
	presence_stale_seconds: int = 14400  # 4 hours
	# Wait for both halves of a friend mutation to land before ranking
	suggestion_stabilize_seconds: float = _env_field(0.8, "SUGGESTION_STABILIZE_SECONDS")
	audit_stream: str = _env_field("x:friendships.events", "AUDIT_STREAM")
	audit_stream_maxlen: int = _env_field(10000, "AUDIT_STREAM_MAXLEN")

	environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
	obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
	obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
	service_name: str = _env_field("whereabouts", "SERVICE_NAME")
	git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
	default_photo_url: Optional[str] = _env_field(None, "DEFAULT_PHOTO_URL")

	model_config = SettingsConfigDict(
		env_prefix="",
		env_file=".env",
		case_sensitive=False,
		env_nested_delimiter="__",
	)

	@field_validator("membership_query_cap", mode="before")
	def _positive_cap(cls, value):  # type: ignore[override]
		"""Fall back to the document store's native limit on junk input."""
		try:
			cap = int(value)
		except (TypeError, ValueError):
			return 30
		return cap if cap > 0 else 30


def _normalise_level(level: str) -> str:
	return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)

