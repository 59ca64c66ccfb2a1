"""Audit helpers for friend requests & friendships."""

from __future__ import annotations

import logging
from typing import Dict

from redis.exceptions import RedisError

from whereabouts.infra.redis import redis_client
from whereabouts.obs import metrics as obs_metrics
from whereabouts.settings import settings

logger = logging.getLogger(__name__)


async def log_friend_event(event: str, fields: Dict[str, str]) -> None:
	payload = {"event": event, **fields}
	try:
		await redis_client.xadd(
			settings.audit_stream,
			payload,
			maxlen=settings.audit_stream_maxlen,
			approximate=True,
		)
	except RedisError as exc:
		# The friend graph itself already committed; the trail is best-effort.
		logger.warning("friend audit append failed for %s: %s", event, exc)


def inc_request_sent(result: str) -> None:
	obs_metrics.inc_friend_request_sent(result)


def inc_accept() -> None:
	obs_metrics.inc_friendship_accepted()


def inc_remove() -> None:
	obs_metrics.inc_friendship_removed()


def inc_reject(reason: str) -> None:
	obs_metrics.inc_friend_reject(reason)


def inc_partial(operation: str) -> None:
	obs_metrics.inc_partial_mutation(operation)
