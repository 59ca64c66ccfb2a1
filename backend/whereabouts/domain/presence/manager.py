"""Owner-side presence record: staleness correction on load and optimistic toggles."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from whereabouts.domain.users.models import UserRecord, is_stale, presence_age
from whereabouts.infra.docstore import RedisDocumentStore, server_timestamp
from whereabouts.infra.session import SessionInfo
from whereabouts.obs import metrics as obs_metrics
from whereabouts.settings import settings

logger = logging.getLogger(__name__)

WarningCallback = Callable[[str, Exception], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PresenceManager:
    """Owns the signed-in user's ``isInLibrary`` / ``lastCheckIn`` / ``statusNote`` fields."""

    def __init__(
        self,
        store: RedisDocumentStore,
        *,
        on_warning: Optional[WarningCallback] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._kind = settings.users_kind
        self._on_warning = on_warning
        self._clock = clock
        self._session: Optional[SessionInfo] = None
        self._is_in_library = False
        self._pending_write: Optional[asyncio.Task] = None

    @property
    def is_in_library(self) -> bool:
        return self._is_in_library

    @property
    def pending_write(self) -> Optional[asyncio.Task]:
        return self._pending_write

    async def on_session_established(self, session: SessionInfo) -> bool:
        """Load (or create) the user's record and return the corrected presence flag."""
        doc = await self._store.get_document(self._kind, session.user_id)
        if doc is None:
            record = UserRecord.new(session.email, session.display_name, session.photo_url)
            await self._store.set_document(self._kind, session.user_id, record.to_document())
            logger.info("created user record", extra={"user_id": session.user_id})
            current = False
        else:
            record = UserRecord.from_document(doc.data)
            current = record.is_in_library
            now = self._clock()
            if is_stale(record, now):
                # Correct the store before anyone else sees the expired flag.
                await self._store.update_fields(
                    self._kind,
                    session.user_id,
                    {"isInLibrary": False, "lastCheckIn": None},
                )
                age = presence_age(record, now)
                obs_metrics.inc_presence_stale_correction()
                logger.info(
                    "expired stale presence",
                    extra={"user_id": session.user_id, "age_seconds": int(age.total_seconds()) if age else None},
                )
                current = False
        self._session = session
        self._is_in_library = current
        return current

    def toggle(self, note: str = "") -> bool:
        """Flip presence locally and push the change without waiting for the write."""
        if self._session is None:
            raise RuntimeError("presence toggle requires an established session")
        new_state = not self._is_in_library
        self._is_in_library = new_state
        fields = {
            "isInLibrary": new_state,
            "lastCheckIn": server_timestamp() if new_state else None,
            "statusNote": note if new_state else "",
        }
        obs_metrics.inc_presence_toggle(new_state)
        task = asyncio.create_task(
            self._store.update_fields(self._kind, self._session.user_id, fields),
            name=f"presence-toggle:{self._session.user_id}",
        )
        task.add_done_callback(self._on_write_done)
        self._pending_write = task
        return new_state

    def sync(self, stored: bool) -> bool:
        """Adopt the store's ``isInLibrary`` unless a local write is still in flight."""
        if self._session is None:
            return self._is_in_library
        if self._pending_write is not None and not self._pending_write.done():
            return self._is_in_library
        if stored != self._is_in_library:
            logger.info("local presence replaced by stored value", extra={"stored": stored})
            self._is_in_library = stored
        return self._is_in_library

    def reset(self) -> None:
        """Forget local state on sign-out; in-flight writes still run to completion."""
        self._session = None
        self._is_in_library = False

    def _on_write_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        obs_metrics.inc_presence_write_failure()
        logger.warning("presence write failed; local state may diverge until the next snapshot: %s", exc)
        if self._on_warning is not None:
            self._on_warning("presence_write_failed", exc)


__all__ = ["PresenceManager"]
