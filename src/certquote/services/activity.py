"""
Activity dispatcher.

Services produce ActivityEvent values; this is the only component that
persists them. Events raised inside a unit of work are written after it
commits, so a rolled-back operation never shows up in the activity log.
Persistence failures are logged and never raised.
"""

import logging
import sqlite3

from ..schemas.activity import ActivityEvent
from ..state_store import StateStore

logger = logging.getLogger(__name__)


class ActivityDispatcher:
    """Persists staff activity events after commit."""

    def __init__(self, store: StateStore, enabled: bool = True):
        self.store = store
        self.enabled = enabled
        self.dispatched = 0
        self.failed = 0

    def dispatch(self, *events: ActivityEvent) -> None:
        """Queue events for persistence once the current unit of work commits."""
        if not self.enabled:
            return
        for event in events:
            self.store.on_commit(lambda event=event: self._persist(event))

    def _persist(self, event: ActivityEvent) -> None:
        try:
            self.store.insert_activity(event)
            self.dispatched += 1
        except sqlite3.Error as e:
            self.failed += 1
            logger.error(
                f"Activity log insert failed for {event.activity_type.value} "
                f"on {event.entity_type} {event.entity_id}: {e}"
            )
