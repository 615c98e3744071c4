"""
Sync Event Log

DESIGN DECISION: Every interaction with the outside world is recorded.
This provides:
1. A single error channel for remote failures that happen after the caller
   already has its local result
2. Debugging capability for offline/online transitions
3. A history the UI can show ("3 changes waiting to sync")

The event log:
- Always logs locally through structlog
- Keeps a bounded in-memory history
- Fans out to subscribers; a failing subscriber never breaks the others
"""

from collections import deque
from collections.abc import Callable
from typing import Optional

import structlog

from envelope_ledger.models.events import SyncEvent, SyncEventType, SyncSeverity


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


EventSubscriber = Callable[[SyncEvent], None]

DEFAULT_HISTORY_SIZE = 500


class SyncEventLog:
    """
    Central sync event channel.

    Usage:
        events = SyncEventLog()
        unsubscribe = events.subscribe(show_toast, errors_only=True)
        events.publish(SyncEventBuilder.connectivity_changed(False))
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        self._history: deque[SyncEvent] = deque(maxlen=history_size)
        self._subscribers: list[tuple[EventSubscriber, bool]] = []
        self._logger = structlog.get_logger()

    def publish(self, event: SyncEvent) -> SyncEvent:
        """Log an event, remember it and notify subscribers."""
        log_dict = event.to_log_dict()

        if event.severity == SyncSeverity.ERROR:
            self._logger.error("sync_event", **log_dict)
        elif event.severity == SyncSeverity.WARNING:
            self._logger.warning("sync_event", **log_dict)
        elif event.severity == SyncSeverity.DEBUG:
            self._logger.debug("sync_event", **log_dict)
        else:
            self._logger.info("sync_event", **log_dict)

        self._history.append(event)

        for subscriber, errors_only in list(self._subscribers):
            if errors_only and not event.is_error:
                continue
            try:
                subscriber(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "sync_event_subscriber_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )

        return event

    def subscribe(
        self,
        subscriber: EventSubscriber,
        errors_only: bool = False,
    ) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns a function that removes it again.
        """
        entry = (subscriber, errors_only)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def history(
        self,
        event_type: Optional[SyncEventType] = None,
        limit: Optional[int] = None,
    ) -> list[SyncEvent]:
        """Recorded events, oldest first, optionally filtered by type."""
        events = [
            event for event in self._history
            if event_type is None or event.event_type == event_type
        ]
        if limit is not None:
            events = events[-limit:]
        return events

    @property
    def errors(self) -> list[SyncEvent]:
        return [event for event in self._history if event.is_error]

    def clear(self) -> None:
        self._history.clear()
