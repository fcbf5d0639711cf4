"""Activity sinks: where ledger and settlement state changes are reported."""

import logging
from typing import Protocol

from .db import Database
from .models import ActivityEvent

logger = logging.getLogger(__name__)


class ActivitySink(Protocol):
    """Receives a fire-and-forget event after each state transition."""

    def record(self, event: ActivityEvent) -> None: ...


class LoggingActivitySink:
    """Writes events to the log."""

    def record(self, event: ActivityEvent) -> None:
        logger.info(
            f"[activity] {event.action.value} {event.entity_type.value} "
            f"{event.entity_id} in group {event.group_id} by {event.actor_id}"
        )


class DatabaseActivitySink:
    """Appends events to the activity_log table."""

    def __init__(self, database: Database):
        self.db = database

    def record(self, event: ActivityEvent) -> None:
        self.db.record_activity(event)


class CompositeActivitySink:
    """Fans an event out to several sinks; one failing doesn't stop the rest."""

    def __init__(self, sinks: list[ActivitySink]):
        self.sinks = list(sinks)

    def record(self, event: ActivityEvent) -> None:
        for sink in self.sinks:
            publish(sink, event)


def publish(sink: ActivitySink | None, event: ActivityEvent) -> None:
    """
    Hand an event to a sink.

    A failing sink is logged and otherwise ignored: the transition that
    produced the event has already been committed and stays committed.
    """
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception:
        logger.exception(
            f"Activity sink {type(sink).__name__} failed for "
            f"{event.action.value} on {event.entity_type.value} {event.entity_id}"
        )
