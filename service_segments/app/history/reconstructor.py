"""
Rebuilds assignment and unassignment events from the relation audit trail.
"""

from typing import List

from shared.logging import get_logger

from ..models import DateWindow, HistoryEvent, Operation
from ..storage.base import HistoryReader, validate_user_id


class HistoryReconstructor:
    """Turns relation rows into a time-ordered event list for one user."""

    def __init__(self, reader: HistoryReader):
        self.reader = reader
        self.logger = get_logger("segments.history")

    async def get_user_history(self, user_id: int, window: DateWindow) -> List[HistoryEvent]:
        validate_user_id(user_id)
        records = await self.reader.get_user_relations(user_id, window)

        events: List[HistoryEvent] = []
        for record in records:
            if record.date_assigned in window:
                events.append(HistoryEvent(
                    user_id=record.user_id,
                    segment_slug=record.segment_slug,
                    operation=Operation.ASSIGNED,
                    timestamp=record.date_assigned,
                ))
            if record.date_unassigned is not None and record.date_unassigned in window:
                events.append(HistoryEvent(
                    user_id=record.user_id,
                    segment_slug=record.segment_slug,
                    operation=Operation.UNASSIGNED,
                    timestamp=record.date_unassigned,
                ))

        # sort is stable: equal instants keep row order, assigned before unassigned
        events.sort(key=lambda event: event.timestamp)

        self.logger.info(
            "User history reconstructed",
            user_id=user_id,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            relations=len(records),
            events=len(events)
        )
        return events
