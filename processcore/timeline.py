"""Append-only per-instance event log."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .constants import MAX_TIMELINE_LIMIT
from .contracts import Pagination, TimelineEntry, TimelinePage
from .errors import ValidationError
from .models import Instance, TimelineEvent, utc_now
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


class TimelineLog:
    """Audit trail of instance transitions.

    The log is not a source of truth for instance state: a failed append is
    logged and reported as ``None`` but never undoes the transition it was
    documenting.
    """

    def __init__(self, repository: ExecutionRepository) -> None:
        self._repository = repository

    async def append(
        self,
        instance_id: str,
        event_type: str,
        *,
        step_id: Optional[str] = None,
        actor: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[TimelineEvent]:
        event = TimelineEvent(
            instance_id=instance_id,
            event_type=event_type,
            step_id=step_id,
            actor=actor,
            message=message,
            metadata=metadata or {},
            created_at=created_at or utc_now(),
        )
        try:
            return await self._repository.append_event(event)
        except Exception:
            logger.exception(
                f"Failed to append {event_type} event for instance_id={instance_id}"
            )
            return None

    async def query(
        self, instance_id: str, limit: int, offset: int
    ) -> tuple[list[TimelineEvent], int]:
        """Return one newest-first page and the exact total."""
        _validate_window(limit, offset)
        events = await self._repository.list_events(instance_id, limit, offset)
        total = await self._repository.count_events(instance_id)
        return events, total

    async def page(self, instance: Instance, limit: int, offset: int) -> TimelinePage:
        """Build a presentation page with step names taken from the snapshot."""
        events, total = await self.query(instance.id, limit, offset)
        step_names = instance.snapshot.step_names()
        entries = [
            TimelineEntry(
                id=event.id,
                type=event.event_type,
                step_id=event.step_id,
                step_name=step_names.get(event.step_id) if event.step_id else None,
                actor=event.actor,
                message=event.message,
                metadata=event.metadata,
                created_at=event.created_at,
            )
            for event in events
        ]
        return TimelinePage(
            timeline=entries,
            pagination=Pagination(
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + limit < total,
            ),
        )


def _validate_window(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_TIMELINE_LIMIT:
        raise ValidationError(
            f"limit must be between 1 and {MAX_TIMELINE_LIMIT}", {"limit": limit}
        )
    if offset < 0:
        raise ValidationError("offset must not be negative", {"offset": offset})
