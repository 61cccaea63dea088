"""
Activity recorder.

Mutations collect ``ActivityEvent`` objects while their transaction runs and
hand them over once it has committed. Recording happens in a separate
session and never fails the caller: errors are logged and dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from why_stack.db.models import ActivityLogModel
from why_stack.db.repository import ActivityRepository, HypothesisRepository, WatcherRepository
from why_stack.types import ActivityType

logger = logging.getLogger(__name__)


class ActivityEvent(BaseModel):
    """A structured change event waiting to be written to the activity log."""

    hypothesis_id: UUID = Field(..., description="Hypothesis whose feed shows the event")
    type: ActivityType = Field(..., description="Event category")
    summary: str = Field(..., description="Human readable one-liner")
    actor_id: str | None = Field(default=None, description="Opaque actor identifier")
    actor_name: str | None = Field(default=None, description="Actor display name")
    metadata: dict[str, Any] | None = Field(default=None, description="Type-specific details")


class ActivityRead(BaseModel):
    """An activity log row as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    hypothesis_id: UUID
    actor_id: str | None
    actor_name: str | None
    type: ActivityType
    summary: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class ActivityRecorder:
    """Writes activity events after the originating mutation has committed."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """
        Initialize the recorder.

        Args:
            session_factory: Factory for the sessions events are written in.
        """
        self._session_factory = session_factory

    async def record(self, event: ActivityEvent) -> bool:
        """
        Write one event.

        Returns:
            True if the event was stored, False if it was dropped.
        """
        try:
            async with self._session_factory() as session, session.begin():
                await ActivityRepository(session).create(
                    ActivityLogModel(
                        hypothesis_id=event.hypothesis_id,
                        actor_id=event.actor_id,
                        actor_name=event.actor_name,
                        type=event.type,
                        summary=event.summary,
                        metadata_=event.metadata,
                    )
                )
            return True
        except Exception as e:
            logger.error(f"Failed to log activity {event.type.value} for {event.hypothesis_id}: {e}", exc_info=True)
            return False

    async def record_all(self, events: Iterable[ActivityEvent]) -> int:
        """Write events in order; return how many were stored."""
        stored = 0
        for event in events:
            if await self.record(event):
                stored += 1
        return stored

    async def activities_for_hypothesis(self, hypothesis_id: UUID, limit: int = 100) -> list[ActivityRead]:
        async with self._session_factory() as session:
            rows = await ActivityRepository(session).list_for_hypothesis(hypothesis_id, limit=limit)
            return [ActivityRead.model_validate(row) for row in rows]

    async def activities_for_user(
        self,
        user_id: UUID,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[ActivityRead]:
        """
        Get the feed for a user: events on hypotheses they own or watch.

        The user's own actions are left out.

        Args:
            user_id: The user whose feed to build.
            since: Only events at or after this time.
            limit: Maximum number to return.

        Returns:
            Activities, newest first.
        """
        async with self._session_factory() as session:
            owned = await HypothesisRepository(session).owned_ids(user_id)
            watched = await WatcherRepository(session).watched_ids(user_id)
            hypothesis_ids = set(owned) | set(watched)
            if not hypothesis_ids:
                return []

            rows = await ActivityRepository(session).list_for_hypotheses(
                hypothesis_ids,
                exclude_actor_id=str(user_id),
                since=since,
                limit=limit,
            )
            return [ActivityRead.model_validate(row) for row in rows]
