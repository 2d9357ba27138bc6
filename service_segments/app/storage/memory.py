"""
In-memory storage backend for the Segments Service.

Keeps segments, relation rows and the user directory in process memory.
Transactions are serialized by a single lock and rolled back by restoring a
snapshot taken at transaction start, which mirrors what the relational
backend gets from the database. The snapshot copies the whole state, so each
write costs time proportional to the stored history; use it for tests only.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Sequence

from shared.errors import NotFoundError
from shared.logging import get_logger

from ..models import DateWindow, RelationRecord, Segment, UserSegmentRelation, UserSegments
from .base import (
    Clock, SegmentStorage, utc_now, validate_slug, validate_slugs,
    validate_user_id, validate_user_ids,
)


class InMemorySegmentStorage(SegmentStorage):
    """Process-local backend for tests."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self.logger = get_logger("segments.storage.memory")
        self.segments: Dict[int, Segment] = {}
        self.relations: List[UserSegmentRelation] = []
        self.users: Dict[int, bool] = {}
        self._next_segment_id = 1
        self._next_relation_id = 1
        self._lock = asyncio.Lock()

    def add_users(self, user_ids: Iterable[int], is_active: bool = True) -> None:
        """Register users in the directory."""
        for user_id in user_ids:
            self.users[user_id] = is_active

    @asynccontextmanager
    async def _transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy(
                (self.segments, self.relations, self._next_segment_id, self._next_relation_id)
            )
            try:
                yield
            except (Exception, asyncio.CancelledError) as exc:
                (self.segments, self.relations,
                 self._next_segment_id, self._next_relation_id) = snapshot
                self.logger.warning("Transaction rolled back", error=repr(exc))
                raise

    def _find_segment(self, slug: str) -> Optional[Segment]:
        for segment in self.segments.values():
            if segment.slug == slug:
                return segment
        return None

    def _active_relation(self, user_id: int, segment_id: int) -> Optional[UserSegmentRelation]:
        for relation in self.relations:
            if relation.is_active and relation.user_id == user_id and relation.segment_id == segment_id:
                return relation
        return None

    def _open_relation(self, user_id: int, segment_id: int) -> UserSegmentRelation:
        relation = UserSegmentRelation(
            id=self._next_relation_id,
            user_id=user_id,
            segment_id=segment_id,
            is_active=True,
            date_assigned=self.clock(),
        )
        self._next_relation_id += 1
        self.relations.append(relation)
        return relation

    def _close_relation(self, relation: UserSegmentRelation) -> None:
        relation.is_active = False
        relation.date_unassigned = max(self.clock(), relation.date_assigned)

    def _resolve(self, slugs: Sequence[str], active_only: bool) -> List[int]:
        ids, missing = [], []
        for slug in slugs:
            segment = self._find_segment(slug)
            if segment is None or (active_only and not segment.is_active):
                missing.append(slug)
            else:
                ids.append(segment.id)
        if missing:
            raise NotFoundError("unknown segment slug", details={"segment_slugs": missing})
        return ids

    async def insert_segment(self, slug: str) -> Segment:
        validate_slug(slug)
        async with self._transaction():
            segment = self._find_segment(slug)
            if segment is None:
                segment = Segment(id=self._next_segment_id, slug=slug)
                self._next_segment_id += 1
                self.segments[segment.id] = segment
            else:
                segment.is_active = True

        self.logger.info("Segment inserted", segment_slug=slug, segment_id=segment.id)
        return copy.copy(segment)

    async def delete_segment(self, slug: str) -> int:
        validate_slug(slug)
        async with self._transaction():
            segment_id = self._resolve([slug], active_only=False)[0]
            self.segments[segment_id].is_active = False
            closed = 0
            for relation in self.relations:
                if relation.segment_id == segment_id and relation.is_active:
                    self._close_relation(relation)
                    closed += 1

        self.logger.info("Segment deleted", segment_slug=slug, relations_closed=closed)
        return closed

    async def get_segment(self, slug: str) -> Optional[Segment]:
        segment = self._find_segment(slug)
        return copy.copy(segment) if segment else None

    async def resolve_segment_ids(self, slugs: Sequence[str], active_only: bool = True) -> List[int]:
        return self._resolve(validate_slugs(slugs), active_only)

    async def assign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        user_ids = validate_user_ids(user_ids)
        slugs = validate_slugs(slugs)
        if not user_ids or not slugs:
            return 0

        created = 0
        async with self._transaction():
            segment_ids = self._resolve(slugs, active_only=True)
            for user_id in user_ids:
                for segment_id in segment_ids:
                    if self._active_relation(user_id, segment_id) is not None:
                        continue
                    self._open_relation(user_id, segment_id)
                    created += 1

        self.logger.info("Segments assigned", users=len(user_ids), segment_slugs=slugs, created=created)
        return created

    async def unassign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        user_ids = validate_user_ids(user_ids)
        slugs = validate_slugs(slugs)
        if not user_ids or not slugs:
            return 0

        closed = 0
        async with self._transaction():
            segment_ids = self._resolve(slugs, active_only=False)
            for user_id in user_ids:
                for segment_id in segment_ids:
                    relation = self._active_relation(user_id, segment_id)
                    if relation is None:
                        continue
                    self._close_relation(relation)
                    closed += 1

        self.logger.info("Segments unassigned", users=len(user_ids), segment_slugs=slugs, closed=closed)
        return closed

    async def get_user_segments(self, user_id: int) -> UserSegments:
        validate_user_id(user_id)
        slugs = {
            self.segments[relation.segment_id].slug
            for relation in self.relations
            if relation.user_id == user_id
            and relation.is_active
            and self.segments[relation.segment_id].is_active
        }
        return UserSegments(user_id=user_id, segments=sorted(slugs))

    async def get_active_users_amount(self) -> int:
        return sum(1 for is_active in self.users.values() if is_active)

    async def get_active_user_ids_without_segment(self, slug: str) -> List[int]:
        validate_slug(slug)
        segment_id = self._resolve([slug], active_only=True)[0]
        holders = {
            relation.user_id
            for relation in self.relations
            if relation.segment_id == segment_id and relation.is_active
        }
        return [
            user_id for user_id, is_active in sorted(self.users.items())
            if is_active and user_id not in holders
        ]

    async def get_user_relations(
        self,
        user_id: int,
        window: Optional[DateWindow] = None,
    ) -> List[RelationRecord]:
        validate_user_id(user_id)
        return [
            RelationRecord(
                user_id=relation.user_id,
                segment_slug=self.segments[relation.segment_id].slug,
                date_assigned=relation.date_assigned,
                date_unassigned=relation.date_unassigned,
            )
            for relation in sorted(self.relations, key=lambda r: r.id)
            if relation.user_id == user_id
        ]
