"""
Segment assignment and history engine.

Wires the storage backend to the sampler, the auto-assigner, the history
reconstructor and the report exporter, and exposes the operations the HTTP
layer calls. Every collaborator is passed in; nothing is module-global.
"""

import random
from typing import List, Optional, Sequence

from shared.config import BaseConfig
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .assignment.auto_assign import AutoAssigner
from .assignment.sampler import RandomSampler
from .history.exporter import ReportExporter
from .history.reconstructor import HistoryReconstructor
from .history.window import parse_date_window
from .models import HistoryEvent, Segment, UserSegments
from .storage.base import Clock, SegmentStorage, utc_now, validate_user_id
from .storage.memory import InMemorySegmentStorage
from .storage.postgres import PostgreSQLSegmentStorage


class SegmentEngine:
    """Facade over the segment catalog, assignments and history."""

    def __init__(
        self,
        storage: SegmentStorage,
        exporter: ReportExporter,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.storage = storage
        self.exporter = exporter
        self.metrics = metrics
        self.sampler = RandomSampler(storage, rng)
        self.auto_assigner = AutoAssigner(storage, storage, self.sampler)
        self.reconstructor = HistoryReconstructor(storage)
        self.logger = get_logger("segments.engine")

    async def start(self):
        await self.storage.start()

    async def stop(self):
        await self.storage.stop()

    def _count(self, metric_name: str, amount: float = 1, **labels):
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, amount, **labels)

    def _record_event(self, event_type: str):
        if self.metrics is not None:
            self.metrics.record_business_event(event_type)

    # Catalog

    async def insert_segment(self, slug: str) -> Segment:
        segment = await self.storage.insert_segment(slug)
        self._record_event("segment_inserted")
        return segment

    async def delete_segment(self, slug: str) -> int:
        closed = await self.storage.delete_segment(slug)
        self._record_event("segment_deleted")
        self._count("segment_assignments_total", closed, operation="unassigned")
        return closed

    async def get_segment(self, slug: str) -> Optional[Segment]:
        return await self.storage.get_segment(slug)

    async def segment_exists(self, slug: str) -> bool:
        """True only for an active segment; soft-deleted slugs do not count."""
        segment = await self.storage.get_segment(slug)
        return segment is not None and segment.is_active

    # Assignments

    async def assign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        created = await self.storage.assign_segments(user_ids, slugs)
        self._count("segment_assignments_total", created, operation="assigned")
        return created

    async def unassign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        closed = await self.storage.unassign_segments(user_ids, slugs)
        self._count("segment_assignments_total", closed, operation="unassigned")
        return closed

    async def update_user_segments(
        self,
        user_id: int,
        assign: Sequence[str] = (),
        unassign: Sequence[str] = (),
    ) -> UserSegments:
        """Assign then unassign segments of one user; returns the resulting membership.

        The two steps are separate transactions; a failure in the second leaves
        the first committed.
        """
        validate_user_id(user_id)
        if assign:
            await self.assign_segments([user_id], assign)
        if unassign:
            await self.unassign_segments([user_id], unassign)
        return await self.storage.get_user_segments(user_id)

    async def get_user_segments(self, user_id: int) -> UserSegments:
        return await self.storage.get_user_segments(user_id)

    async def auto_assign(self, fraction: int, slug: str) -> List[int]:
        users = await self.auto_assigner.auto_assign(fraction, slug)
        self._count("segment_assignments_total", len(users), operation="assigned")
        if self.metrics is not None:
            self.metrics.observe_histogram("auto_assign_sample_size", len(users))
        return users

    # History

    async def get_user_history(self, user_id: int, start_text: str, end_text: str) -> List[HistoryEvent]:
        window = parse_date_window(start_text, end_text)
        return await self.reconstructor.get_user_history(user_id, window)

    async def export_user_history(self, user_id: int, start_text: str, end_text: str) -> str:
        """Reconstruct the user's history for the window and return the report URL."""
        events = await self.get_user_history(user_id, start_text, end_text)
        url = await self.exporter.export(events)
        self._count("reports_exported_total")
        return url


def build_storage(config: BaseConfig, clock: Clock = utc_now) -> SegmentStorage:
    """Storage backend selected by ``config.storage_backend``."""
    if config.storage_backend == "memory":
        return InMemorySegmentStorage(clock=clock)
    if config.storage_backend == "postgres":
        return PostgreSQLSegmentStorage(
            config.postgres_dsn,
            clock=clock,
            min_size=config.db_pool_min_size,
            max_size=config.db_pool_max_size,
            command_timeout=config.db_command_timeout,
        )
    raise ValueError(f"unknown storage backend: {config.storage_backend}")


def build_engine(
    config: BaseConfig,
    storage: Optional[SegmentStorage] = None,
    metrics: Optional[MetricsCollector] = None,
) -> SegmentEngine:
    exporter = ReportExporter(
        storage_dir=config.storage_dir,
        public_base_url=config.public_base_url,
        file_prefix=config.report_file_prefix,
        file_ext=config.report_file_ext,
    )
    if storage is None:
        storage = build_storage(config)
    return SegmentEngine(storage, exporter, metrics=metrics)
