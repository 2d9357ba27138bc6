"""
Segments service for Segmentator.
"""

from typing import Optional

from fastapi import Query
from fastapi.staticfiles import StaticFiles

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.logging import set_user_context

from .engine import SegmentEngine, build_engine
from .models import (
    AutoAssignRequest, AutoAssignResponse, HistoryReportResponse,
    SegmentSlugRequest, UpdateUserSegmentsRequest, UserSegmentsResponse,
)
from .storage.base import SegmentStorage


class SegmentsService(BaseService):
    """Segments service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, storage: Optional[SegmentStorage] = None):
        super().__init__("segments", 8000, config)

        self.engine: SegmentEngine = build_engine(self.config, storage=storage, metrics=self.metrics)

        self._setup_segments_routes()

    def _setup_segments_routes(self):
        """Set up segments-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "segments",
                "message": "Segmentator - Segments Service",
                "version": "1.0.0",
                "capabilities": ["segments", "auto_assign", "history_reports"]
            }

        @self.app.post("/api/create_segment", status_code=201)
        async def create_segment(request: SegmentSlugRequest):
            """Create a segment or reactivate a deleted one."""
            segment = await self.engine.insert_segment(request.segment_slug)
            return {"segment_slug": segment.slug, "is_active": segment.is_active}

        @self.app.delete("/api/delete_segment")
        async def delete_segment(request: SegmentSlugRequest):
            """Soft-delete a segment and unassign it from every user."""
            closed = await self.engine.delete_segment(request.segment_slug)
            return {"segment_slug": request.segment_slug, "relations_closed": closed}

        @self.app.post("/api/update_user_segments", response_model=UserSegmentsResponse)
        async def update_user_segments(request: UpdateUserSegmentsRequest):
            """Assign and unassign segments of a user."""
            set_user_context(str(request.user_id))
            result = await self.engine.update_user_segments(
                request.user_id,
                assign=request.assign_segments,
                unassign=request.unassign_segments
            )
            return UserSegmentsResponse(user_id=result.user_id, segments=result.segments)

        @self.app.get("/api/get_user_segments", response_model=UserSegmentsResponse)
        async def get_user_segments(user_id: int = Query(..., description="User ID")):
            """Active segments of a user."""
            set_user_context(str(user_id))
            result = await self.engine.get_user_segments(user_id)
            return UserSegmentsResponse(user_id=result.user_id, segments=result.segments)

        @self.app.post("/api/auto_assign_segment", response_model=AutoAssignResponse)
        async def auto_assign_segment(request: AutoAssignRequest):
            """Assign a segment to a random share of active users."""
            users = await self.engine.auto_assign(request.fraction, request.segment_slug)
            return AutoAssignResponse(segment_slug=request.segment_slug, assigned_users=users)

        @self.app.get("/api/get_user_history", response_model=HistoryReportResponse)
        async def get_user_history(
            user_id: int = Query(..., description="User ID"),
            start_date: str = Query(..., description="First month, yyyy-mm or yyyy-m"),
            end_date: str = Query(..., description="Last month, yyyy-mm or yyyy-m")
        ):
            """Export a user's assignment history for a month range as CSV."""
            set_user_context(str(user_id))
            url = await self.engine.export_user_history(user_id, start_date, end_date)
            return HistoryReportResponse(csv_url=url)

        self.app.mount(
            "/reports",
            StaticFiles(directory=self.config.storage_dir, check_dir=False),
            name="reports"
        )

    async def _check_dependencies(self):
        """Check segments service dependencies."""
        healthy = await self.engine.storage.health_check()
        return {"storage": "ok" if healthy else "error"}

    async def start(self):
        """Start segments service components."""
        await self.engine.start()
        self.logger.info("Segments service started", storage_backend=self.config.storage_backend)

    async def stop(self):
        """Stop segments service components."""
        await self.engine.stop()
        self.logger.info("Segments service stopped")


def create_app(config: Optional[ServiceConfig] = None, storage: Optional[SegmentStorage] = None):
    """Create segments service application."""
    service = SegmentsService(config=config, storage=storage)
    return service.app


if __name__ == "__main__":
    service = SegmentsService()
    service.run()
