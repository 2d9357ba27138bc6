"""
Segment data models for the Segments Service.
"""

from typing import List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

SLUG_MAX_LENGTH = 255


class Operation(str, Enum):
    """History event operations."""
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"


@dataclass
class Segment:
    """Named user cohort."""
    id: int
    slug: str
    is_active: bool = True


@dataclass
class UserSegmentRelation:
    """One membership interval of a user in a segment."""
    id: int
    user_id: int
    segment_id: int
    is_active: bool
    date_assigned: datetime
    date_unassigned: Optional[datetime] = None


@dataclass
class RelationRecord:
    """Relation row joined to its segment slug, as read for history."""
    user_id: int
    segment_slug: str
    date_assigned: datetime
    date_unassigned: Optional[datetime] = None


@dataclass
class HistoryEvent:
    """Reconstructed assignment or unassignment fact."""
    user_id: int
    segment_slug: str
    operation: Operation
    timestamp: datetime

    def as_row(self) -> List[str]:
        return [str(self.user_id), self.segment_slug, self.operation.value, self.timestamp.isoformat()]


@dataclass(frozen=True)
class DateWindow:
    """Half-open [start, end) range used to filter history events."""
    start: datetime
    end: datetime

    def __contains__(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class UserSegments:
    """Active segments of a user."""
    user_id: int
    segments: List[str] = field(default_factory=list)


class SegmentSlugRequest(BaseModel):
    """Request model for creating or deleting a segment."""
    segment_slug: str = Field(..., description="Segment slug")


class UpdateUserSegmentsRequest(BaseModel):
    """Request model for assigning and unassigning segments of one user."""
    user_id: int = Field(..., description="User ID")
    assign_segments: List[str] = Field(default_factory=list, description="Slugs to assign")
    unassign_segments: List[str] = Field(default_factory=list, description="Slugs to unassign")


class AutoAssignRequest(BaseModel):
    """Request model for percentage rollout of a segment."""
    segment_slug: str = Field(..., description="Segment slug")
    fraction: int = Field(..., description="Percentage of active users, 1-100")


class UserSegmentsResponse(BaseModel):
    """Response model for a user's active segments."""
    user_id: int
    segments: List[str]


class AutoAssignResponse(BaseModel):
    """Response model for auto-assignment."""
    segment_slug: str
    assigned_users: List[int]


class HistoryReportResponse(BaseModel):
    """Response model for an exported history report."""
    csv_url: str
