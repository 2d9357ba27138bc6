"""
Storage capability interfaces for the Segments Service.

The engine talks to storage only through these interfaces, so a relational
backend and the in-memory backend are interchangeable. Every mutating call is
one transaction: it either commits completely or leaves no trace.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from shared.errors import InvalidArgumentError

from ..models import SLUG_MAX_LENGTH, DateWindow, RelationRecord, Segment, UserSegments

Clock = Callable[[], datetime]

# Slugs are written unquoted into ";"-separated report lines.
SLUG_FORBIDDEN_CHARS = frozenset(";\"\r\n")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_slug(slug) -> str:
    """Reject empty, blank, non-string or oversized slugs and report separators."""
    if not isinstance(slug, str) or not slug.strip():
        raise InvalidArgumentError("empty segment slug", details={"segment_slug": slug})
    if len(slug) > SLUG_MAX_LENGTH:
        raise InvalidArgumentError(
            f"segment slug longer than {SLUG_MAX_LENGTH} characters",
            details={"segment_slug": slug}
        )
    if any(char in slug for char in SLUG_FORBIDDEN_CHARS):
        raise InvalidArgumentError(
            "segment slug must not contain ';', '\"' or line breaks",
            details={"segment_slug": slug}
        )
    return slug


def validate_slugs(slugs: Iterable) -> List[str]:
    """Validate slugs and drop duplicates, keeping request order."""
    unique: List[str] = []
    for slug in slugs:
        validate_slug(slug)
        if slug not in unique:
            unique.append(slug)
    return unique


def validate_user_ids(user_ids: Iterable) -> List[int]:
    """Validate user ids and drop duplicates, keeping request order."""
    unique: List[int] = []
    for user_id in user_ids:
        validate_user_id(user_id)
        if user_id not in unique:
            unique.append(user_id)
    return unique


def validate_user_id(user_id) -> int:
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise InvalidArgumentError("user id must be an integer", details={"user_id": user_id})
    return user_id


class SegmentCatalog(ABC):
    """Create, soft-delete and resolve named segments."""

    @abstractmethod
    async def insert_segment(self, slug: str) -> Segment:
        """Create the segment, reactivate it, or leave an active one untouched."""

    @abstractmethod
    async def delete_segment(self, slug: str) -> int:
        """Deactivate the segment and close its active relations.

        Returns the number of relation rows closed.
        """

    @abstractmethod
    async def get_segment(self, slug: str) -> Optional[Segment]:
        """Look up a segment in any state."""

    @abstractmethod
    async def resolve_segment_ids(self, slugs: Sequence[str], active_only: bool = True) -> List[int]:
        """Map slugs to ids in request order, raising NotFoundError for any miss."""


class AssignmentStore(ABC):
    """Owns the user-segment relation."""

    @abstractmethod
    async def assign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        """Open a relation for every pair lacking an active one; returns rows created."""

    @abstractmethod
    async def unassign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        """Close the active relation of every pair that has one; returns rows closed."""

    @abstractmethod
    async def get_user_segments(self, user_id: int) -> UserSegments:
        """Slugs of active segments the user actively belongs to."""


class UserDirectory(ABC):
    """Read access to the collaborating user store."""

    @abstractmethod
    async def get_active_users_amount(self) -> int:
        """Count of active users."""

    @abstractmethod
    async def get_active_user_ids_without_segment(self, slug: str) -> List[int]:
        """Active users with no active relation to the segment."""


class HistoryReader(ABC):
    """Read access to the relation audit trail."""

    @abstractmethod
    async def get_user_relations(
        self,
        user_id: int,
        window: Optional[DateWindow] = None,
    ) -> List[RelationRecord]:
        """Every relation row of the user, active and closed, oldest first.

        With a window, rows with no timestamp inside it may be left out.
        """


class SegmentStorage(SegmentCatalog, AssignmentStore, UserDirectory, HistoryReader):
    """Complete backend handed to the engine."""

    async def start(self) -> None:
        """Acquire backend resources."""

    async def stop(self) -> None:
        """Release backend resources."""

    async def health_check(self) -> bool:
        return True
