"""
Percentage rollout of a segment to active users.
"""

from typing import List

from shared.errors import InvalidArgumentError
from shared.logging import get_logger

from ..storage.base import AssignmentStore, UserDirectory, validate_slug
from .sampler import RandomSampler

MIN_FRACTION = 1
MAX_FRACTION = 100


def sample_size_for(active_users: int, fraction: int) -> int:
    """ceil(active_users * fraction / 100) without float rounding."""
    return -(-active_users * fraction // 100)


class AutoAssigner:
    """Draws a random share of active users and assigns them a segment.

    Every call samples from the users currently lacking the segment, so calling
    it twice with 50 moves the rollout toward 75%, not 50%.
    """

    def __init__(self, store: AssignmentStore, directory: UserDirectory, sampler: RandomSampler):
        self.store = store
        self.directory = directory
        self.sampler = sampler
        self.logger = get_logger("segments.auto_assign")

    async def auto_assign(self, fraction: int, slug: str) -> List[int]:
        if isinstance(fraction, bool) or not isinstance(fraction, int) \
                or not MIN_FRACTION <= fraction <= MAX_FRACTION:
            raise InvalidArgumentError(
                f"fraction must be an integer between {MIN_FRACTION} and {MAX_FRACTION}",
                details={"fraction": fraction}
            )
        validate_slug(slug)

        active_users = await self.directory.get_active_users_amount()
        sample_size = sample_size_for(active_users, fraction)
        users = await self.sampler.get_n_random_users_without_segment(sample_size, slug)
        await self.store.assign_segments(users, [slug])

        self.logger.info(
            "Segment auto-assigned",
            segment_slug=slug,
            fraction=fraction,
            active_users=active_users,
            sample_size=sample_size,
            assigned=len(users)
        )
        return users
