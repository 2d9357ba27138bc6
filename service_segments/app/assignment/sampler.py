"""
Random selection of users that do not yet hold a segment.
"""

import random
from typing import List, Optional

from shared.errors import InvalidArgumentError
from shared.logging import get_logger

from ..storage.base import UserDirectory


class RandomSampler:
    """Uniform sampling without replacement over the eligible candidate set.

    The candidate ids come from one storage query; the draw happens here, so
    no backend needs a random-ordering function of its own.
    """

    def __init__(self, directory: UserDirectory, rng: Optional[random.Random] = None):
        self.directory = directory
        self.rng = rng or random.SystemRandom()
        self.logger = get_logger("segments.sampler")

    async def get_n_random_users_without_segment(self, n: int, slug: str) -> List[int]:
        """Up to ``n`` active users lacking ``slug``; fewer if fewer are eligible."""
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidArgumentError("sample size must be a non-negative integer", details={"n": n})

        candidates = await self.directory.get_active_user_ids_without_segment(slug)
        if n == 0 or not candidates:
            return []

        sample = self.rng.sample(candidates, min(n, len(candidates)))
        self.logger.debug(
            "Users sampled",
            segment_slug=slug,
            requested=n,
            eligible=len(candidates),
            sampled=len(sample)
        )
        return sample
