"""
Unit tests for the assignment store (in-memory backend).
"""

import asyncio

import pytest
from unittest.mock import patch

from shared.errors import InvalidArgumentError, NotFoundError


def active_rows(storage, user_id, segment_id):
    return [
        r for r in storage.relations
        if r.user_id == user_id and r.segment_id == segment_id and r.is_active
    ]


class TestAssignSegments:
    """Test cases for assign/unassign."""

    @pytest.mark.asyncio
    async def test_assign_unassign_round_trip(self, storage):
        """Test a segment appears after assign and disappears after unassign."""
        await storage.insert_segment("beta")

        await storage.assign_segments([42], ["beta"])
        assert (await storage.get_user_segments(42)).segments == ["beta"]

        await storage.unassign_segments([42], ["beta"])
        assert (await storage.get_user_segments(42)).segments == []

    @pytest.mark.asyncio
    async def test_assign_skips_existing_pairs(self, storage):
        """Test already-assigned pairs are skipped and the rest still assigned."""
        segment = await storage.insert_segment("beta")
        assert await storage.assign_segments([1], ["beta"]) == 1

        created = await storage.assign_segments([1, 2, 3], ["beta"])

        assert created == 2
        for user_id in (1, 2, 3):
            assert len(active_rows(storage, user_id, segment.id)) == 1
            assert (await storage.get_user_segments(user_id)).segments == ["beta"]

    @pytest.mark.asyncio
    async def test_assign_deduplicates_input(self, storage):
        """Test repeated ids and slugs in one call create one row per pair."""
        await storage.insert_segment("beta")

        created = await storage.assign_segments([1, 1, 2], ["beta", "beta"])

        assert created == 2
        assert len(storage.relations) == 2

    @pytest.mark.asyncio
    async def test_assign_multiple_segments(self, storage):
        """Test segments are listed sorted by slug."""
        for slug in ("gamma", "alpha", "beta"):
            await storage.insert_segment(slug)

        await storage.assign_segments([5], ["gamma", "alpha", "beta"])

        assert (await storage.get_user_segments(5)).segments == ["alpha", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_assign_unknown_slug_writes_nothing(self, storage):
        """Test an unknown slug fails the whole call before any row is written."""
        await storage.insert_segment("beta")

        with pytest.raises(NotFoundError) as exc_info:
            await storage.assign_segments([1, 2], ["beta", "missing"])

        assert exc_info.value.details["segment_slugs"] == ["missing"]
        assert storage.relations == []

    @pytest.mark.asyncio
    async def test_assign_deleted_segment(self, storage):
        """Test a soft-deleted segment cannot be assigned."""
        await storage.insert_segment("beta")
        await storage.delete_segment("beta")

        with pytest.raises(NotFoundError):
            await storage.assign_segments([1], ["beta"])
        assert storage.relations == []

    @pytest.mark.asyncio
    async def test_assign_empty_input_is_noop(self, storage):
        """Test empty user or slug lists do nothing."""
        assert await storage.assign_segments([], ["missing"]) == 0
        assert await storage.assign_segments([1], []) == 0
        assert await storage.unassign_segments([], ["missing"]) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_ids", [["1"], [True], [1.5]])
    async def test_assign_rejects_bad_user_ids(self, storage, user_ids):
        """Test non-integer user ids are rejected."""
        await storage.insert_segment("beta")

        with pytest.raises(InvalidArgumentError):
            await storage.assign_segments(user_ids, ["beta"])

    @pytest.mark.asyncio
    async def test_assign_rolls_back_on_failure(self, storage):
        """Test an unexpected failure mid-batch leaves no rows behind."""
        await storage.insert_segment("beta")

        opened = []
        original_open = storage._open_relation

        def flaky_open(user_id, segment_id):
            if opened:
                raise RuntimeError("connection lost")
            opened.append(user_id)
            return original_open(user_id, segment_id)

        with patch.object(storage, "_open_relation", side_effect=flaky_open):
            with pytest.raises(RuntimeError):
                await storage.assign_segments([1, 2, 3], ["beta"])

        assert storage.relations == []
        assert (await storage.get_user_segments(1)).segments == []

    @pytest.mark.asyncio
    async def test_assign_rolls_back_on_cancellation(self, storage):
        """Test a cancelled assign leaves no rows behind and releases the lock."""
        await storage.insert_segment("beta")

        opened = []
        original_open = storage._open_relation

        def cancelled_open(user_id, segment_id):
            if opened:
                raise asyncio.CancelledError()
            opened.append(user_id)
            return original_open(user_id, segment_id)

        with patch.object(storage, "_open_relation", side_effect=cancelled_open):
            with pytest.raises(asyncio.CancelledError):
                await storage.assign_segments([1, 2, 3], ["beta"])

        assert storage.relations == []
        assert await storage.assign_segments([1], ["beta"]) == 1

    @pytest.mark.asyncio
    async def test_unassign_without_active_relation(self, storage):
        """Test unassigning a pair with no active relation is a no-op."""
        await storage.insert_segment("beta")

        closed = await storage.unassign_segments([1], ["beta"])

        assert closed == 0
        assert storage.relations == []

    @pytest.mark.asyncio
    async def test_unassign_unknown_slug(self, storage):
        """Test unassigning an unknown slug is reported."""
        with pytest.raises(NotFoundError):
            await storage.unassign_segments([1], ["missing"])

    @pytest.mark.asyncio
    async def test_unassign_records_date(self, storage, clock):
        """Test unassign closes the row with the current time."""
        await storage.insert_segment("beta")
        assigned_at = clock.now
        await storage.assign_segments([1], ["beta"])
        unassigned_at = clock.advance(minutes=5)

        await storage.unassign_segments([1], ["beta"])

        row = storage.relations[0]
        assert row.is_active is False
        assert row.date_assigned == assigned_at
        assert row.date_unassigned == unassigned_at

    @pytest.mark.asyncio
    async def test_at_most_one_active_row_per_pair(self, storage, clock):
        """Test any interleaving of assign/unassign keeps one active row at most."""
        segment = await storage.insert_segment("beta")
        operations = ["assign", "assign", "unassign", "unassign", "assign", "unassign", "assign", "assign"]

        for operation in operations:
            clock.advance(seconds=1)
            if operation == "assign":
                await storage.assign_segments([7], ["beta"])
            else:
                await storage.unassign_segments([7], ["beta"])
            assert len(active_rows(storage, 7, segment.id)) <= 1

        # every assign that found no active row opened a new one
        assert len(storage.relations) == 3
        assert all(
            r.date_unassigned is None or r.date_assigned <= r.date_unassigned
            for r in storage.relations
        )

    @pytest.mark.asyncio
    async def test_concurrent_assigns_keep_one_active_row(self, storage):
        """Test concurrent assign calls for one pair open a single row."""
        segment = await storage.insert_segment("beta")

        results = await asyncio.gather(*(
            storage.assign_segments([3], ["beta"]) for _ in range(20)
        ))

        assert sum(results) == 1
        assert len(active_rows(storage, 3, segment.id)) == 1

    @pytest.mark.asyncio
    async def test_get_user_segments_for_unknown_user(self, storage):
        """Test a user with no relations has no segments."""
        result = await storage.get_user_segments(999)

        assert result.user_id == 999
        assert result.segments == []

    @pytest.mark.asyncio
    async def test_active_users_amount(self, storage):
        """Test only active users are counted."""
        assert await storage.get_active_users_amount() == 10
