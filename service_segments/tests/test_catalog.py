"""
Unit tests for the segment catalog (in-memory backend).
"""

import pytest
from unittest.mock import patch

from shared.errors import InvalidArgumentError, NotFoundError


class TestSegmentCatalog:
    """Test cases for insert/delete of segments."""

    @pytest.mark.asyncio
    async def test_insert_creates_active_segment(self, storage):
        """Test inserting a new slug."""
        segment = await storage.insert_segment("beta")

        assert segment.slug == "beta"
        assert segment.is_active is True
        assert (await storage.get_segment("beta")).is_active is True

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, storage):
        """Test inserting the same slug twice keeps one active segment."""
        first = await storage.insert_segment("beta")
        second = await storage.insert_segment("beta")

        assert first.id == second.id
        assert [s.slug for s in storage.segments.values()].count("beta") == 1
        assert second.is_active is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("slug", [
        "", "   ", None, 42, "x" * 256, 'beta"x', "beta;x", "beta\nx", "beta\rx",
    ])
    async def test_insert_rejects_malformed_slug(self, storage, slug):
        """Test malformed slugs are rejected without touching storage."""
        with pytest.raises(InvalidArgumentError):
            await storage.insert_segment(slug)

        assert storage.segments == {}

    @pytest.mark.asyncio
    async def test_delete_unknown_segment(self, storage):
        """Test deleting a slug that was never inserted."""
        with pytest.raises(NotFoundError) as exc_info:
            await storage.delete_segment("missing")

        assert exc_info.value.details["segment_slugs"] == ["missing"]

    @pytest.mark.asyncio
    async def test_delete_cascades_to_relations(self, storage, clock):
        """Test soft delete closes every active relation of the segment."""
        await storage.insert_segment("beta")
        await storage.insert_segment("gamma")
        await storage.assign_segments([1, 2, 3], ["beta", "gamma"])

        deleted_at = clock.advance(days=1)
        closed = await storage.delete_segment("beta")

        assert closed == 3
        assert (await storage.get_segment("beta")).is_active is False
        for user_id in (1, 2, 3):
            assert (await storage.get_user_segments(user_id)).segments == ["gamma"]

        beta_id = (await storage.get_segment("beta")).id
        beta_rows = [r for r in storage.relations if r.segment_id == beta_id]
        assert all(not r.is_active for r in beta_rows)
        assert all(r.date_unassigned == deleted_at for r in beta_rows)

    @pytest.mark.asyncio
    async def test_delete_keeps_earlier_unassignment_dates(self, storage, clock):
        """Test cascading delete only closes rows that are still active."""
        await storage.insert_segment("beta")
        await storage.assign_segments([1], ["beta"])
        unassigned_at = clock.advance(hours=1)
        await storage.unassign_segments([1], ["beta"])
        clock.advance(hours=1)
        await storage.assign_segments([1], ["beta"])
        clock.advance(hours=1)

        closed = await storage.delete_segment("beta")

        assert closed == 1
        assert storage.relations[0].date_unassigned == unassigned_at

    @pytest.mark.asyncio
    async def test_reinsert_reactivates_deleted_segment(self, storage):
        """Test inserting a deleted slug reactivates the same segment."""
        original = await storage.insert_segment("beta")
        await storage.assign_segments([1], ["beta"])
        await storage.delete_segment("beta")

        reactivated = await storage.insert_segment("beta")

        assert reactivated.id == original.id
        assert reactivated.is_active is True
        assert len(storage.segments) == 1
        # history rows stay closed; membership does not come back
        assert (await storage.get_user_segments(1)).segments == []
        assert len(storage.relations) == 1

    @pytest.mark.asyncio
    async def test_delete_is_atomic(self, storage):
        """Test a failure while closing relations leaves everything untouched."""
        await storage.insert_segment("beta")
        await storage.assign_segments([1, 2], ["beta"])

        closed = []
        original_close = storage._close_relation

        def flaky_close(relation):
            if closed:
                raise RuntimeError("disk full")
            closed.append(relation)
            original_close(relation)

        with patch.object(storage, "_close_relation", side_effect=flaky_close):
            with pytest.raises(RuntimeError):
                await storage.delete_segment("beta")

        assert (await storage.get_segment("beta")).is_active is True
        assert all(r.is_active and r.date_unassigned is None for r in storage.relations)
        assert (await storage.get_user_segments(1)).segments == ["beta"]

    @pytest.mark.asyncio
    async def test_resolve_reports_every_missing_slug(self, storage):
        """Test slug resolution lists all unknown slugs."""
        await storage.insert_segment("beta")

        with pytest.raises(NotFoundError) as exc_info:
            await storage.resolve_segment_ids(["alpha", "beta", "omega"])

        assert exc_info.value.details["segment_slugs"] == ["alpha", "omega"]

    @pytest.mark.asyncio
    async def test_resolve_inactive_segment(self, storage):
        """Test inactive segments resolve only when asked for."""
        segment = await storage.insert_segment("beta")
        await storage.delete_segment("beta")

        with pytest.raises(NotFoundError):
            await storage.resolve_segment_ids(["beta"])
        assert await storage.resolve_segment_ids(["beta"], active_only=False) == [segment.id]
