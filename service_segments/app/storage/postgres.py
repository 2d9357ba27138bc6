"""
PostgreSQL storage backend for the Segments Service.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence

import asyncpg

from shared.errors import NotFoundError, StorageError
from shared.logging import get_logger

from ..models import DateWindow, RelationRecord, Segment, UserSegments
from .base import (
    Clock, SegmentStorage, utc_now, validate_slug, validate_slugs,
    validate_user_id, validate_user_ids,
)

ERROR_ACQUIRE_CONNECTION = "error acquiring connection"
ERROR_BEGIN_TRANSACTION = "error beginning transaction"
ERROR_COMMITTING_TRANSACTION = "error committing transaction"
ERROR_GETTING_AFFECTED_ROWS = "error getting rows affected"

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGINT PRIMARY KEY,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS segments (
        id BIGSERIAL PRIMARY KEY,
        slug VARCHAR(255) NOT NULL UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS user_segment_relation (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        segment_id BIGINT NOT NULL REFERENCES segments (id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        date_assigned TIMESTAMP WITH TIME ZONE NOT NULL,
        date_unassigned TIMESTAMP WITH TIME ZONE,
        CHECK (date_unassigned IS NULL OR date_assigned <= date_unassigned)
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_user_segment_active
        ON user_segment_relation (user_id, segment_id) WHERE is_active;
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_relation_user ON user_segment_relation (user_id);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_relation_segment ON user_segment_relation (segment_id) WHERE is_active;
    """,
)


class PostgreSQLSegmentStorage(SegmentStorage):
    """asyncpg-backed storage; every mutating call runs in one transaction."""

    def __init__(
        self,
        dsn: str,
        clock: Clock = utc_now,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30,
    ):
        self.dsn = dsn
        self.clock = clock
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("segments.storage.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables if they don't exist."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            async with self.pool.acquire() as conn:
                for statement in SCHEMA:
                    await conn.execute(statement)
        except DRIVER_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL storage", error=str(e))
            raise StorageError("failed to start PostgreSQL storage", cause=e) from e

        self.logger.info("PostgreSQL storage started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL storage stopped")

    @asynccontextmanager
    async def _connection(self, operation: str):
        """Pooled connection for reads; driver failures surface as StorageError."""
        try:
            conn = await self.pool.acquire()
        except DRIVER_ERRORS as e:
            self.logger.error(ERROR_ACQUIRE_CONNECTION, operation=operation, error=str(e))
            raise StorageError(ERROR_ACQUIRE_CONNECTION, cause=e) from e
        try:
            yield conn
        except DRIVER_ERRORS as e:
            self.logger.error("Query failed", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed", cause=e) from e
        finally:
            await self.pool.release(conn)

    @asynccontextmanager
    async def _transaction(self, operation: str):
        """Run the block in one transaction.

        Any failure, cancellation included, rolls back before propagating. If the
        rollback fails too, the StorageError carries both errors; a cancelled
        block stays cancelled.
        """
        async with self._connection(operation) as conn:
            transaction = conn.transaction()
            try:
                await transaction.start()
            except DRIVER_ERRORS as e:
                self.logger.error(ERROR_BEGIN_TRANSACTION, operation=operation, error=str(e))
                raise StorageError(ERROR_BEGIN_TRANSACTION, cause=e) from e

            try:
                yield conn
            except (Exception, asyncio.CancelledError) as exc:
                try:
                    await transaction.rollback()
                except DRIVER_ERRORS as rollback_exc:
                    self.logger.error(
                        "Rollback failed",
                        operation=operation,
                        error=str(exc),
                        rollback_error=str(rollback_exc)
                    )
                    if isinstance(exc, asyncio.CancelledError):
                        raise exc
                    raise StorageError(
                        f"{operation} failed", cause=exc, rollback_error=rollback_exc
                    ) from exc
                raise

            try:
                await transaction.commit()
            except DRIVER_ERRORS as e:
                self.logger.error(ERROR_COMMITTING_TRANSACTION, operation=operation, error=str(e))
                raise StorageError(ERROR_COMMITTING_TRANSACTION, cause=e) from e

    def _rows_affected(self, status: str) -> int:
        """Row count from a command status tag such as "INSERT 0 3" or "UPDATE 2"."""
        try:
            return int(status.split()[-1])
        except (AttributeError, IndexError, ValueError) as e:
            self.logger.warning(ERROR_GETTING_AFFECTED_ROWS, status=status, error=str(e))
            return 0

    async def _resolve(
        self,
        conn,
        slugs: Sequence[str],
        active_only: bool,
        lock: bool = False,
    ) -> List[int]:
        query = "SELECT id, slug, is_active FROM segments WHERE slug = ANY($1::varchar[])"
        if lock:
            # Holds off a concurrent delete until this transaction ends.
            query += " FOR SHARE"
        rows = await conn.fetch(query, list(slugs))
        by_slug: Dict[str, asyncpg.Record] = {row["slug"]: row for row in rows}

        ids, missing = [], []
        for slug in slugs:
            row = by_slug.get(slug)
            if row is None or (active_only and not row["is_active"]):
                missing.append(slug)
            else:
                ids.append(row["id"])
        if missing:
            raise NotFoundError("unknown segment slug", details={"segment_slugs": missing})
        return ids

    async def insert_segment(self, slug: str) -> Segment:
        validate_slug(slug)
        async with self._transaction("insert_segment") as conn:
            row = await conn.fetchrow("""
                INSERT INTO segments (slug) VALUES ($1)
                ON CONFLICT (slug) DO UPDATE SET is_active = TRUE
                RETURNING id, slug, is_active
            """, slug)

        self.logger.info("Segment inserted", segment_slug=slug, segment_id=row["id"])
        return Segment(id=row["id"], slug=row["slug"], is_active=row["is_active"])

    async def delete_segment(self, slug: str) -> int:
        validate_slug(slug)
        async with self._transaction("delete_segment") as conn:
            segment_id = await conn.fetchval("""
                UPDATE segments SET is_active = FALSE WHERE slug = $1 RETURNING id
            """, slug)
            if segment_id is None:
                raise NotFoundError("unknown segment slug", details={"segment_slugs": [slug]})

            status = await conn.execute("""
                UPDATE user_segment_relation
                SET is_active = FALSE, date_unassigned = GREATEST($2, date_assigned)
                WHERE segment_id = $1 AND is_active
            """, segment_id, self.clock())

        closed = self._rows_affected(status)
        self.logger.info("Segment deleted", segment_slug=slug, relations_closed=closed)
        return closed

    async def get_segment(self, slug: str) -> Optional[Segment]:
        async with self._connection("get_segment") as conn:
            row = await conn.fetchrow(
                "SELECT id, slug, is_active FROM segments WHERE slug = $1", slug
            )
        if row is None:
            return None
        return Segment(id=row["id"], slug=row["slug"], is_active=row["is_active"])

    async def resolve_segment_ids(self, slugs: Sequence[str], active_only: bool = True) -> List[int]:
        slugs = validate_slugs(slugs)
        async with self._connection("resolve_segment_ids") as conn:
            return await self._resolve(conn, slugs, active_only)

    async def assign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        user_ids = validate_user_ids(user_ids)
        slugs = validate_slugs(slugs)
        if not user_ids or not slugs:
            return 0

        async with self._transaction("assign_segments") as conn:
            segment_ids = await self._resolve(conn, slugs, active_only=True, lock=True)
            # Pairs that already hold an active row hit the partial unique
            # index and are skipped without aborting the batch.
            status = await conn.execute("""
                INSERT INTO user_segment_relation (user_id, segment_id, is_active, date_assigned)
                SELECT u.user_id, s.segment_id, TRUE, $3
                FROM unnest($1::bigint[]) WITH ORDINALITY AS u (user_id, u_ord)
                CROSS JOIN unnest($2::bigint[]) WITH ORDINALITY AS s (segment_id, s_ord)
                ORDER BY u.u_ord, s.s_ord
                ON CONFLICT (user_id, segment_id) WHERE is_active DO NOTHING
            """, user_ids, segment_ids, self.clock())

        created = self._rows_affected(status)
        self.logger.info("Segments assigned", users=len(user_ids), segment_slugs=slugs, created=created)
        return created

    async def unassign_segments(self, user_ids: Sequence[int], slugs: Sequence[str]) -> int:
        user_ids = validate_user_ids(user_ids)
        slugs = validate_slugs(slugs)
        if not user_ids or not slugs:
            return 0

        async with self._transaction("unassign_segments") as conn:
            segment_ids = await self._resolve(conn, slugs, active_only=False)
            status = await conn.execute("""
                UPDATE user_segment_relation
                SET is_active = FALSE, date_unassigned = GREATEST($3, date_assigned)
                WHERE user_id = ANY($1::bigint[])
                  AND segment_id = ANY($2::bigint[])
                  AND is_active
            """, user_ids, segment_ids, self.clock())

        closed = self._rows_affected(status)
        self.logger.info("Segments unassigned", users=len(user_ids), segment_slugs=slugs, closed=closed)
        return closed

    async def get_user_segments(self, user_id: int) -> UserSegments:
        validate_user_id(user_id)
        async with self._connection("get_user_segments") as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT s.slug
                FROM user_segment_relation r
                JOIN segments s ON s.id = r.segment_id
                WHERE r.user_id = $1 AND r.is_active AND s.is_active
                ORDER BY s.slug
            """, user_id)
        return UserSegments(user_id=user_id, segments=[row["slug"] for row in rows])

    async def get_active_users_amount(self) -> int:
        async with self._connection("get_active_users_amount") as conn:
            count = await conn.fetchval("SELECT COUNT(id) FROM users WHERE is_active")
        return count or 0

    async def get_active_user_ids_without_segment(self, slug: str) -> List[int]:
        validate_slug(slug)
        async with self._connection("get_active_user_ids_without_segment") as conn:
            segment_id = (await self._resolve(conn, [slug], active_only=True))[0]
            rows = await conn.fetch("""
                SELECT u.id
                FROM users u
                WHERE u.is_active AND NOT EXISTS (
                    SELECT 1 FROM user_segment_relation r
                    WHERE r.user_id = u.id AND r.segment_id = $1 AND r.is_active
                )
                ORDER BY u.id
            """, segment_id)
        return [row["id"] for row in rows]

    async def get_user_relations(
        self,
        user_id: int,
        window: Optional[DateWindow] = None,
    ) -> List[RelationRecord]:
        validate_user_id(user_id)
        query = """
            SELECT r.user_id, s.slug, r.date_assigned, r.date_unassigned
            FROM user_segment_relation r
            JOIN segments s ON s.id = r.segment_id
            WHERE r.user_id = $1
        """
        args = [user_id]
        if window is not None:
            query += """
              AND ((r.date_assigned >= $2 AND r.date_assigned < $3)
                   OR (r.date_unassigned >= $2 AND r.date_unassigned < $3))
            """
            args.extend([window.start, window.end])
        query += " ORDER BY r.id"

        async with self._connection("get_user_relations") as conn:
            rows = await conn.fetch(query, *args)

        return [
            RelationRecord(
                user_id=row["user_id"],
                segment_slug=row["slug"],
                date_assigned=row["date_assigned"],
                date_unassigned=row["date_unassigned"],
            )
            for row in rows
        ]

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except DRIVER_ERRORS:
            return False
