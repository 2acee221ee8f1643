"""
Database Manager - PostgreSQL storage for resource records.

Stores resources (spec, deletion marker, finalizers, status block) and the
reconciliation history. Every write bumps resource_version; controller
writes pass the version they read and fail with ConflictError when the
record has moved on.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from models import ResourceRecord, StatusBlock

logger = logging.getLogger(__name__)


class ConflictError(Exception):
    """Raised when a write is based on a stale read of a resource."""

    def __init__(self, resource_id: int, message: str):
        self.resource_id = resource_id
        self.message = message
        super().__init__(message)


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Author-facing methods ====================

    async def create_resource(
        self,
        namespace: str,
        name: str,
        kind: str,
        spec: Optional[Dict[str, Any]] = None,
        finalizers: Optional[List[str]] = None,
    ) -> int:
        """
        Create a new resource.

        Args:
            namespace: Resource namespace
            name: Resource name, unique per (namespace, kind)
            kind: Resource kind name
            spec: Desired state
            finalizers: Initial finalizers (controllers add their own)

        Returns:
            The new resource ID
        """
        async with self.pool.acquire() as conn:
            resource_id = await conn.fetchval(
                """
                INSERT INTO resources (namespace, name, kind, spec, finalizers, status)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id
                """,
                namespace,
                name,
                kind,
                json.dumps(spec or {}),
                json.dumps(finalizers or []),
                json.dumps(StatusBlock().to_dict()),
            )

            logger.info(
                f"Created resource {kind}/{namespace}/{name} with ID {resource_id}"
            )
            return resource_id

    async def update_resource_spec(
        self,
        resource_id: int,
        spec: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Replace a resource's desired state and bump its generation.

        Returns:
            The new generation

        Raises:
            ConflictError: If the resource is missing or at another version
            ValueError: If the resource is being deleted
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT deleted_at, resource_version FROM resources "
                    "WHERE id = $1 FOR UPDATE",
                    resource_id,
                )
                if row is None:
                    raise ConflictError(
                        resource_id, f"Resource {resource_id} not found"
                    )
                if row["deleted_at"] is not None:
                    raise ValueError(f"Resource {resource_id} is being deleted")
                if (
                    expected_version is not None
                    and row["resource_version"] != expected_version
                ):
                    raise ConflictError(
                        resource_id,
                        f"Resource {resource_id} is at version "
                        f"{row['resource_version']}, expected {expected_version}",
                    )

                generation = await conn.fetchval(
                    """
                    UPDATE resources
                    SET spec = $1,
                        generation = generation + 1,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE id = $2
                    RETURNING generation
                    """,
                    json.dumps(spec),
                    resource_id,
                )

        logger.info(f"Updated resource {resource_id} to generation {generation}")
        return generation

    async def delete_resource(self, resource_id: int) -> bool:
        """
        Request deletion of a resource.

        Sets the deletion marker (once; later requests keep the original
        timestamp). A resource without finalizers is purged right away.

        Returns:
            True if the resource was purged, False if it now waits on finalizers

        Raises:
            ConflictError: If the resource does not exist
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                marked = await conn.fetchval(
                    """
                    UPDATE resources
                    SET resource_version = CASE
                            WHEN deleted_at IS NULL THEN resource_version + 1
                            ELSE resource_version
                        END,
                        deleted_at = COALESCE(deleted_at, NOW()),
                        updated_at = NOW()
                    WHERE id = $1
                    RETURNING id
                    """,
                    resource_id,
                )
                if marked is None:
                    raise ConflictError(
                        resource_id, f"Resource {resource_id} not found"
                    )

                purged = await self._purge_if_finalized(conn, resource_id)

        if not purged:
            logger.info(f"Marked resource {resource_id} for deletion")
        return purged

    # ==================== Read methods ====================

    async def get_resource(self, resource_id: int) -> Optional[ResourceRecord]:
        """Get a resource by ID, including resources being deleted."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM resources WHERE id = $1",
                resource_id,
            )
            if not row:
                return None

            return self._parse_resource_row(row)

    async def get_resource_by_name(
        self, namespace: str, kind: str, name: str
    ) -> Optional[ResourceRecord]:
        """Get a resource by namespace, kind and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM resources
                WHERE namespace = $1 AND kind = $2 AND name = $3
                """,
                namespace,
                kind,
                name,
            )
            if not row:
                return None

            return self._parse_resource_row(row)

    async def list_resources(
        self,
        kind: Optional[str] = None,
        namespace: Optional[str] = None,
        include_deleting: bool = True,
        limit: Optional[int] = None,
    ) -> List[ResourceRecord]:
        """List resources with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM resources WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if not include_deleting:
                query += " AND deleted_at IS NULL"

            query += " ORDER BY id"

            if limit is not None:
                param_count += 1
                query += f" LIMIT ${param_count}"
                params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    # ==================== Controller-facing methods ====================

    async def add_finalizer(
        self,
        resource_id: int,
        finalizer: str,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Add a finalizer to a resource. No-op if it is already present.

        Args:
            resource_id: The resource ID
            finalizer: Finalizer token to add
            expected_version: Version the caller read, or None to skip the check

        Returns:
            The new resource version

        Raises:
            ConflictError: If the resource is missing or at another version
        """
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                UPDATE resources
                SET finalizers = CASE
                        WHEN NOT finalizers @> to_jsonb($2::text)
                        THEN finalizers || to_jsonb($2::text)
                        ELSE finalizers
                    END,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $1
                  AND ($3::integer IS NULL OR resource_version = $3)
                RETURNING resource_version
                """,
                resource_id,
                finalizer,
                expected_version,
            )
            if version is None:
                raise self._conflict(resource_id, expected_version)
            return version

    async def remove_finalizer(
        self,
        resource_id: int,
        finalizer: str,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Remove a finalizer from a resource.

        Storage purges the resource in the same transaction when it is
        marked for deletion and no finalizers remain.

        Returns:
            The new resource version

        Raises:
            ConflictError: If the resource is missing or at another version
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                version = await conn.fetchval(
                    """
                    UPDATE resources
                    SET finalizers = COALESCE(
                            (SELECT jsonb_agg(elem)
                             FROM jsonb_array_elements(finalizers) AS elem
                             WHERE elem #>> '{}' != $2),
                            '[]'::jsonb
                        ),
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE id = $1
                      AND ($3::integer IS NULL OR resource_version = $3)
                    RETURNING resource_version
                    """,
                    resource_id,
                    finalizer,
                    expected_version,
                )
                if version is None:
                    raise self._conflict(resource_id, expected_version)

                await self._purge_if_finalized(conn, resource_id)
                return version

    async def update_status(
        self,
        resource_id: int,
        status: StatusBlock,
        expected_version: int,
    ) -> int:
        """
        Replace the status block of a resource.

        Returns:
            The new resource version

        Raises:
            ConflictError: If the resource is missing or at another version
        """
        async with self.pool.acquire() as conn:
            version = await conn.fetchval(
                """
                UPDATE resources
                SET status = $2,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $1 AND resource_version = $3
                RETURNING resource_version
                """,
                resource_id,
                json.dumps(status.to_dict()),
                expected_version,
            )
            if version is None:
                raise self._conflict(resource_id, expected_version)
            return version

    async def purge_finalized_resources(self) -> int:
        """
        Purge every resource that is marked for deletion and has no finalizers.

        Returns:
            Number of resources purged
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                DELETE FROM resources
                WHERE deleted_at IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """
            )
            if rows:
                logger.info(f"Purged {len(rows)} finalized resources")
            return len(rows)

    async def _purge_if_finalized(
        self, conn: asyncpg.Connection, resource_id: int
    ) -> bool:
        purged = await conn.fetchval(
            """
            DELETE FROM resources
            WHERE id = $1
              AND deleted_at IS NOT NULL
              AND finalizers = '[]'::jsonb
            RETURNING id
            """,
            resource_id,
        )
        if purged:
            logger.info(f"Purged resource {resource_id}")
            return True
        return False

    def _conflict(
        self, resource_id: int, expected_version: Optional[int]
    ) -> ConflictError:
        if expected_version is None:
            return ConflictError(resource_id, f"Resource {resource_id} not found")
        return ConflictError(
            resource_id,
            f"Resource {resource_id} is missing or no longer at "
            f"version {expected_version}",
        )

    # ==================== Reconciliation history ====================

    async def record_reconciliation(
        self,
        resource_id: int,
        generation: int,
        success: bool,
        action: str,
        reason: Optional[str] = None,
        error_message: Optional[str] = None,
        requeue_after: Optional[float] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Record a reconciliation attempt in history."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    resource_id, generation, success, action, reason,
                    error_message, requeue_after, duration_seconds
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                resource_id,
                generation,
                success,
                action,
                reason,
                error_message,
                requeue_after,
                duration_seconds,
            )

    async def get_reconciliation_history(
        self, resource_id: int, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a resource, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE resource_id = $1
                ORDER BY reconcile_time DESC, id DESC
                LIMIT $2
                """,
                resource_id,
                limit,
            )

            return [dict(row) for row in rows]

    def _parse_resource_row(self, row: asyncpg.Record) -> ResourceRecord:
        """
        Convert a resources row into a ResourceRecord.

        asyncpg returns JSONB columns as strings unless a codec is
        registered, so JSON fields are decoded here.
        """
        data = dict(row)
        spec = self._decode_json(data.get("spec")) or {}
        finalizers = self._decode_json(data.get("finalizers")) or []
        status = StatusBlock.from_dict(self._decode_json(data.get("status")))

        return ResourceRecord(
            id=data["id"],
            namespace=data.get("namespace", "default"),
            name=data["name"],
            kind=data["kind"],
            spec=spec,
            generation=data.get("generation", 1),
            resource_version=data.get("resource_version", 1),
            finalizers=list(finalizers),
            deleted_at=data.get("deleted_at"),
            status=status,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    @staticmethod
    def _decode_json(value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value
