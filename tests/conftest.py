"""Pytest configuration and fixtures."""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from adapters.base import AdapterContext, TargetAdapter
from db import ConflictError
from models import ResourceKind, ResourceRecord, StatusBlock


class FakeClock:
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class InMemoryStore:
    """
    In-memory stand-in for DatabaseManager.

    Mirrors its versioning and purge rules. Reads return copies, so callers
    only see changes made through the store methods.
    """

    def __init__(self):
        self.records: Dict[int, ResourceRecord] = {}
        self.history: List[Dict[str, Any]] = []
        self.status_writes = 0
        self.purged: List[int] = []
        self._next_id = 1

    # Author-facing

    async def create_resource(self, namespace, name, kind, spec=None, finalizers=None):
        for record in self.records.values():
            if (record.namespace, record.kind, record.name) == (namespace, kind, name):
                raise asyncpg.exceptions.UniqueViolationError("duplicate key")
        resource_id = self._next_id
        self._next_id += 1
        self.records[resource_id] = ResourceRecord(
            id=resource_id,
            namespace=namespace,
            name=name,
            kind=kind,
            spec=copy.deepcopy(spec or {}),
            finalizers=list(finalizers or []),
        )
        return resource_id

    async def update_resource_spec(self, resource_id, spec, expected_version=None):
        record = self._check(resource_id, expected_version)
        if record.is_deleting:
            raise ValueError(f"Resource {resource_id} is being deleted")
        record.spec = copy.deepcopy(spec)
        record.generation += 1
        record.resource_version += 1
        return record.generation

    async def delete_resource(self, resource_id):
        record = self._check(resource_id, None)
        if record.deleted_at is None:
            record.deleted_at = datetime.now(timezone.utc)
            record.resource_version += 1
        return self._purge_if_finalized(resource_id)

    # Reads

    async def get_resource(self, resource_id):
        record = self.records.get(resource_id)
        return copy.deepcopy(record) if record else None

    async def get_resource_by_name(self, namespace, kind, name):
        for record in self.records.values():
            if (record.namespace, record.kind, record.name) == (namespace, kind, name):
                return copy.deepcopy(record)
        return None

    async def list_resources(
        self, kind=None, namespace=None, include_deleting=True, limit=None
    ):
        result = [
            copy.deepcopy(r)
            for r in sorted(self.records.values(), key=lambda r: r.id)
            if (kind is None or r.kind == kind)
            and (namespace is None or r.namespace == namespace)
            and (include_deleting or not r.is_deleting)
        ]
        return result[:limit] if limit is not None else result

    # Controller-facing

    async def add_finalizer(self, resource_id, finalizer, expected_version=None):
        record = self._check(resource_id, expected_version)
        if finalizer not in record.finalizers:
            record.finalizers.append(finalizer)
        record.resource_version += 1
        return record.resource_version

    async def remove_finalizer(self, resource_id, finalizer, expected_version=None):
        record = self._check(resource_id, expected_version)
        record.finalizers = [f for f in record.finalizers if f != finalizer]
        record.resource_version += 1
        version = record.resource_version
        self._purge_if_finalized(resource_id)
        return version

    async def update_status(self, resource_id, status, expected_version):
        record = self._check(resource_id, expected_version)
        record.status = StatusBlock.from_dict(status.to_dict())
        record.resource_version += 1
        self.status_writes += 1
        return record.resource_version

    async def purge_finalized_resources(self):
        ids = [
            r.id
            for r in list(self.records.values())
            if r.is_deleting and not r.finalizers
        ]
        for resource_id in ids:
            self._purge_if_finalized(resource_id)
        return len(ids)

    async def record_reconciliation(self, **kwargs):
        self.history.append(kwargs)

    async def get_reconciliation_history(self, resource_id, limit=10):
        rows = [h for h in self.history if h["resource_id"] == resource_id]
        return list(reversed(rows))[:limit]

    # Test helpers

    def touch(self, resource_id: int) -> None:
        """Simulate a concurrent write by someone else."""
        self.records[resource_id].resource_version += 1

    def _check(self, resource_id, expected_version) -> ResourceRecord:
        record = self.records.get(resource_id)
        if record is None:
            raise ConflictError(resource_id, f"Resource {resource_id} not found")
        if expected_version is not None and record.resource_version != expected_version:
            raise ConflictError(resource_id, f"Resource {resource_id} changed")
        return record

    def _purge_if_finalized(self, resource_id) -> bool:
        record = self.records.get(resource_id)
        if record is not None and record.is_deleting and not record.finalizers:
            del self.records[resource_id]
            self.purged.append(resource_id)
            return True
        return False


class FakeAdapter(TargetAdapter):
    """
    Target environment held in memory.

    `environment` maps (namespace, name) to {item key: value}. Set
    `errors[op]` to an exception to make that operation fail.
    """

    def __init__(self):
        self.environment: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.errors: Dict[str, Exception] = {}
        self.drifted = False
        self.delay = 0.0
        self.config: Dict[str, Any] = {}
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    async def initialize(self, config):
        self.config = config

    def items(self, namespace="default", name="site") -> Dict[str, Any]:
        return self.environment.get((namespace, name), {})

    async def _op(self, op: str, ctx: AdapterContext, key: Optional[str] = None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if op in self.errors:
            raise self.errors[op]
        if key is not None:
            self.calls.append((op, key))

    async def create(self, ctx, key, desired):
        await self._op("create", ctx, key)
        self.environment.setdefault((ctx.namespace, ctx.name), {})[key] = desired

    async def update(self, ctx, key, previous, desired):
        await self._op("update", ctx, key)
        self.environment.setdefault((ctx.namespace, ctx.name), {})[key] = desired

    async def delete(self, ctx, key, previous):
        await self._op("delete", ctx, key)
        self.environment.get((ctx.namespace, ctx.name), {}).pop(key, None)

    async def observe(self, ctx):
        await self._op("observe", ctx)
        return {"url": f"https://{ctx.name}.example.com"}

    async def detect_drift(self, ctx, desired):
        return self.drifted

    async def close(self):
        self.closed = True


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def website_kind():
    """Status-aware kind with a schema, an immutable field and protection."""
    return ResourceKind(
        name="Website",
        adapter="fake",
        schema={
            "type": "object",
            "properties": {
                "site": {
                    "type": "object",
                    "required": ["domain"],
                    "properties": {"domain": {"type": "string"}},
                },
                "dns": {"type": "object"},
            },
        },
        immutable_fields=["site"],
        deletion_protection_field="protected",
    )


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    conn.transaction = MagicMock()
    return conn
