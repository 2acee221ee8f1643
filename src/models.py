"""
Resource Model - Records, status blocks and conditions.

A resource record carries the author's desired state (spec), a set-once
deletion marker, the finalizers that must be cleared before the record can be
purged, and a controller-owned status block.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ConditionStatus(Enum):
    """Tri-state value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A single typed status entry, one per condition type."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "last_transition_time": _format_time(self.last_transition_time),
            "observed_generation": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data.get("status", ConditionStatus.UNKNOWN.value),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=_parse_time(data.get("last_transition_time")),
            observed_generation=data.get("observed_generation", 0),
        )


@dataclass
class StatusBlock:
    """
    Controller-owned part of a resource record.

    Holds the latest condition per type, the last successfully applied spec
    (the declaration cache), attributes observed in the target environment
    and the failure history used for backoff.
    """

    conditions: Dict[str, Condition] = field(default_factory=dict)
    last_applied_spec: Optional[Dict[str, Any]] = None
    last_applied_time: Optional[datetime] = None
    observed_attributes: Dict[str, Any] = field(default_factory=dict)
    observed_generation: int = 0
    consecutive_failures: int = 0
    last_failure_time: Optional[datetime] = None
    # Delay armed by the last failure
    retry_delay: Optional[float] = None

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        return self.conditions.get(condition_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conditions": [c.to_dict() for c in self.conditions.values()],
            "last_applied_spec": copy.deepcopy(self.last_applied_spec),
            "last_applied_time": _format_time(self.last_applied_time),
            "observed_attributes": copy.deepcopy(self.observed_attributes),
            "observed_generation": self.observed_generation,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_time": _format_time(self.last_failure_time),
            "retry_delay": self.retry_delay,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StatusBlock":
        if not data:
            return cls()
        conditions = {}
        for entry in data.get("conditions") or []:
            condition = Condition.from_dict(entry)
            conditions[condition.type] = condition
        return cls(
            conditions=conditions,
            last_applied_spec=copy.deepcopy(data.get("last_applied_spec")),
            last_applied_time=_parse_time(data.get("last_applied_time")),
            observed_attributes=copy.deepcopy(data.get("observed_attributes") or {}),
            observed_generation=data.get("observed_generation", 0),
            consecutive_failures=data.get("consecutive_failures", 0),
            last_failure_time=_parse_time(data.get("last_failure_time")),
            retry_delay=data.get("retry_delay"),
        )

    def copy(self) -> "StatusBlock":
        return StatusBlock.from_dict(self.to_dict())


@dataclass
class ResourceRecord:
    """A resource as stored, including its status block."""

    id: int
    namespace: str
    name: str
    kind: str
    spec: Dict[str, Any] = field(default_factory=dict)
    generation: int = 1
    resource_version: int = 1
    finalizers: List[str] = field(default_factory=list)
    deleted_at: Optional[datetime] = None
    status: StatusBlock = field(default_factory=StatusBlock)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_deleting(self) -> bool:
        return self.deleted_at is not None

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        """Plain-JSON view used by the API and the event stream."""
        return {
            "id": self.id,
            "namespace": self.namespace,
            "name": self.name,
            "kind": self.kind,
            "spec": copy.deepcopy(self.spec),
            "generation": self.generation,
            "resource_version": self.resource_version,
            "finalizers": list(self.finalizers),
            "deleted_at": _format_time(self.deleted_at),
            "status": self.status.to_dict(),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
        }


@dataclass
class ResourceKind:
    """
    Static configuration of one resource kind.

    Each kind is reconciled by exactly one target adapter and owns one
    finalizer token.
    """

    name: str
    adapter: str
    schema: Dict[str, Any] = field(default_factory=dict)
    immutable_fields: List[str] = field(default_factory=list)
    deletion_protection_field: Optional[str] = None
    status_enabled: bool = True
    adapter_config: Dict[str, Any] = field(default_factory=dict)
    finalizer: Optional[str] = None
    webhooks: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not self.finalizer:
            self.finalizer = f"{self.adapter}.reconcile/{self.name.lower()}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceKind":
        if "name" not in data or "adapter" not in data:
            raise ValueError("Resource kind requires 'name' and 'adapter'")
        return cls(
            name=data["name"],
            adapter=data["adapter"],
            schema=data.get("schema") or {},
            immutable_fields=list(data.get("immutable_fields") or []),
            deletion_protection_field=data.get("deletion_protection_field"),
            status_enabled=data.get("status_enabled", True),
            adapter_config=data.get("adapter_config") or {},
            finalizer=data.get("finalizer"),
            webhooks=list(data.get("webhooks") or []),
        )
