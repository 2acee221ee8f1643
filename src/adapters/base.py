"""
Target Adapter Base - Abstract interface to the environment being driven.

An adapter exposes item-level create/update/delete/observe operations
against one external system. The reconciler expresses all convergence and
cleanup in terms of these operations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict


class AdapterError(Exception):
    """
    Raised when an operation against the target environment fails.

    Errors are transient unless tagged permanent; transient errors are
    retried with backoff.
    """

    def __init__(self, message: str, permanent: bool = False):
        self.message = message
        self.permanent = permanent
        super().__init__(message)


class PermanentAdapterError(AdapterError):
    """Failure that will not go away without a change to the desired state."""

    def __init__(self, message: str):
        super().__init__(message, permanent=True)


@dataclass
class AdapterContext:
    """Context passed to adapter operations."""

    resource_id: int
    namespace: str
    name: str
    kind: str
    generation: int
    spec: Dict[str, Any] = field(default_factory=dict)


class TargetAdapter(ABC):
    """
    Abstract base class for target-environment adapters.

    create() and delete() must be idempotent: creating an item that already
    exists converges it, deleting an item that is already gone succeeds. The
    reconciler relies on this to resume after a crash mid-pass.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this adapter (e.g., 'http')."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the adapter with configuration.

        Called once at startup before any other operation.

        Args:
            config: Adapter-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def create(self, ctx: AdapterContext, key: str, desired: Any) -> None:
        """
        Create one item in the target environment.

        Args:
            ctx: The resource being reconciled
            key: Item name (a top-level key of the spec)
            desired: Desired configuration of the item
        """
        pass

    @abstractmethod
    async def update(
        self, ctx: AdapterContext, key: str, previous: Any, desired: Any
    ) -> None:
        """
        Change an existing item from its last applied to its desired state.

        Args:
            ctx: The resource being reconciled
            key: Item name
            previous: Last applied configuration of the item
            desired: Desired configuration of the item
        """
        pass

    @abstractmethod
    async def delete(self, ctx: AdapterContext, key: str, previous: Any) -> None:
        """
        Remove one item from the target environment.

        Args:
            ctx: The resource being reconciled
            key: Item name
            previous: Last known configuration of the item
        """
        pass

    @abstractmethod
    async def observe(self, ctx: AdapterContext) -> Dict[str, Any]:
        """
        Report observable attributes of the resource (URLs, identifiers, ...).

        Returns:
            Freeform attribute map stored in the status block.
        """
        pass

    async def detect_drift(self, ctx: AdapterContext, desired: Dict[str, Any]) -> bool:
        """
        Check whether the environment no longer matches the desired state.

        Optional; the default reports no drift.
        """
        return False

    async def close(self) -> None:
        """Release connections and other resources."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load adapter-specific configuration from environment variables.

        Override in subclasses; values are merged under the kind's
        adapter_config.
        """
        return {}
