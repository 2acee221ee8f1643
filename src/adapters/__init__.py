"""
Target adapters.

Built-in adapters ship with the controller; third-party adapters are
discovered via Python entry points in the 'declarative_controller.adapters'
group.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, Type

from adapters.base import (
    AdapterContext,
    AdapterError,
    PermanentAdapterError,
    TargetAdapter,
)
from adapters.http import HTTPTargetAdapter

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "declarative_controller.adapters"

BUILTIN_ADAPTERS: Dict[str, Type[TargetAdapter]] = {
    "http": HTTPTargetAdapter,
}


def load_adapter_class(name: str) -> Type[TargetAdapter]:
    """
    Resolve an adapter name to its class.

    Built-in adapters take precedence over entry points.

    Raises:
        ValueError: If no adapter with that name is available
    """
    if name in BUILTIN_ADAPTERS:
        return BUILTIN_ADAPTERS[name]

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        if ep.name == name:
            adapter_class = ep.load()
            logger.info(f"Loaded adapter {name} from entry point {ep.value}")
            return adapter_class

    available = ", ".join(sorted(BUILTIN_ADAPTERS)) or "none"
    raise ValueError(f"Unknown adapter: {name}. Available adapters: {available}")


__all__ = [
    "AdapterContext",
    "AdapterError",
    "PermanentAdapterError",
    "TargetAdapter",
    "HTTPTargetAdapter",
    "load_adapter_class",
]
