"""
Configuration module for the declarative controller.

Settings come from environment variables; resource kinds come from a YAML
file named by KINDS_FILE.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from models import ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "declarative_controller"
    user: str = "controller"
    password: str = field(default="", repr=False)
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError("DB_PASSWORD environment variable must be set")

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "declarative_controller"),
            user=os.getenv("DB_USER", "controller"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Dispatch, deadline and backoff settings (all times in seconds)."""

    resync_interval: float = 60
    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 300
    drift_interval: float = 0  # 0 = only reconcile on triggers

    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 3600.0
    backoff_jitter_factor: float = 0.0

    def __post_init__(self):
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")
        if not 0 <= self.backoff_jitter_factor < 1:
            raise ValueError("backoff_jitter_factor must be in [0, 1)")

    @classmethod
    def from_env(cls):
        return cls(
            resync_interval=float(os.getenv("RESYNC_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "300")),
            drift_interval=float(os.getenv("DRIFT_INTERVAL", "0")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "3600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        origins = os.getenv("CORS_ORIGINS", "")
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=os.getenv("CORS_ENABLED", "false").lower() == "true",
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()]
            or ["*"],
        )


@dataclass
class KindsConfig:
    """
    Resource kinds and per-adapter configuration overrides.

    The kinds file is YAML with a top-level ``kinds`` list; each entry
    follows ResourceKind.from_dict. ADAPTER_CONFIGS is a JSON object keyed
    by adapter name.
    """

    kinds: List[ResourceKind] = field(default_factory=list)
    adapter_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        kinds: List[ResourceKind] = []
        kinds_file = os.getenv("KINDS_FILE")
        if kinds_file:
            kinds = load_kinds_file(kinds_file)

        adapter_configs: Dict[str, Dict[str, Any]] = {}
        raw = os.getenv("ADAPTER_CONFIGS")
        if raw:
            try:
                adapter_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"ADAPTER_CONFIGS is not valid JSON: {e}") from e

        return cls(kinds=kinds, adapter_configs=adapter_configs)

    def get_adapter_config(self, adapter_name: str) -> Dict[str, Any]:
        return dict(self.adapter_configs.get(adapter_name, {}))


def load_kinds_file(path: str) -> List[ResourceKind]:
    """
    Load resource kinds from a YAML file.

    Raises:
        ValueError: If the file is malformed or names a kind twice
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict) or not isinstance(data.get("kinds", []), list):
        raise ValueError(f"{path}: expected a mapping with a 'kinds' list")

    kinds = [ResourceKind.from_dict(entry) for entry in data.get("kinds", [])]
    names = [k.name for k in kinds]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"{path}: duplicate kinds: {', '.join(duplicates)}")

    logger.info(f"Loaded {len(kinds)} resource kind(s) from {path}")
    return kinds


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    kinds: KindsConfig

    @classmethod
    def from_env(cls):
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            kinds=KindsConfig.from_env(),
        )

    @classmethod
    def default(cls):
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            kinds=KindsConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration from the environment (once)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Forget the loaded configuration (mainly for testing)."""
    global config
    config = None
