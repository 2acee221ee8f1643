"""
Main entry point for the declarative controller.

Builds one adapter, validator, reconciler and admission chain per
configured kind and runs the controller next to the REST API.
"""

import asyncio
import logging
import os
import signal
from typing import Dict, List, Optional

from adapters import TargetAdapter, load_adapter_class
from admission import AdmissionChain
from api import APIServer
from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from models import ResourceKind
from reconciler import Reconciler
from requeue import RequeueScheduler
from validation import Validator

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Wires storage, reconcilers, controller and API together."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.event_bus: Optional[EventBus] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[APIServer] = None
        self.adapters: List[TargetAdapter] = []
        self.reconcilers: Dict[str, Reconciler] = {}
        self.admission: Dict[str, AdmissionChain] = {}
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing declarative controller")

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        await self.db.purge_finalized_resources()

        self.event_bus = EventBus()

        kinds = self.config.kinds.kinds
        if not kinds:
            logger.warning("No resource kinds configured; set KINDS_FILE")

        for kind in kinds:
            await self._setup_kind(kind)

        self.controller = Controller(
            self.db,
            self.reconcilers,
            config=self.config.controller,
            event_bus=self.event_bus,
        )
        self.api = APIServer(
            self.db,
            kinds={k.name: k for k in kinds},
            admission=self.admission,
            event_bus=self.event_bus,
            controller=self.controller,
            config=self.config.api,
        )

        logger.info("All components initialized")

    async def _setup_kind(self, kind: ResourceKind) -> None:
        """Build the adapter, reconciler and admission chain for one kind."""
        adapter_class = load_adapter_class(kind.adapter)
        adapter_config = adapter_class.load_config_from_env()
        adapter_config.update(self.config.kinds.get_adapter_config(kind.adapter))
        adapter_config.update(kind.adapter_config)

        adapter = adapter_class()
        await adapter.initialize(adapter_config)
        self.adapters.append(adapter)

        ctrl = self.config.controller
        validator = Validator.for_kind(kind)
        self.reconcilers[kind.name] = Reconciler(
            self.db,
            kind,
            adapter,
            RequeueScheduler(
                base_delay=ctrl.backoff_base_delay,
                max_delay=ctrl.backoff_max_delay,
                jitter_factor=ctrl.backoff_jitter_factor,
            ),
            validator=validator,
            reconcile_timeout=ctrl.reconcile_timeout,
            drift_interval=ctrl.drift_interval,
        )
        self.admission[kind.name] = AdmissionChain(kind, validator)
        logger.info(
            f"Configured kind {kind.name} (adapter={kind.adapter}, "
            f"finalizer={kind.finalizer})"
        )

    async def start(self):
        """Run until stopped."""
        if self.controller is None:
            await self.initialize()

        self.running = True
        logger.info("Starting declarative controller")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running and self.db is None:
            return
        logger.info("Stopping declarative controller")
        self.running = False

        if self.controller:
            await self.controller.stop()
        if self.api:
            await self.api.stop()

        for adapter in self.adapters:
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"Error closing adapter {adapter.name}: {e}")
        self.adapters.clear()

        if self.db:
            await self.db.close()
            self.db = None

        logger.info("Declarative controller stopped")


async def main():
    """Main entry point."""
    configure_logging()
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
