"""Process composition: builds and runs every MeterSync component."""

import asyncio
import logging
import signal
from typing import Optional, Set

from .config import Settings
from .database import check_connection, connect_with_retry, create_db_engine
from .sync.download import DownloadSyncManager
from .sync.scheduler import SyncScheduler
from .sync.upload import UploadSyncManager
from .worker.bacnet_client import BACnetClient
from .worker.batcher import ReadingBatcher
from .worker.cache import RegisterCache
from .worker.polling import CollectionAgent
from .utils.timeutil import to_display, utcnow

logger = logging.getLogger(__name__)

# Tables whose changes invalidate the register/meter cache
CACHE_TABLES = {"meter", "meter_element", "register", "device_register"}


class MeterSyncService:
    """Collection agent plus sync scheduler sharing two connection pools."""

    def __init__(self, settings: Settings, client: Optional[BACnetClient] = None,
                 local_engine=None, remote_engine=None):
        self.settings = settings

        self.local_engine = local_engine or create_db_engine(
            settings.local_db.url, settings.local_db.pool_size, name="local"
        )
        self.remote_engine = remote_engine or create_db_engine(
            settings.remote_db.url, settings.remote_db.pool_size, name="remote"
        )

        self.cache = RegisterCache(self.local_engine)
        self.client = client or BACnetClient.from_settings(settings.bacnet)
        self.batcher = ReadingBatcher(self.local_engine)
        self.agent = CollectionAgent(
            self.cache,
            self.client,
            self.batcher,
            collection_interval=settings.collection_interval,
            offline_backoff=settings.offline_backoff,
        )

        self.upload_manager = UploadSyncManager(self.local_engine, self.remote_engine)
        self.download_manager = DownloadSyncManager(
            self.local_engine,
            self.remote_engine,
            settings.tenant_id,
            on_config_changed=self.handle_config_changed,
        )
        self.sync_scheduler = SyncScheduler(
            self.upload_manager,
            self.download_manager,
            upload_interval=settings.upload_interval,
            download_interval=settings.download_interval,
        )

        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

    def handle_config_changed(self, tables: Set[str]):
        """Reload the cache when the download touched configuration it holds."""
        touched = tables & CACHE_TABLES
        if not touched:
            return
        logger.info(f"Configuration changed ({', '.join(sorted(touched))}), reloading cache")
        self.cache.reload()
        if "meter" in touched:
            self._forget_retired_addresses()

    def _forget_retired_addresses(self):
        """Drop adaptive read state for addresses no active meter uses."""
        current = {f"{meter.ip}:{meter.port}" for meter in self.cache.snapshot.meters.values()}
        for key in sorted(self.client.known_devices() - current):
            self.client.reset_device(key)

    async def start(self):
        """Connect, load the cache and start both schedules.

        Raises DatabaseConnectionError if the local database stays unreachable.
        """
        logger.info("=== MeterSync Starting ===")
        self.settings.log_summary()

        await asyncio.to_thread(connect_with_retry, self.local_engine, "local")
        await asyncio.to_thread(self.cache.initialize)

        await self.agent.start()
        self.sync_scheduler.start()
        self.running = True
        logger.info("=== MeterSync Started ===")

    async def stop(self):
        """Stop scheduling and wait for in-flight cycles to finish."""
        if not self.running:
            return
        logger.info("Shutting down...")
        self.running = False
        await asyncio.gather(self.agent.stop(), self.sync_scheduler.stop())
        self.local_engine.dispose()
        self.remote_engine.dispose()
        logger.info("MeterSync stopped")

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self):
        """Run until SIGINT/SIGTERM, then stop gracefully."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    def status(self) -> dict:
        local_ok = check_connection(self.local_engine)
        remote_ok = check_connection(self.remote_engine)
        sync_status = self.sync_scheduler.status(include_databases=False)
        return {
            "running": self.running,
            "tenant_id": self.settings.tenant_id,
            "timezone": self.settings.timezone,
            "local_time": to_display(utcnow(), self.settings.timezone),
            "collection": self.agent.status(),
            "upload": sync_status["upload"],
            "download": sync_status["download"],
            "cache": self.cache.stats(),
            "databases": {
                "local": "connected" if local_ok else "disconnected",
                "remote": "connected" if remote_ok else "disconnected",
            },
        }
