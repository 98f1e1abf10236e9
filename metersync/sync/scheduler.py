"""Runs upload and download sync cycles on independent schedules."""

import asyncio
import logging
from typing import Optional

from sqlalchemy.engine import Engine

from ..database import check_connection
from ..worker.scheduling import ScheduledTask
from .download import DownloadSyncManager
from .upload import UploadSyncManager

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Owns the start/stop lifecycle of the upload and download tasks.

    Each task has its own single-flight guard, so an upload may run while a
    download is in progress but never alongside another upload.
    """

    def __init__(
        self,
        upload_manager: UploadSyncManager,
        download_manager: DownloadSyncManager,
        upload_interval: int = 300,
        download_interval: int = 3600,
    ):
        self.upload_manager = upload_manager
        self.download_manager = download_manager
        self.upload_task = ScheduledTask("upload", self._run_upload, upload_interval)
        self.download_task = ScheduledTask("download", self._run_download, download_interval)

    @property
    def is_running(self) -> bool:
        return self.upload_task.is_started or self.download_task.is_started

    def start(self):
        logger.info("=== Sync Scheduler Starting ===")
        self.download_task.start()
        self.upload_task.start()
        logger.info(
            f"Upload every {self.upload_task.effective_interval}s, "
            f"download every {self.download_task.effective_interval}s"
        )

    async def stop(self):
        """Stop both schedules, letting in-flight cycles finish."""
        logger.info("Stopping sync scheduler...")
        await asyncio.gather(self.upload_task.stop(), self.download_task.stop())
        logger.info("Sync scheduler stopped")

    async def trigger_upload(self) -> bool:
        return await self.upload_task.trigger()

    async def trigger_download(self) -> bool:
        return await self.download_task.trigger()

    async def _run_upload(self):
        return await asyncio.to_thread(self.upload_manager.sync_readings)

    async def _run_download(self):
        return await asyncio.to_thread(self.download_manager.sync_configuration)

    def status(self, include_databases: bool = True) -> dict:
        status = {
            "running": self.is_running,
            "upload": {**self.upload_task.status(), **self.upload_manager.status()},
            "download": {**self.download_task.status(), **self.download_manager.status()},
        }
        if include_databases:
            status["databases"] = {
                "local": _connection_state(self.upload_manager.local_engine),
                "remote": _connection_state(self.upload_manager.remote_engine),
            }
        return status


def _connection_state(engine: Optional[Engine]) -> str:
    if engine is None:
        return "unconfigured"
    return "connected" if check_connection(engine) else "disconnected"
