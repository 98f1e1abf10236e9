"""Local/remote database synchronization for MeterSync."""

from .download import DownloadSyncManager
from .scheduler import SyncScheduler
from .upload import UploadSyncManager

__all__ = [
    "DownloadSyncManager",
    "SyncScheduler",
    "UploadSyncManager",
]
