"""BACnet meter collection worker for MeterSync."""

from .bacnet_client import BACnetClient, PointResult, ReadPoint
from .batcher import PendingReading, ReadingBatcher
from .cache import RegisterCache
from .collector import MeterCollector
from .polling import CollectionAgent
from .scheduling import ScheduledTask

__all__ = [
    "BACnetClient",
    "PointResult",
    "ReadPoint",
    "PendingReading",
    "ReadingBatcher",
    "RegisterCache",
    "MeterCollector",
    "CollectionAgent",
    "ScheduledTask",
]
