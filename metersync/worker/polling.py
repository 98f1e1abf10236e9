"""BACnet meter collection agent."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..errors import DeviceOfflineError
from ..utils.timeutil import utcnow
from .bacnet_client import BACnetClient
from .batcher import InsertionMetrics, ReadingBatcher
from .cache import CachedElement, RegisterCache
from .collector import MeterCollector
from .scheduling import ScheduledTask

logger = logging.getLogger(__name__)

# Accumulated timeouts before a device is reported as slow
SLOW_METER_THRESHOLD = 3


@dataclass
class OfflineMeterStatus:
    meter_element_id: int
    meter_id: int
    element: str
    address: str
    offline_since: datetime
    backoff_until: datetime
    consecutive_failures: int = 1
    last_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "meter_element_id": self.meter_element_id,
            "meter_id": self.meter_id,
            "element": self.element,
            "address": self.address,
            "offline_since": self.offline_since.isoformat(),
            "backoff_until": self.backoff_until.isoformat(),
            "consecutive_failures": self.consecutive_failures,
            "last_reason": self.last_reason,
        }


@dataclass
class CycleResult:
    cycle_number: int
    started_at: datetime
    duration_ms: float = 0.0
    elements_total: int = 0
    elements_read: int = 0
    elements_in_backoff: int = 0
    elements_offline: int = 0
    elements_failed: int = 0
    readings_collected: int = 0
    read_errors: int = 0
    timeouts: int = 0
    unmapped: int = 0
    insertion: Optional[InsertionMetrics] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "cycle_number": self.cycle_number,
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
            "elements_total": self.elements_total,
            "elements_read": self.elements_read,
            "elements_in_backoff": self.elements_in_backoff,
            "elements_offline": self.elements_offline,
            "elements_failed": self.elements_failed,
            "readings_collected": self.readings_collected,
            "read_errors": self.read_errors,
            "timeouts": self.timeouts,
            "unmapped": self.unmapped,
            "insertion": self.insertion.to_dict() if self.insertion else None,
            "errors": list(self.errors),
        }


class CollectionAgent:
    """Periodically reads every active meter element and persists readings."""

    def __init__(
        self,
        cache: RegisterCache,
        client: BACnetClient,
        batcher: ReadingBatcher,
        collection_interval: int = 60,
        offline_backoff: int = 300,
        clock: Callable[[], datetime] = utcnow,
        collector: Optional[MeterCollector] = None,
    ):
        self.cache = cache
        self.client = client
        self.batcher = batcher
        self.collector = collector or MeterCollector(cache, client)
        self.offline_backoff = timedelta(seconds=offline_backoff)
        self.clock = clock
        self.task = ScheduledTask("collection", self.run_cycle, collection_interval)

        # State
        self.offline_elements: Dict[int, OfflineMeterStatus] = {}
        self.cycles_run = 0
        self.total_readings_collected = 0
        self.total_errors = 0
        self.last_cycle: Optional[CycleResult] = None

    async def start(self):
        """Initialize the BACnet client and start the collection schedule."""
        logger.info("=== Collection Agent Starting ===")
        if not self.client.initialize():
            raise RuntimeError("Failed to initialize BACnet client")
        self.task.start()
        logger.info("=== Collection Agent Started ===")

    async def stop(self):
        """Stop scheduling, wait for the running cycle and flush leftovers."""
        await self.task.stop()
        if self.batcher.pending_count:
            logger.info(f"Flushing {self.batcher.pending_count} cached readings before shutdown")
            await asyncio.to_thread(self.batcher.flush_batch)
        self.client.close()
        logger.info("Collection agent stopped")

    async def trigger(self) -> bool:
        """Run a cycle now unless one is already executing."""
        return await self.task.trigger()

    # -- backoff -----------------------------------------------------------

    def is_in_backoff(self, meter_element_id: int, now: Optional[datetime] = None) -> bool:
        status = self.offline_elements.get(meter_element_id)
        if status is None:
            return False
        return (now or self.clock()) < status.backoff_until

    def _mark_offline(self, element: CachedElement, reason: str):
        now = self.clock()
        status = self.offline_elements.get(element.meter_element_id)
        address = f"{element.meter.ip}:{element.meter.port}"
        if status is None:
            status = OfflineMeterStatus(
                meter_element_id=element.meter_element_id,
                meter_id=element.meter_id,
                element=element.element,
                address=address,
                offline_since=now,
                backoff_until=now + self.offline_backoff,
                last_reason=reason,
            )
            self.offline_elements[element.meter_element_id] = status
        else:
            status.consecutive_failures += 1
            status.backoff_until = now + self.offline_backoff
            status.last_reason = reason

        logger.warning(
            f"Meter {element.meter_id} element {element.element} ({address}) offline: {reason}; "
            f"backing off until {status.backoff_until.isoformat()} "
            f"({status.consecutive_failures} consecutive failures)"
        )

    def _clear_offline(self, element: CachedElement):
        status = self.offline_elements.pop(element.meter_element_id, None)
        if status is not None:
            logger.info(
                f"Meter {element.meter_id} element {element.element} back online "
                f"after {status.consecutive_failures} failed attempts"
            )

    # -- cycle -------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Collect from every element not in backoff, then flush the batcher."""
        started = time.monotonic()
        self.cycles_run += 1
        result = CycleResult(cycle_number=self.cycles_run, started_at=self.clock())

        elements = self.cache.get_elements()
        result.elements_total = len(elements)
        if not self.cache.is_loaded:
            logger.warning("Register cache not loaded, nothing to collect")

        for element in elements:
            if self.is_in_backoff(element.meter_element_id):
                result.elements_in_backoff += 1
                logger.debug(
                    f"Meter {element.meter_id} element {element.element} in backoff until "
                    f"{self.offline_elements[element.meter_element_id].backoff_until.isoformat()}"
                )
                continue

            try:
                collected = await self.collector.collect(element, timestamp=self.clock())
            except DeviceOfflineError as e:
                result.elements_offline += 1
                self._mark_offline(element, e.reason)
                continue
            except Exception as e:
                result.elements_failed += 1
                result.errors.append(f"meter {element.meter_id} element {element.element}: {e}")
                logger.error(
                    f"Collection failed for meter {element.meter_id} element {element.element}: {e}",
                    exc_info=True,
                )
                continue

            self._clear_offline(element)
            result.elements_read += 1
            result.readings_collected += len(collected.readings)
            result.read_errors += collected.read_errors
            result.timeouts += collected.timeouts
            result.unmapped += collected.unmapped
            self.batcher.add_readings(collected.readings)

        if self.batcher.pending_count:
            result.insertion = await asyncio.to_thread(self.batcher.flush_batch)

        result.duration_ms = (time.monotonic() - started) * 1000
        self.total_readings_collected += result.readings_collected
        self.total_errors += result.elements_failed + result.read_errors
        self.last_cycle = result

        self._check_slow_meters()
        self._log_cycle(result)
        return result

    def _check_slow_meters(self):
        slow = [
            f"{address} ({count} timeouts)"
            for address, count in self.client.timeouts_by_device.items()
            if count >= SLOW_METER_THRESHOLD
        ]
        if slow:
            logger.warning(
                f"Consistently slow meters detected: {', '.join(slow)}. "
                f"Consider increasing timeout values or reducing batch sizes."
            )

    def _log_cycle(self, result: CycleResult):
        logger.info(f"Collection Cycle #{result.cycle_number}:")
        logger.info(
            f"  Elements: {result.elements_total} ({result.elements_read} read, "
            f"{result.elements_in_backoff} in backoff, {result.elements_offline} offline, "
            f"{result.elements_failed} failed)"
        )
        logger.info(
            f"  Readings: {result.readings_collected} collected, {result.read_errors} read errors, "
            f"{result.unmapped} unmapped"
        )
        if result.insertion:
            logger.info(
                f"  Stored: {result.insertion.inserted} inserted, {result.insertion.failed} failed, "
                f"{result.insertion.skipped} skipped"
            )
        logger.info(f"  Duration: {result.duration_ms:.0f}ms")

    def status(self) -> dict:
        return {
            **self.task.status(),
            "total_readings_collected": self.total_readings_collected,
            "total_errors": self.total_errors,
            "pending_readings": self.batcher.pending_count,
            "offline_meters": [s.to_dict() for s in self.offline_elements.values()],
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "bacnet": self.client.metrics(),
        }
