"""Per meter-element register collection."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..utils.registers import base_register_number, element_register_number
from ..utils.timeutil import utcnow
from .bacnet_client import BACnetClient, ReadPoint
from .batcher import PendingReading
from .cache import CachedElement, RegisterCache

logger = logging.getLogger(__name__)

DEFAULT_UNIT = "unknown"


@dataclass
class CollectionResult:
    """Readings and read statistics for one meter element."""

    element_key: str
    readings: List[PendingReading] = field(default_factory=list)
    points_requested: int = 0
    read_errors: int = 0
    timeouts: int = 0
    unmapped: int = 0
    duration_ms: float = 0.0


class MeterCollector:
    """Reads one meter element's configured registers into pending readings."""

    def __init__(self, cache: RegisterCache, client: BACnetClient):
        self.cache = cache
        self.client = client

    def build_points(self, element: CachedElement) -> List[ReadPoint]:
        """Element-specific read points for every register of the element's device."""
        points = []
        for register in self.cache.get_device_registers(element.meter.device_id):
            points.append(
                ReadPoint(
                    register_number=element_register_number(register.register, element.element),
                    field_name=register.field_name,
                )
            )
        return points

    async def collect(self, element: CachedElement, timestamp: Optional[datetime] = None) -> CollectionResult:
        """Read the element and map results to named readings.

        DeviceOfflineError from the client propagates so the caller can
        apply backoff; individual register failures are counted and logged.
        """
        result = CollectionResult(element_key=element.key)
        points = self.build_points(element)
        result.points_requested = len(points)

        if not points:
            logger.warning(
                f"Meter {element.meter_id} element {element.element}: "
                f"no registers configured for device {element.meter.device_id}"
            )
            return result

        started = time.monotonic()
        point_results = await self.client.read_points(element.meter.ip, element.meter.port, points)
        result.duration_ms = (time.monotonic() - started) * 1000

        if timestamp is None:
            timestamp = utcnow()

        for point_result in point_results:
            if not point_result.success:
                result.read_errors += 1
                if point_result.timed_out:
                    result.timeouts += 1
                logger.debug(
                    f"Meter {element.meter_id} element {element.element}: register "
                    f"{point_result.register_number} not read ({point_result.error})"
                )
                continue

            base = base_register_number(point_result.register_number, element.element)
            register = self.cache.get_register_by_number(base)
            if register is None:
                result.unmapped += 1
                logger.warning(
                    f"Meter {element.meter_id} element {element.element}: register "
                    f"{point_result.register_number} (base {base}) has no field name, dropping reading"
                )
                continue

            try:
                value = float(point_result.value)
            except (TypeError, ValueError):
                result.read_errors += 1
                logger.warning(
                    f"Meter {element.meter_id} element {element.element}: non-numeric value "
                    f"{point_result.value!r} for {register.field_name}"
                )
                continue

            result.readings.append(
                PendingReading(
                    meter_id=element.meter_id,
                    meter_element_id=element.meter_element_id,
                    timestamp=timestamp,
                    value=value,
                    unit=register.unit or DEFAULT_UNIT,
                    data_point=register.field_name,
                )
            )

        logger.debug(
            f"Meter {element.meter_id} element {element.element}: {len(result.readings)}/"
            f"{len(points)} registers read in {result.duration_ms:.0f}ms"
        )
        return result
