"""BACpypes3 BACnet client wrapper for meter register reads.

Each meter register is exposed by the device as an ``analog-input`` object
whose instance number is the (element-specific) register number. Reads go
through a degrade path that real meters need:

1. connectivity check (optional)
2. ReadPropertyMultiple in batches, halving the batch on timeout (optional)
3. one ReadProperty per register (optional)

A device that answers nothing at all is reported offline.
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from bacpypes3.apdu import ErrorRejectAbortNack
from bacpypes3.basetypes import ErrorType, PropertyIdentifier
from bacpypes3.ipv4.app import NormalApplication
from bacpypes3.local.device import DeviceObject
from bacpypes3.pdu import Address
from bacpypes3.primitivedata import ObjectIdentifier

from ..errors import DeviceOfflineError
from ..utils.timeutil import utcnow

logger = logging.getLogger(__name__)

REGISTER_OBJECT_TYPE = "analog-input"
PRESENT_VALUE = "presentValue"

# Wildcard device instance: any device answers reads addressed to it
WILDCARD_DEVICE_INSTANCE = 4194303

TIMEOUT_ERROR = "timeout"


@dataclass(frozen=True)
class ReadPoint:
    """One register to read."""

    register_number: int
    field_name: str


@dataclass
class PointResult:
    """Outcome of reading one register."""

    register_number: int
    field_name: str
    value: Optional[Any] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and self.value is not None


@dataclass
class BatchSizeState:
    """Adaptive batch size for one device address."""

    current: int
    consecutive_timeouts: int = 0
    consecutive_successes: int = 0
    last_successful_size: Optional[int] = None
    updated_at: Optional[datetime] = None


class BACnetClient:
    """BACpypes3 client wrapper for meter reads."""

    def __init__(
        self,
        local_ip: str,
        port: int = 47808,
        device_id: int = 3001234,
        connectivity_timeout_ms: int = 2000,
        batch_read_timeout_ms: int = 5000,
        sequential_read_timeout_ms: int = 3000,
        batch_size: int = 0,
        min_batch_size: int = 1,
        enable_connectivity_check: bool = True,
        enable_batch_read: bool = True,
        enable_adaptive_batching: bool = True,
        enable_sequential_fallback: bool = True,
        app: Optional[Any] = None,
    ):
        self.local_ip = local_ip
        self.port = port
        self.device_id = device_id
        self.app = app

        # Per-operation timeouts
        self.connectivity_timeout_ms = connectivity_timeout_ms
        self.batch_read_timeout_ms = batch_read_timeout_ms
        self.sequential_read_timeout_ms = sequential_read_timeout_ms

        # Degrade path toggles
        self.batch_size = batch_size
        self.min_batch_size = max(1, min_batch_size)
        self.enable_connectivity_check = enable_connectivity_check
        self.enable_batch_read = enable_batch_read
        self.enable_adaptive_batching = enable_adaptive_batching
        self.enable_sequential_fallback = enable_sequential_fallback

        # State
        self.batch_states: Dict[str, BatchSizeState] = {}
        self.total_timeouts = 0
        self.timeouts_by_device: Dict[str, int] = {}
        self.last_timeout_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings) -> "BACnetClient":
        return cls(
            local_ip=settings.local_ip,
            port=settings.port,
            device_id=settings.device_id,
            connectivity_timeout_ms=settings.connectivity_timeout_ms,
            batch_read_timeout_ms=settings.batch_read_timeout_ms,
            sequential_read_timeout_ms=settings.sequential_read_timeout_ms,
            batch_size=settings.batch_size,
            min_batch_size=settings.min_batch_size,
            enable_connectivity_check=settings.enable_connectivity_check,
            enable_batch_read=settings.enable_batch_read,
            enable_adaptive_batching=settings.enable_adaptive_batching,
            enable_sequential_fallback=settings.enable_sequential_fallback,
        )

    def initialize(self) -> bool:
        """Initialize BACpypes3 application (needs a running event loop)."""
        if self.app is not None:
            return True
        try:
            device = DeviceObject(
                objectIdentifier=ObjectIdentifier(f"device,{self.device_id}"),
                objectName="MeterSync",
                vendorIdentifier=842,  # Servisys
                maxApduLengthAccepted=1024,
                segmentationSupported="segmentedBoth",
            )

            local_address = Address(f"{self.local_ip}:{self.port}")
            self.app = NormalApplication(device, local_address)

            logger.info(f"BACpypes3 initialized on {local_address}")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize BACnet: {e}")
            return False

    def close(self):
        """Close the BACnet application."""
        if self.app:
            try:
                self.app.close()
            except Exception as e:
                logger.warning(f"Error closing BACnet app: {e}")
            self.app = None

    # -- connectivity ----------------------------------------------------

    async def check_connectivity(self, device_ip: str, device_port: int) -> bool:
        """Ask the device for its object name with a short timeout."""
        if not self.app:
            logger.error("BACnet app not initialized")
            return False

        address = Address(f"{device_ip}:{device_port}")
        try:
            await asyncio.wait_for(
                self.app.read_property(
                    address,
                    ObjectIdentifier(f"device,{WILDCARD_DEVICE_INSTANCE}"),
                    PropertyIdentifier("objectName"),
                ),
                timeout=self.connectivity_timeout_ms / 1000.0,
            )
            return True
        except asyncio.TimeoutError:
            self._record_timeout(f"{device_ip}:{device_port}")
            logger.warning(
                f"Connectivity check timed out for {device_ip}:{device_port} "
                f"after {self.connectivity_timeout_ms}ms"
            )
            return False
        except ErrorRejectAbortNack as e:
            # The device answered, even if only to refuse
            logger.debug(f"Connectivity check for {device_ip}:{device_port} answered with {e}")
            return True
        except Exception as e:
            logger.warning(f"Connectivity check failed for {device_ip}:{device_port}: {e}")
            return False

    # -- reads -------------------------------------------------------------

    async def read_points(
        self, device_ip: str, device_port: int, points: Sequence[ReadPoint]
    ) -> List[PointResult]:
        """Read registers from one device, returning one result per point.

        Raises DeviceOfflineError when the connectivity check fails or the
        device answers none of the reads.
        """
        if not points:
            return []
        if not self.app:
            raise DeviceOfflineError(f"{device_ip}:{device_port}", "BACnet app not initialized")

        key = f"{device_ip}:{device_port}"
        address = Address(key)

        if self.enable_connectivity_check:
            if not await self.check_connectivity(device_ip, device_port):
                raise DeviceOfflineError(key, "no response to connectivity check")

        results: Dict[int, PointResult] = {}
        remaining = list(points)
        answered = False

        if self.enable_batch_read:
            remaining, answered = await self._read_in_batches(key, address, remaining, results)

        if remaining and self.enable_sequential_fallback:
            logger.info(f"Sequential fallback for {len(remaining)} registers on {key}")
            for point in remaining:
                result = await self._read_single(key, address, point)
                if not result.timed_out:
                    answered = True
                results[point.register_number] = result
            remaining = []

        for point in remaining:
            results[point.register_number] = PointResult(
                register_number=point.register_number,
                field_name=point.field_name,
                error="not read: batch reads exhausted and sequential fallback disabled",
            )

        if not answered:
            raise DeviceOfflineError(key, "no response to any read")

        return [results[p.register_number] for p in points]

    async def _read_in_batches(self, key, address, points, results):
        state = self._batch_state(key, len(points))
        size = min(state.current, len(points))
        remaining = list(points)
        answered = False

        while remaining:
            chunk = remaining[:size]
            try:
                chunk_results = await asyncio.wait_for(
                    self._read_multiple(address, chunk),
                    timeout=self.batch_read_timeout_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                self._record_timeout(key)
                state.consecutive_timeouts += 1
                state.consecutive_successes = 0
                state.updated_at = utcnow()

                if self.enable_adaptive_batching and size > self.min_batch_size:
                    new_size = max(self.min_batch_size, size // 2)
                    logger.warning(
                        f"Batch read of {len(chunk)} registers timed out on {key} "
                        f"after {self.batch_read_timeout_ms}ms, reducing batch size {size} -> {new_size}"
                    )
                    size = new_size
                    state.current = new_size
                    continue

                logger.warning(
                    f"Batch read of {len(chunk)} registers timed out on {key}, "
                    f"batch reads exhausted at size {size}"
                )
                break
            except ErrorRejectAbortNack as e:
                answered = True
                logger.warning(f"Device {key} rejected ReadPropertyMultiple: {e}")
                break
            except Exception as e:
                logger.warning(f"Batch read error on {key}: {e}")
                break

            answered = True
            state.consecutive_successes += 1
            state.consecutive_timeouts = 0
            state.last_successful_size = size
            state.updated_at = utcnow()
            for result in chunk_results:
                results[result.register_number] = result
            remaining = remaining[len(chunk):]

        return remaining, answered

    async def _read_multiple(self, address: Address, points: Sequence[ReadPoint]) -> List[PointResult]:
        parameter_list = []
        for point in points:
            parameter_list.append(ObjectIdentifier(f"{REGISTER_OBJECT_TYPE},{point.register_number}"))
            parameter_list.append([PropertyIdentifier(PRESENT_VALUE)])

        response = await self.app.read_property_multiple(address, parameter_list)

        values: Dict[int, Any] = {}
        for object_identifier, _property_identifier, _array_index, property_value in response or []:
            values[object_identifier[1]] = property_value

        results = []
        for point in points:
            if point.register_number not in values:
                results.append(PointResult(point.register_number, point.field_name, error="missing from response"))
                continue
            raw = values[point.register_number]
            if isinstance(raw, ErrorType):
                results.append(PointResult(point.register_number, point.field_name, error=f"device error: {raw}"))
                continue
            value = self._extract_value(raw)
            if value is None:
                results.append(PointResult(point.register_number, point.field_name, error="empty response"))
            else:
                results.append(PointResult(point.register_number, point.field_name, value=value))
        return results

    async def _read_single(self, key: str, address: Address, point: ReadPoint) -> PointResult:
        object_id = ObjectIdentifier(f"{REGISTER_OBJECT_TYPE},{point.register_number}")
        try:
            raw = await asyncio.wait_for(
                self.app.read_property(address, object_id, PropertyIdentifier(PRESENT_VALUE)),
                timeout=self.sequential_read_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            self._record_timeout(key)
            logger.debug(f"Timeout reading register {point.register_number} from {key}")
            return PointResult(point.register_number, point.field_name, error=TIMEOUT_ERROR, timed_out=True)
        except ErrorRejectAbortNack as e:
            logger.debug(f"BACnet error reading register {point.register_number} from {key}: {e}")
            return PointResult(point.register_number, point.field_name, error=f"device error: {e}")
        except Exception as e:
            logger.debug(f"Error reading register {point.register_number} from {key}: {e}")
            return PointResult(point.register_number, point.field_name, error=str(e))

        value = self._extract_value(raw)
        if value is None:
            return PointResult(point.register_number, point.field_name, error="empty response")
        return PointResult(point.register_number, point.field_name, value=value)

    # -- adaptive state & metrics -------------------------------------------

    def _batch_state(self, key: str, point_count: int) -> BatchSizeState:
        state = self.batch_states.get(key)
        if state is None:
            initial = self.batch_size if self.batch_size > 0 else point_count
            state = BatchSizeState(current=max(self.min_batch_size, initial), updated_at=utcnow())
            self.batch_states[key] = state
        return state

    def _record_timeout(self, key: str):
        self.total_timeouts += 1
        self.timeouts_by_device[key] = self.timeouts_by_device.get(key, 0) + 1
        self.last_timeout_at = utcnow()

    def known_devices(self) -> Set[str]:
        """Addresses ("ip:port") with adaptive state or timeout history."""
        return set(self.batch_states) | set(self.timeouts_by_device)

    def reset_device(self, key: str):
        """Forget adaptive state for a device (e.g. after reconfiguration)."""
        self.batch_states.pop(key, None)
        self.timeouts_by_device.pop(key, None)
        logger.info(f"Reset adaptive read state for {key}")

    def metrics(self) -> dict:
        return {
            "total_timeouts": self.total_timeouts,
            "timeouts_by_device": dict(self.timeouts_by_device),
            "last_timeout_at": self.last_timeout_at.isoformat() if self.last_timeout_at else None,
            "batch_sizes": {
                key: {
                    "current": state.current,
                    "last_successful": state.last_successful_size,
                    "consecutive_timeouts": state.consecutive_timeouts,
                    "consecutive_successes": state.consecutive_successes,
                }
                for key, state in self.batch_states.items()
            },
        }

    # -- value decoding ------------------------------------------------------

    def _extract_value(self, bacnet_value) -> Optional[Any]:
        """Extract readable value from BACnet property value."""
        try:
            if isinstance(bacnet_value, (int, float, bool)):
                return bacnet_value

            if hasattr(bacnet_value, 'value'):
                extracted = bacnet_value.value
                if isinstance(extracted, (int, float, bool, str)):
                    return extracted

            if hasattr(bacnet_value, 'tagList') and bacnet_value.tagList:
                return self._extract_from_taglist(bacnet_value.tagList)

            value_clean = str(bacnet_value).strip()
            try:
                return float(value_clean)
            except ValueError:
                return None

        except Exception as e:
            logger.error(f"Value extraction error: {e}")
            return None

    def _extract_from_taglist(self, tag_list) -> Optional[Any]:
        """Extract value from BACpypes3 tag list."""
        tag_list = list(tag_list)

        data_tag = None
        for tag in tag_list:
            if hasattr(tag, 'tag_data') and tag.tag_data and len(tag.tag_data) > 0:
                data_tag = tag
                break

        if not data_tag and tag_list:
            data_tag = tag_list[0]

        if data_tag and hasattr(data_tag, 'tag_data') and hasattr(data_tag, 'tag_number'):
            tag_number = data_tag.tag_number
            tag_data = data_tag.tag_data

            if not tag_data:
                return None

            if tag_number == 1:  # Boolean
                return bool(tag_data[0])
            elif tag_number == 2:  # Unsigned
                return int.from_bytes(tag_data, byteorder='big')
            elif tag_number == 3:  # Integer
                return int.from_bytes(tag_data, byteorder='big', signed=True)
            elif tag_number == 4:  # Real
                return struct.unpack('>f', tag_data)[0]
            elif tag_number == 5:  # Double
                return struct.unpack('>d', tag_data)[0]
            elif tag_number == 9:  # Enumerated
                return int.from_bytes(tag_data, byteorder='big')

        return None
