"""In-memory register and meter configuration cache.

The collection path never queries configuration tables directly. It reads
an immutable :class:`CacheSnapshot` that ``reload()`` replaces in a single
assignment once the new snapshot is fully built, so a cycle in flight keeps
seeing the snapshot it started with.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ..models.meter import Meter, MeterElement
from ..models.register import DeviceRegister, Register
from ..utils.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedRegister:
    register_id: int
    register: int
    field_name: str
    unit: Optional[str] = None
    data_type: Optional[str] = None


@dataclass(frozen=True)
class CachedMeter:
    meter_id: int
    name: Optional[str]
    ip: str
    port: int
    device_id: int
    tenant_id: int
    active: bool = True


@dataclass(frozen=True)
class CachedElement:
    """A meter element together with its meter's connection details."""

    meter_element_id: int
    element: str
    meter: CachedMeter

    @property
    def meter_id(self) -> int:
        return self.meter.meter_id

    @property
    def key(self) -> str:
        return f"{self.meter.meter_id}:{self.element}"


@dataclass(frozen=True)
class CacheSnapshot:
    registers_by_id: Dict[int, CachedRegister] = field(default_factory=dict)
    registers_by_number: Dict[int, CachedRegister] = field(default_factory=dict)
    meters: Dict[int, CachedMeter] = field(default_factory=dict)
    elements: Tuple[CachedElement, ...] = ()
    device_registers: Dict[int, Tuple[CachedRegister, ...]] = field(default_factory=dict)
    loaded_at: Optional[datetime] = None


class RegisterCache:
    """Registers, meters, elements and device-register associations."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._snapshot = CacheSnapshot()
        self.reload_count = 0
        self.last_reload_error: Optional[str] = None

    # -- lifecycle -----------------------------------------------------

    def initialize(self):
        """Load every active configuration row. Raises on database errors."""
        snapshot = self._load_snapshot()
        self._snapshot = snapshot
        logger.info(
            f"Cache loaded: {len(snapshot.registers_by_id)} registers, "
            f"{len(snapshot.meters)} meters, {len(snapshot.elements)} elements, "
            f"{len(snapshot.device_registers)} devices"
        )

    def reload(self) -> bool:
        """Rebuild the snapshot; on failure keep serving the previous one."""
        try:
            self.initialize()
        except Exception as e:
            self.last_reload_error = str(e)
            logger.error(f"Cache reload failed, continuing with stale cache: {e}", exc_info=True)
            return False
        self.reload_count += 1
        self.last_reload_error = None
        return True

    def clear(self):
        self._snapshot = CacheSnapshot()

    def _load_snapshot(self) -> CacheSnapshot:
        with Session(self.engine) as session:
            registers = session.exec(
                select(Register).where(Register.active == True)  # noqa: E712
            ).all()
            meters = session.exec(
                select(Meter).where(Meter.active == True).order_by(Meter.meter_id)  # noqa: E712
            ).all()
            elements = session.exec(
                select(MeterElement)
                .where(MeterElement.active == True)  # noqa: E712
                .order_by(MeterElement.meter_id, MeterElement.element)
            ).all()
            associations = session.exec(
                select(DeviceRegister)
                .where(DeviceRegister.active == True)  # noqa: E712
                .order_by(DeviceRegister.device_id, DeviceRegister.register_id)
            ).all()

        registers_by_id: Dict[int, CachedRegister] = {}
        registers_by_number: Dict[int, CachedRegister] = {}
        for row in registers:
            cached = CachedRegister(
                register_id=row.register_id,
                register=row.register,
                field_name=row.field_name,
                unit=row.unit,
                data_type=row.data_type,
            )
            registers_by_id[cached.register_id] = cached
            if cached.register in registers_by_number:
                logger.warning(
                    f"Register number {cached.register} configured twice "
                    f"(ids {registers_by_number[cached.register].register_id}, {cached.register_id})"
                )
            registers_by_number[cached.register] = cached

        cached_meters = {
            m.meter_id: CachedMeter(
                meter_id=m.meter_id,
                name=m.name,
                ip=m.ip,
                port=m.port,
                device_id=m.device_id,
                tenant_id=m.tenant_id,
                active=m.active,
            )
            for m in meters
        }

        cached_elements = []
        for element in elements:
            meter = cached_meters.get(element.meter_id)
            if meter is None:
                continue  # element of an inactive or unknown meter
            cached_elements.append(
                CachedElement(
                    meter_element_id=element.meter_element_id,
                    element=element.element.upper(),
                    meter=meter,
                )
            )

        device_registers: Dict[int, List[CachedRegister]] = {}
        for assoc in associations:
            register = registers_by_id.get(assoc.register_id)
            if register is None:
                logger.warning(
                    f"Device {assoc.device_id} references unknown register {assoc.register_id}, ignoring"
                )
                continue
            device_registers.setdefault(assoc.device_id, []).append(register)

        return CacheSnapshot(
            registers_by_id=registers_by_id,
            registers_by_number=registers_by_number,
            meters=cached_meters,
            elements=tuple(cached_elements),
            device_registers={k: tuple(v) for k, v in device_registers.items()},
            loaded_at=utcnow(),
        )

    # -- lookups (never raise) ------------------------------------------

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    @property
    def is_loaded(self) -> bool:
        return self._snapshot.loaded_at is not None

    @property
    def loaded_at(self) -> Optional[datetime]:
        return self._snapshot.loaded_at

    def get_register(self, register_id: int) -> Optional[CachedRegister]:
        return self._snapshot.registers_by_id.get(register_id)

    def get_register_by_number(self, register_number: int) -> Optional[CachedRegister]:
        return self._snapshot.registers_by_number.get(register_number)

    def get_all_registers(self) -> List[CachedRegister]:
        return list(self._snapshot.registers_by_id.values())

    def get_meter(self, meter_id: int) -> Optional[CachedMeter]:
        return self._snapshot.meters.get(meter_id)

    def get_elements(self) -> List[CachedElement]:
        return list(self._snapshot.elements)

    def get_device_registers(self, device_id: int) -> List[CachedRegister]:
        return list(self._snapshot.device_registers.get(device_id, ()))

    def stats(self) -> dict:
        snapshot = self._snapshot
        return {
            "registers": len(snapshot.registers_by_id),
            "meters": len(snapshot.meters),
            "elements": len(snapshot.elements),
            "devices": len(snapshot.device_registers),
            "loaded_at": snapshot.loaded_at.isoformat() if snapshot.loaded_at else None,
            "reload_count": self.reload_count,
            "last_reload_error": self.last_reload_error,
        }
