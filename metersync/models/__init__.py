"""SQLModel database models for MeterSync."""

from .tenant import Tenant
from .meter import Meter, MeterElement
from .register import Register, DeviceRegister
from .meter_reading import MeterReading
from .sync_log import SyncLog

__all__ = [
    "Tenant",
    "Meter",
    "MeterElement",
    "Register",
    "DeviceRegister",
    "MeterReading",
    "SyncLog",
]
