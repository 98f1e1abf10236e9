"""Register models - measurement points and device associations."""

from typing import Optional
from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field


class Register(SQLModel, table=True):
    """Named, numbered measurement point."""

    __tablename__ = "register"

    register_id: int = Field(primary_key=True)
    register: int = Field(index=True)  # base register number (element A)
    field_name: str  # e.g., "voltage", "kwh_total"
    unit: Optional[str] = None  # e.g., "V", "kWh"
    data_type: Optional[str] = None  # e.g., "float32"
    active: bool = Field(default=True, index=True)


class DeviceRegister(SQLModel, table=True):
    """Registers a device exposes. Only these are ever read."""

    __tablename__ = "device_register"
    __table_args__ = (
        Index("ux_device_register_active", "device_id", "register_id", unique=True,
              sqlite_where=text("active = 1"), postgresql_where=text("active")),
    )

    device_register_id: int = Field(primary_key=True)
    device_id: int = Field(index=True)
    register_id: int = Field(index=True)
    active: bool = Field(default=True, index=True)
