"""Meter models - physical meters and their lettered elements."""

from typing import Optional
from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field


class Meter(SQLModel, table=True):
    """Physical meter reached over BACnet/IP."""

    __tablename__ = "meter"

    meter_id: int = Field(primary_key=True)
    tenant_id: int = Field(index=True)
    name: Optional[str] = None
    ip: str  # e.g., "192.168.1.37"
    port: int = Field(default=47808)
    device_id: int = Field(index=True)  # links to device_register
    active: bool = Field(default=True, index=True)


class MeterElement(SQLModel, table=True):
    """Lettered sub-channel (A-Z) sharing its meter's connection."""

    __tablename__ = "meter_element"
    __table_args__ = (
        # one active element per letter; retired rows keep their letter
        Index("ux_meter_element_active_letter", "meter_id", "element", unique=True,
              sqlite_where=text("active = 1"), postgresql_where=text("active")),
    )

    meter_element_id: int = Field(primary_key=True)
    meter_id: int = Field(index=True)
    element: str = Field(max_length=1)
    active: bool = Field(default=True, index=True)
