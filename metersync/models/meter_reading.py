"""Meter reading model - collected values awaiting upload."""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field, Column, DateTime

from ..utils.timeutil import utcnow


class MeterReading(SQLModel, table=True):
    """One persisted reading. Inserted by the batcher, deleted after upload."""

    __tablename__ = "meter_reading"

    id: Optional[int] = Field(default=None, primary_key=True)
    meter_id: int = Field(index=True)
    meter_element_id: Optional[int] = Field(default=None, index=True)
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
    value: float
    unit: Optional[str] = None
    data_point: str = Field(min_length=1)  # register field_name
    is_synchronized: bool = Field(default=False, index=True)
    retry_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    def to_upload_row(self) -> dict:
        """Column values for the remote copy (remote assigns its own id)."""
        return {
            "meter_id": self.meter_id,
            "meter_element_id": self.meter_element_id,
            "timestamp": self.timestamp,
            "value": self.value,
            "unit": self.unit,
            "data_point": self.data_point,
            "is_synchronized": True,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }
