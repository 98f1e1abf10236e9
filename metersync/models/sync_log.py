"""Sync log model - one row per completed sync cycle."""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field, Column, DateTime

from ..utils.timeutil import utcnow


class SyncLog(SQLModel, table=True):
    """Append-only record of sync cycle counts and timing."""

    __tablename__ = "sync_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    operation: str = Field(index=True)  # "upload" or "download"
    started_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    inserted: int = Field(default=0)
    updated: int = Field(default=0)
    deleted: int = Field(default=0)
    failed: int = Field(default=0)
    success: bool = Field(default=True)
    message: Optional[str] = None
