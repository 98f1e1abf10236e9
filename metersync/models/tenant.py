"""Tenant model - the organization owning the meters."""

from typing import Optional
from sqlmodel import SQLModel, Field


class Tenant(SQLModel, table=True):
    """Local mirror of the remote tenant record."""

    __tablename__ = "tenant"

    tenant_id: int = Field(primary_key=True)
    name: str
    url: Optional[str] = None
    street: Optional[str] = None
    street2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    active: bool = Field(default=True, index=True)
