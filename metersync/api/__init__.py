"""HTTP status surface for MeterSync."""

from .status import build_server, create_app

__all__ = ["build_server", "create_app"]
