"""MeterSync - BACnet meter collection and database sync agent."""

__version__ = "2026.10.1"
