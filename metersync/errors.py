"""Exception types shared across the collection and sync paths."""

from typing import Optional


class MeterSyncError(Exception):
    """Base class for MeterSync errors."""


class ConfigurationError(MeterSyncError):
    """Required configuration is missing or invalid."""


class ScheduleDriftError(ConfigurationError):
    """Configured and effective schedule intervals disagree."""

    def __init__(self, name: str, configured: float, effective: float):
        self.name = name
        self.configured = configured
        self.effective = effective
        super().__init__(
            f"Schedule '{name}' drift: configured interval {configured}s "
            f"but effective interval {effective}s"
        )


class DatabaseConnectionError(MeterSyncError):
    """A database could not be reached."""


class DeviceOfflineError(MeterSyncError):
    """A BACnet device did not answer the connectivity check or any read."""

    def __init__(self, address: str, reason: str):
        self.address = address
        self.reason = reason
        super().__init__(f"Device {address} offline: {reason}")


class RetryExhaustedError(MeterSyncError):
    """An operation kept failing after every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
