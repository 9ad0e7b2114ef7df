"""Exceptions shared across the liveness monitor."""


class LivenessMonitorError(Exception):
    """Base class for monitor errors."""


class ConfigError(LivenessMonitorError):
    """Configuration is missing or invalid. Fatal at startup."""


class UnsupportedPlatformError(LivenessMonitorError):
    """No service controller exists for the host platform."""


class ServiceControlError(LivenessMonitorError):
    """A query/stop/start/kill call against the OS failed."""

    def __init__(self, action: str, target: str, detail: str):
        super().__init__(f"{action} {target} failed: {detail}")
        self.action = action
        self.target = target
        self.detail = detail


class NotificationError(LivenessMonitorError):
    """A chat backend rejected or failed to deliver a message."""
