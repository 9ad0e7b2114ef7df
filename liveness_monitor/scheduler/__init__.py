"""Scheduler driving the liveness state machine."""

from .driver import FAST_RETRY_SECONDS, MonitorDriver

__all__ = ["FAST_RETRY_SECONDS", "MonitorDriver"]
