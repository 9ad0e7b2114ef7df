from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    INITIALIZING = "initializing"
    TEST_PASSED = "test_passed"
    TEST_FAILED = "test_failed"
    STOPPING = "stopping"
    WAITING_FOR_STOP = "waiting_for_stop"
    STARTING = "starting"
    WAITING_FOR_FIRST_SUCCESS = "waiting_for_first_success"


# Minimum minutes between two consecutive messages of the same kind (0 = always send).
DEFAULT_MINUTE_GATES: dict[EventKind, int] = {
    EventKind.INITIALIZING: 0,
    EventKind.STOPPING: 0,
    EventKind.STARTING: 0,
    EventKind.TEST_FAILED: 0,
    EventKind.TEST_PASSED: 60,
    EventKind.WAITING_FOR_STOP: 1,
    EventKind.WAITING_FOR_FIRST_SUCCESS: 1,
}


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
