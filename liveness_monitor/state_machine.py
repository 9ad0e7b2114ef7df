"""Liveness state machine: probe, count failures, restart the service.

``step()`` runs one evaluation of the current state. The driver never calls it
concurrently, so state, counter and recent results need no locking.
"""

from __future__ import annotations

import asyncio
import platform
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import structlog

from liveness_monitor import __version__
from liveness_monitor.config import MonitorConfig
from liveness_monitor.notifications.events import EventKind
from liveness_monitor.notifications.gate import NotificationGate
from liveness_monitor.probe import ProbeResult
from liveness_monitor.service_control import (
    MANUAL_STATES,
    ServiceController,
    ServiceStatus,
    process_name_matches,
)

logger = structlog.get_logger(__name__)

RECENT_RESULTS_MAX = 10

# A failure of one of these holds the next step back to the poll interval.
CONTROL_ACTIONS = frozenset({"stop", "start", "kill"})


class MonitorState(str, Enum):
    INITIALIZING = "initializing"
    OK = "ok"
    WAITING_FOR_FIRST_SUCCESS = "waiting_for_first_success"
    REQUEST_STOP = "request_stop"
    WAITING_FOR_SERVICE_TO_STOP = "waiting_for_service_to_stop"
    REQUEST_START = "request_start"


class Probe(Protocol):
    async def probe(self) -> ProbeResult: ...


@dataclass
class FailureCounter:
    threshold: int
    current: int = 0

    def reset(self) -> None:
        self.current = 0

    def increment(self) -> int:
        self.current += 1
        return self.current

    @property
    def reached(self) -> bool:
        return self.current >= self.threshold


class LivenessStateMachine:
    def __init__(
        self,
        config: MonitorConfig,
        probe: Probe,
        controller: ServiceController,
        gate: NotificationGate,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.probe = probe
        self.controller = controller
        self.gate = gate
        self.sleep = sleep
        self.state = MonitorState.INITIALIZING
        self.failures = FailureCounter(threshold=config.failures_until_restart)
        self.recent: deque[dict[str, Any]] = deque(maxlen=RECENT_RESULTS_MAX)
        self._process_killed = False
        self._control_failed = False
        self.log = logger.bind(service=config.service_name)
        self._handlers: dict[MonitorState, Callable[[], Awaitable[None]]] = {
            MonitorState.INITIALIZING: self._initializing,
            MonitorState.WAITING_FOR_FIRST_SUCCESS: self._waiting_for_first_success,
            MonitorState.OK: self._ok,
            MonitorState.REQUEST_STOP: self._request_stop,
            MonitorState.WAITING_FOR_SERVICE_TO_STOP: self._waiting_for_service_to_stop,
            MonitorState.REQUEST_START: self._request_start,
        }

    async def step(self) -> bool:
        """Evaluate the current state once.

        Returns True when the next step should follow at once: the state changed and no
        stop/start/kill call failed along the way. A failed control call is retried at the
        poll interval.
        """
        previous = self.state
        self._control_failed = False
        await self._handlers[previous]()
        changed = self.state != previous
        if changed:
            self.log.info("State transition", previous=previous.value, current=self.state.value)
        return changed and not self._control_failed

    def _payload(self, **extra: Any) -> dict[str, Any]:
        return {"service": self.config.service_name, "url": self.config.test_url, **extra}

    async def _call(self, action: str, func: Callable[..., Any], *args: Any) -> tuple[bool, Any]:
        try:
            return True, await asyncio.to_thread(func, *args)
        except Exception as e:
            self.log.warning("Service control call failed", action=action, error=f"{type(e).__name__}: {e}")
            if action in CONTROL_ACTIONS:
                self._control_failed = True
            return False, None

    async def _query(self) -> ServiceStatus | None:
        ok, status = await self._call("query", self.controller.query, self.config.service_name)
        return status if ok else None

    async def _record(self, result: ProbeResult) -> dict[str, Any]:
        process = None
        if self.config.process_name:
            _, process = await self._call("describe", self.controller.describe_process, self.config.process_name)
        entry = {
            "result": result,
            "failure_number": self.failures.current,
            "max_failures": self.failures.threshold,
            "process": process,
        }
        self.recent.append(entry)
        return self._payload(**entry)

    async def _initializing(self) -> None:
        self.failures.reset()
        self.log.info("Monitoring initializing", url=self.config.test_url)
        self.gate.emit(
            EventKind.INITIALIZING,
            self._payload(version=__version__, os=f"{platform.system()} {platform.release()}"),
        )
        self.state = MonitorState.WAITING_FOR_FIRST_SUCCESS

    async def _waiting_for_first_success(self) -> None:
        result = await self.probe.probe()
        if result.success:
            self.failures.reset()
            self.log.info("Monitoring is now active")
            self.gate.emit(EventKind.TEST_PASSED, await self._record(result))
            self.state = MonitorState.OK
            return

        # Cold start: failures here never count toward a restart.
        await self._record(result)
        self.log.info("Waiting for initial success to begin monitoring", url=self.config.test_url)
        self.gate.emit(EventKind.WAITING_FOR_FIRST_SUCCESS, self._payload(error=result.error))

    async def _ok(self) -> None:
        result = await self.probe.probe()
        if result.success:
            self.failures.reset()
            self.gate.emit(EventKind.TEST_PASSED, await self._record(result))
            return

        failures = self.failures.increment()
        self.gate.emit(EventKind.TEST_FAILED, await self._record(result))
        if self.failures.reached:
            self.log.warning(
                "Failure threshold reached, requesting stop",
                failures=failures,
                threshold=self.failures.threshold,
                status_code=result.status_code,
                error=result.error,
            )
            self.state = MonitorState.REQUEST_STOP
        else:
            self.log.warning("Service test failed", failures=failures, threshold=self.failures.threshold)

    def _is_hands_off(self, status: ServiceStatus | None) -> bool:
        if status in MANUAL_STATES:
            self.log.info("Service in manual state, ignoring", status=status.value)
            return True
        if status == ServiceStatus.START_PENDING:
            self.log.info("Service is starting up, will check next loop")
            return True
        return False

    async def _request_stop(self) -> None:
        status = await self._query()
        if status is None or self._is_hands_off(status):
            return

        self.gate.emit(EventKind.STOPPING, self._payload(recent=list(self.recent)))
        self.recent.clear()

        if status == ServiceStatus.RUNNING:
            self.log.warning("Stopping service")
            stopped_ok, _ = await self._call("stop", self.controller.stop, self.config.service_name)
            if stopped_ok:
                await self.sleep(self.config.service_stop_delay_ms / 1000.0)
            status = await self._query()

        if status != ServiceStatus.STOPPED and await self._kill_check(status):
            self._process_killed = True
        self.state = MonitorState.WAITING_FOR_SERVICE_TO_STOP

    async def _waiting_for_service_to_stop(self) -> None:
        status = await self._query()
        if status == ServiceStatus.STOPPED or self._process_killed:
            self._enter_request_start()
            return
        if status is None or self._is_hands_off(status):
            return

        if status == ServiceStatus.RUNNING:
            await self._call("stop", self.controller.stop, self.config.service_name)
        if await self._kill_check(status):
            self._enter_request_start()
            return

        self.log.info("Cannot start service while old process is alive, will check next loop")
        self.gate.emit(EventKind.WAITING_FOR_STOP, self._payload(status=status))

    def _enter_request_start(self) -> None:
        self._process_killed = False
        self.failures.reset()
        self.state = MonitorState.REQUEST_START

    async def _kill_check(self, status: ServiceStatus | None) -> bool:
        """Kill a lingering process when configured to. True when something was killed."""
        if not self.config.kill_process or not self.config.process_name:
            return False
        if status == ServiceStatus.STOP_PENDING and not self.config.kill_on_stop_pending:
            return False
        if status not in (ServiceStatus.RUNNING, ServiceStatus.STOP_PENDING):
            return False

        process_name = self.config.process_name
        ok, names = await self._call("list processes", self.controller.list_processes)
        if not ok:
            return False
        if not any(process_name_matches(name, process_name) for name in names or []):
            return False

        self.log.warning("Found process after stop, killing", process=process_name)
        ok, killed = await self._call("kill", self.controller.kill, process_name)
        if not ok:
            self.log.warning("Failed to kill process, will try next loop", process=process_name)
            return False
        return bool(killed)

    async def _request_start(self) -> None:
        status = await self._query()
        if status is None:
            return
        if status in MANUAL_STATES:
            self.log.info("Service in manual state, ignoring", status=status.value)
            return

        self.gate.emit(EventKind.STARTING, self._payload())
        if status in (ServiceStatus.RUNNING, ServiceStatus.START_PENDING):
            self.log.info("Service already starting", status=status.value)
        else:
            self.log.info("Starting service")
            started_ok, _ = await self._call("start", self.controller.start, self.config.service_name)
            if not started_ok:
                return

        self.failures.reset()
        self.state = MonitorState.WAITING_FOR_FIRST_SUCCESS
