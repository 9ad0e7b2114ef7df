from __future__ import annotations

import asyncio
from typing import Any

import pytest

from liveness_monitor.config import MonitorConfig
from liveness_monitor.errors import ServiceControlError
from liveness_monitor.notifications.events import EventKind
from liveness_monitor.notifications.gate import NotificationGate
from liveness_monitor.probe import ProbeResult
from liveness_monitor.scheduler import MonitorDriver
from liveness_monitor.service_control import ServiceController, ServiceStatus, process_name_matches
from liveness_monitor.state_machine import LivenessStateMachine, MonitorState


class FakeProbe:
    def __init__(self, outcomes: list[bool]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def probe(self) -> ProbeResult:
        self.calls += 1
        ok = self.outcomes.pop(0) if self.outcomes else True
        return ProbeResult(
            url="http://svc.local/health",
            success=ok,
            elapsed_ms=7,
            status_code=200 if ok else 503,
            error=None if ok else "HTTP 503 Service Unavailable",
        )


class FakeController(ServiceController):
    def __init__(self, status: ServiceStatus = ServiceStatus.RUNNING) -> None:
        self.status = status
        self.status_after_stop = ServiceStatus.STOPPED
        self.processes: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.query_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.start_error: Exception | None = None
        self.kill_error: Exception | None = None

    def query(self, service_name: str) -> ServiceStatus:
        self.calls.append(("query", service_name))
        if self.query_error:
            raise self.query_error
        return self.status

    def stop(self, service_name: str) -> None:
        self.calls.append(("stop", service_name))
        if self.stop_error:
            raise self.stop_error
        self.status = self.status_after_stop

    def start(self, service_name: str) -> None:
        self.calls.append(("start", service_name))
        if self.start_error:
            raise self.start_error
        self.status = ServiceStatus.RUNNING

    def list_processes(self) -> list[str]:
        self.calls.append(("list", ""))
        return list(self.processes)

    def kill(self, process_name: str) -> int:
        self.calls.append(("kill", process_name))
        if self.kill_error:
            raise self.kill_error
        before = len(self.processes)
        self.processes = [p for p in self.processes if not process_name_matches(p, process_name)]
        return before - len(self.processes)

    def describe_process(self, process_name: str) -> Any:
        return None

    def actions(self) -> list[str]:
        return [action for action, _ in self.calls if action != "query"]


class RecordingGate(NotificationGate):
    def __init__(self) -> None:
        self.now = 1000.0
        super().__init__(clock=lambda: self.now)
        self.events: list[tuple[EventKind, bool, dict[str, Any]]] = []

    def emit(self, kind, payload=None) -> bool:
        delivered = super().emit(kind, payload)
        self.events.append((EventKind(kind), delivered, dict(payload or {})))
        return delivered

    def kinds(self, delivered_only: bool = True) -> list[EventKind]:
        return [kind for kind, delivered, _ in self.events if delivered or not delivered_only]


async def _no_sleep(_: float) -> None:
    return None


def make_machine(
    outcomes: list[bool],
    *,
    threshold: int = 1,
    controller: FakeController | None = None,
    **overrides: Any,
) -> tuple[LivenessStateMachine, FakeController, RecordingGate]:
    config = MonitorConfig(
        service_name="svc",
        test_url="http://svc.local/health",
        failures_until_restart=threshold,
        service_stop_delay_seconds=0,
        **overrides,
    )
    controller = controller or FakeController()
    gate = RecordingGate()
    machine = LivenessStateMachine(config, FakeProbe(outcomes), controller, gate, sleep=_no_sleep)
    return machine, controller, gate


async def _steps(machine: LivenessStateMachine, count: int) -> list[bool]:
    return [await machine.step() for _ in range(count)]


@pytest.mark.asyncio
async def test_initializing_moves_to_waiting_for_first_success() -> None:
    machine, controller, gate = make_machine([])
    assert await machine.step() is True
    assert machine.state == MonitorState.WAITING_FOR_FIRST_SUCCESS
    assert gate.kinds() == [EventKind.INITIALIZING]
    assert controller.calls == []


@pytest.mark.asyncio
async def test_failures_before_first_success_never_count() -> None:
    machine, controller, gate = make_machine([False] * 5, threshold=1)
    await machine.step()
    changed = await _steps(machine, 5)

    assert changed == [False] * 5
    assert machine.state == MonitorState.WAITING_FOR_FIRST_SUCCESS
    assert machine.failures.current == 0
    assert controller.calls == []
    waiting = [delivered for kind, delivered, _ in gate.events if kind == EventKind.WAITING_FOR_FIRST_SUCCESS]
    assert waiting == [True, False, False, False, False]


@pytest.mark.asyncio
async def test_scenario_single_failure_restarts_service() -> None:
    machine, controller, gate = make_machine([True, False, True], threshold=1)

    await machine.step()
    assert await machine.step() is True
    assert machine.state == MonitorState.OK

    assert await machine.step() is True
    assert machine.state == MonitorState.REQUEST_STOP
    assert gate.kinds()[-1] == EventKind.TEST_FAILED
    assert "stop" not in controller.actions()

    assert await machine.step() is True
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert controller.actions() == ["stop"]

    assert await machine.step() is True
    assert machine.state == MonitorState.REQUEST_START
    assert machine.failures.current == 0

    assert await machine.step() is True
    assert machine.state == MonitorState.WAITING_FOR_FIRST_SUCCESS
    assert controller.actions() == ["stop", "start"]

    assert await machine.step() is True
    assert machine.state == MonitorState.OK
    assert gate.kinds() == [
        EventKind.INITIALIZING,
        EventKind.TEST_PASSED,
        EventKind.TEST_FAILED,
        EventKind.STOPPING,
        EventKind.STARTING,
        EventKind.TEST_PASSED,
    ]


@pytest.mark.asyncio
async def test_restart_only_once_counter_reaches_threshold() -> None:
    machine, controller, gate = make_machine([True, False, False, False], threshold=3)
    await _steps(machine, 2)

    counters = []
    states = []
    for _ in range(3):
        await machine.step()
        counters.append(machine.failures.current)
        states.append(machine.state)

    assert counters == [1, 2, 3]
    assert states == [MonitorState.OK, MonitorState.OK, MonitorState.REQUEST_STOP]
    failed_numbers = [p["failure_number"] for kind, _, p in gate.events if kind == EventKind.TEST_FAILED]
    assert failed_numbers == [1, 2, 3]
    assert all(p["max_failures"] == 3 for kind, _, p in gate.events if kind == EventKind.TEST_FAILED)
    assert controller.actions() == []


@pytest.mark.asyncio
async def test_success_resets_failure_counter() -> None:
    machine, _, _ = make_machine([True, False, False, True, False], threshold=3)
    await _steps(machine, 2)

    counters = []
    for _ in range(4):
        await machine.step()
        counters.append(machine.failures.current)

    assert counters == [1, 2, 0, 1]
    assert machine.state == MonitorState.OK


@pytest.mark.asyncio
async def test_healthy_service_stays_ok_without_side_effects() -> None:
    machine, controller, gate = make_machine([True] * 20)
    await machine.step()
    changed = await _steps(machine, 20)

    assert changed[0] is True
    assert changed[1:] == [False] * 19
    assert machine.state == MonitorState.OK
    assert controller.calls == []
    passed = [delivered for kind, delivered, _ in gate.events if kind == EventKind.TEST_PASSED]
    assert passed[0] is True
    assert not any(passed[1:])


@pytest.mark.asyncio
async def test_stop_failure_keeps_waiting_without_duplicate_notifications() -> None:
    controller = FakeController()
    controller.stop_error = ServiceControlError("stop", "svc", "access denied")
    machine, _, gate = make_machine([True, False], controller=controller)

    await _steps(machine, 3)
    assert machine.state == MonitorState.REQUEST_STOP

    # The state moves on, but the failed stop asks for the normal poll delay.
    assert await machine.step() is False
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert gate.kinds()[-1] == EventKind.STOPPING

    assert await machine.step() is False
    assert await machine.step() is False
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP

    waiting = [delivered for kind, delivered, _ in gate.events if kind == EventKind.WAITING_FOR_STOP]
    assert waiting == [True, False]
    assert controller.actions() == ["stop", "stop", "stop"]


@pytest.mark.asyncio
async def test_failed_stop_is_retried_at_poll_interval() -> None:
    controller = FakeController()
    controller.stop_error = ServiceControlError("stop", "svc", "access denied")
    machine, _, _ = make_machine([True, False], controller=controller)
    await _steps(machine, 3)
    assert machine.state == MonitorState.REQUEST_STOP

    driver = MonitorDriver(machine.step, poll_interval_seconds=5.0)
    await driver.start()
    await asyncio.sleep(1.0)
    await driver.stop()

    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert controller.actions() == ["stop"]


@pytest.mark.asyncio
async def test_paused_service_gets_no_side_effects() -> None:
    machine, controller, gate = make_machine([True, False])
    await _steps(machine, 3)
    assert machine.state == MonitorState.REQUEST_STOP

    controller.status = ServiceStatus.PAUSED
    events_before = len(gate.events)
    assert await machine.step() is False
    assert machine.state == MonitorState.REQUEST_STOP
    assert len(gate.events) == events_before
    assert controller.actions() == []


@pytest.mark.asyncio
async def test_paused_while_waiting_for_stop_is_ignored() -> None:
    controller = FakeController()
    controller.status_after_stop = ServiceStatus.STOP_PENDING
    machine, _, gate = make_machine([True, False], controller=controller)
    await _steps(machine, 4)
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP

    controller.status = ServiceStatus.PAUSED
    events_before = len(gate.events)
    actions_before = list(controller.actions())
    assert await machine.step() is False
    assert len(gate.events) == events_before
    assert controller.actions() == actions_before


@pytest.mark.asyncio
async def test_lingering_process_is_killed_when_enabled() -> None:
    controller = FakeController()
    controller.status_after_stop = ServiceStatus.STOP_PENDING
    controller.processes = ["Svc.exe", "explorer.exe"]
    machine, _, _ = make_machine([True, False], controller=controller, process_name="svc", kill_process=True)

    await _steps(machine, 4)
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert ("kill", "svc") in controller.calls
    assert controller.processes == ["explorer.exe"]

    assert await machine.step() is True
    assert machine.state == MonitorState.REQUEST_START


@pytest.mark.asyncio
async def test_stop_pending_waits_when_kill_on_stop_pending_disabled() -> None:
    controller = FakeController()
    controller.status_after_stop = ServiceStatus.STOP_PENDING
    controller.processes = ["svc.exe"]
    machine, _, gate = make_machine(
        [True, False],
        controller=controller,
        process_name="svc",
        kill_process=True,
        kill_on_stop_pending=False,
    )

    await _steps(machine, 5)
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert "kill" not in controller.actions()
    assert gate.kinds()[-1] == EventKind.WAITING_FOR_STOP


@pytest.mark.asyncio
async def test_kill_failure_is_retried_next_tick() -> None:
    controller = FakeController()
    controller.status_after_stop = ServiceStatus.STOP_PENDING
    controller.processes = ["svc.exe"]
    controller.kill_error = ServiceControlError("kill", "svc", "access denied")
    machine, _, _ = make_machine([True, False], controller=controller, process_name="svc", kill_process=True)

    await _steps(machine, 5)
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert controller.actions().count("kill") == 2

    controller.kill_error = None
    assert await machine.step() is True
    assert machine.state == MonitorState.REQUEST_START


@pytest.mark.asyncio
async def test_kill_disabled_without_process_name() -> None:
    machine, _, _ = make_machine([], kill_process=True)
    assert machine.config.kill_process is False


@pytest.mark.asyncio
async def test_start_failure_stays_in_request_start() -> None:
    controller = FakeController()
    controller.start_error = ServiceControlError("start", "svc", "rc=1056")
    machine, _, gate = make_machine([True, False], controller=controller)

    await _steps(machine, 5)
    assert machine.state == MonitorState.REQUEST_START

    assert await machine.step() is False
    assert machine.state == MonitorState.REQUEST_START

    controller.start_error = None
    assert await machine.step() is True
    assert machine.state == MonitorState.WAITING_FOR_FIRST_SUCCESS
    assert controller.actions().count("start") == 2


@pytest.mark.asyncio
async def test_query_failure_makes_no_decision() -> None:
    machine, controller, gate = make_machine([True, False])
    await _steps(machine, 3)

    controller.query_error = ServiceControlError("query", "svc", "rc=1060")
    events_before = len(gate.events)
    assert await machine.step() is False
    assert machine.state == MonitorState.REQUEST_STOP
    assert len(gate.events) == events_before


@pytest.mark.asyncio
async def test_stopping_notification_carries_recent_results() -> None:
    machine, _, gate = make_machine([True, True, False], threshold=1)
    await _steps(machine, 5)

    stopping = [p for kind, _, p in gate.events if kind == EventKind.STOPPING]
    assert len(stopping) == 1
    recent = stopping[0]["recent"]
    assert [entry["result"].success for entry in recent] == [True, True, False]
    assert len(machine.recent) == 0


@pytest.mark.asyncio
async def test_query_failure_while_waiting_for_stop_sends_nothing() -> None:
    controller = FakeController()
    controller.status_after_stop = ServiceStatus.RUNNING
    machine, _, gate = make_machine([True, False], controller=controller)
    await _steps(machine, 4)
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP

    gate.now += 120
    controller.query_error = ServiceControlError("query", "svc", "rc=1060")
    events_before = len(gate.events)
    actions_before = list(controller.actions())

    assert await machine.step() is False
    assert machine.state == MonitorState.WAITING_FOR_SERVICE_TO_STOP
    assert len(gate.events) == events_before
    assert controller.actions() == actions_before
