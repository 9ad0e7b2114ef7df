"""OS service lifecycle and process table access.

The state machine only talks to ``ServiceController``. Every failure surfaces as
``ServiceControlError`` so callers have one thing to catch.
"""

from __future__ import annotations

import re
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import psutil
import structlog

from liveness_monitor.errors import ServiceControlError, UnsupportedPlatformError

logger = structlog.get_logger(__name__)


class ServiceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    START_PENDING = "start_pending"
    STOP_PENDING = "stop_pending"
    CONTINUE_PENDING = "continue_pending"
    PAUSE_PENDING = "pause_pending"
    PAUSED = "paused"


# Only reachable by an operator acting on the service by hand.
MANUAL_STATES = frozenset(
    {ServiceStatus.CONTINUE_PENDING, ServiceStatus.PAUSE_PENDING, ServiceStatus.PAUSED}
)


@dataclass(frozen=True)
class ProcessSnapshot:
    pid: int
    working_set_mb: float
    threads: int
    handles: int | None = None
    connections: int | None = None


def process_name_matches(candidate: str | None, wanted: str) -> bool:
    def _norm(name: str) -> str:
        name = name.strip().lower()
        return name[:-4] if name.endswith(".exe") else name

    if not candidate or not wanted:
        return False
    return _norm(candidate) == _norm(wanted)


class ServiceController(ABC):
    """Base controller: process helpers via psutil, service calls in subclasses."""

    command_timeout_seconds = 60.0

    @abstractmethod
    def query(self, service_name: str) -> ServiceStatus:
        ...

    @abstractmethod
    def stop(self, service_name: str) -> None:
        ...

    @abstractmethod
    def start(self, service_name: str) -> None:
        ...

    def list_processes(self) -> list[str]:
        names: list[str] = []
        for proc in psutil.process_iter(["name"]):
            try:
                name = proc.info["name"]
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if name:
                names.append(name)
        return names

    def kill(self, process_name: str) -> int:
        """Kill every process matching ``process_name``. Returns how many were killed."""
        killed = 0
        for proc in psutil.process_iter(["name"]):
            try:
                if not process_name_matches(proc.info["name"], process_name):
                    continue
                proc.kill()
                killed += 1
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                raise ServiceControlError("kill", process_name, f"access denied (pid {exc.pid})") from exc
        return killed

    def describe_process(self, process_name: str) -> ProcessSnapshot | None:
        for proc in psutil.process_iter(["name"]):
            try:
                if not process_name_matches(proc.info["name"], process_name):
                    continue
                with proc.oneshot():
                    rss = proc.memory_info().rss
                    threads = proc.num_threads()
                    handles = proc.num_handles() if hasattr(proc, "num_handles") else None
                    list_connections = getattr(proc, "net_connections", None) or proc.connections
                    try:
                        connections = len(list_connections(kind="tcp"))
                    except psutil.AccessDenied:
                        connections = None
                return ProcessSnapshot(
                    pid=proc.pid,
                    working_set_mb=round(rss / (1024.0 * 1024.0), 3),
                    threads=threads,
                    handles=handles,
                    connections=connections,
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return None

    def _run(self, action: str, target: str, argv: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.command_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise ServiceControlError(action, target, f"timed out after {self.command_timeout_seconds:g}s") from exc
        except OSError as exc:
            raise ServiceControlError(action, target, str(exc)) from exc


_SC_STATE_RE = re.compile(r"STATE\s*:\s*(\d+)")

_SC_STATES = {
    1: ServiceStatus.STOPPED,
    2: ServiceStatus.START_PENDING,
    3: ServiceStatus.STOP_PENDING,
    4: ServiceStatus.RUNNING,
    5: ServiceStatus.CONTINUE_PENDING,
    6: ServiceStatus.PAUSE_PENDING,
    7: ServiceStatus.PAUSED,
}


def parse_sc_query(output: str) -> ServiceStatus | None:
    m = _SC_STATE_RE.search(output or "")
    if not m:
        return None
    return _SC_STATES.get(int(m.group(1)))


class WindowsServiceController(ServiceController):
    """Service Control Manager access through ``sc.exe``."""

    def query(self, service_name: str) -> ServiceStatus:
        proc = self._run("query", service_name, ["sc.exe", "query", service_name])
        status = parse_sc_query(proc.stdout)
        if proc.returncode != 0 or status is None:
            detail = (proc.stdout or proc.stderr or "").strip().splitlines()
            raise ServiceControlError("query", service_name, f"rc={proc.returncode} {' '.join(detail)[:300]}")
        return status

    def stop(self, service_name: str) -> None:
        self._control("stop", service_name)

    def start(self, service_name: str) -> None:
        self._control("start", service_name)

    def _control(self, action: str, service_name: str) -> None:
        proc = self._run(action, service_name, ["sc.exe", action, service_name])
        if proc.returncode != 0:
            detail = " ".join((proc.stdout or proc.stderr or "").split())
            raise ServiceControlError(action, service_name, f"rc={proc.returncode} {detail[:300]}")
        logger.info("Service control issued", action=action, service=service_name)


_SYSTEMD_STATES = {
    "active": ServiceStatus.RUNNING,
    "reloading": ServiceStatus.RUNNING,
    "inactive": ServiceStatus.STOPPED,
    "failed": ServiceStatus.STOPPED,
    "activating": ServiceStatus.START_PENDING,
    "deactivating": ServiceStatus.STOP_PENDING,
}


class SystemdServiceController(ServiceController):
    """systemd unit access through ``systemctl``."""

    def query(self, service_name: str) -> ServiceStatus:
        # is-active exits non-zero for anything but "active"; the printed state is what counts.
        proc = self._run("query", service_name, ["systemctl", "is-active", service_name])
        state = (proc.stdout or "").strip().lower()
        status = _SYSTEMD_STATES.get(state)
        if status is None:
            raise ServiceControlError("query", service_name, f"unknown unit state {state or proc.stderr.strip()!r}")
        return status

    def stop(self, service_name: str) -> None:
        self._control("stop", service_name)

    def start(self, service_name: str) -> None:
        self._control("start", service_name)

    def _control(self, action: str, service_name: str) -> None:
        proc = self._run(action, service_name, ["systemctl", action, "--no-block", service_name])
        if proc.returncode != 0:
            raise ServiceControlError(action, service_name, f"rc={proc.returncode} {(proc.stderr or '').strip()[:300]}")
        logger.info("Service control issued", action=action, service=service_name)


def create_service_controller(platform: str | None = None) -> ServiceController:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return WindowsServiceController()
    if platform.startswith("linux"):
        return SystemdServiceController()
    raise UnsupportedPlatformError(f"Service control is unsupported on {platform}")
