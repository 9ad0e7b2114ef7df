from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

import structlog

from liveness_monitor.notifications.events import EventKind, NotificationEvent

logger = structlog.get_logger(__name__)

PLACEHOLDER = "?"

_TABLE_HEADER = "| Time | HTTP | ms | Fail | Mem (MB) | Handles | Threads | #Conn |"
_TABLE_RULE = "|---|---|---|---|---|---|---|---|"


def _text(value: Any, default: str = PLACEHOLDER) -> str:
    if value is None:
        return default
    s = str(value).strip()
    return s or default


def _format_ms(value: Any) -> str:
    try:
        if value is None:
            return "n/a"
        return f"{int(round(float(value)))}"
    except (TypeError, ValueError):
        return "n/a"


def _format_time(value: Any) -> str:
    if isinstance(value, datetime):
        return value.astimezone().strftime("%H:%M:%S")
    return _text(value)


def _format_http(result: Any) -> str:
    status_code = getattr(result, "status_code", None)
    error = getattr(result, "error", None)
    if status_code is not None:
        return str(status_code)
    if error:
        return str(error)[:120].replace("|", "/")
    return ""


def _format_process(process: Any) -> tuple[str, str, str, str]:
    if process is None:
        return "", "", "", ""
    mem = getattr(process, "working_set_mb", None)
    handles = getattr(process, "handles", None)
    threads = getattr(process, "threads", None)
    conns = getattr(process, "connections", None)
    return (
        f"{mem:.3f}" if isinstance(mem, (int, float)) else "",
        "" if handles is None else str(handles),
        "" if threads is None else str(threads),
        "" if conns is None else str(conns),
    )


def render_result_row(entry: Mapping[str, Any]) -> str:
    """One table row for a probe outcome plus its failure counter and process snapshot."""
    result = entry.get("result")
    failures = f"{_text(entry.get('failure_number'), '0')}/{_text(entry.get('max_failures'))}"
    mem, handles, threads, conns = _format_process(entry.get("process"))
    cells = [
        _format_time(getattr(result, "timestamp", None)),
        _format_http(result),
        _format_ms(getattr(result, "elapsed_ms", None)),
        failures,
        mem,
        handles,
        threads,
        conns,
    ]
    return "| " + " | ".join(cells) + " |"


def render_results_table(entries: list[Mapping[str, Any]]) -> list[str]:
    lines = [_TABLE_HEADER, _TABLE_RULE]
    for entry in entries:
        if isinstance(entry, Mapping):
            lines.append(render_result_row(entry))
    return lines


def _render_initializing(p: Mapping[str, Any]) -> str:
    lines = [
        f"Monitoring service initializing for {_text(p.get('service'))}",
        f"Test URL: {_text(p.get('url'))}",
    ]
    if p.get("version") or p.get("os"):
        lines.append(f"Caller: liveness-monitor {_text(p.get('version'))} on {_text(p.get('os'))}")
    return "\n".join(lines)


def _render_test_passed(p: Mapping[str, Any]) -> str:
    return "\n".join(["HTTP Test Results:", *render_results_table([p])])


def _render_test_failed(p: Mapping[str, Any]) -> str:
    header = (
        f"⚠️ HTTP test failed for {_text(p.get('service'))} "
        f"({_text(p.get('failure_number'))}/{_text(p.get('max_failures'))})"
    )
    return "\n".join([header, *render_results_table([p])])


def _render_stopping(p: Mapping[str, Any]) -> str:
    recent = p.get("recent") or []
    if not isinstance(recent, list) or not recent:
        return f"🛑 Stopping service {_text(p.get('service'))} due to failures!"
    # Newest first.
    return "\n".join(
        [f"🛑 Stopping service {_text(p.get('service'))}", *render_results_table(list(reversed(recent)))]
    )


def _render_waiting_for_stop(p: Mapping[str, Any]) -> str:
    status = p.get("status")
    suffix = f" (currently {getattr(status, 'value', status)})" if status is not None else ""
    return f"Waiting on service ({_text(p.get('service'))}) to stop{suffix}."


def _render_starting(p: Mapping[str, Any]) -> str:
    return f"Starting service: {_text(p.get('service'))} (may take a few minutes)..."


def _render_waiting_for_first_success(p: Mapping[str, Any]) -> str:
    return (
        f"Waiting on first HTTP success from service: {_text(p.get('service'))} "
        f"(may take a few minutes)..."
    )


_RENDERERS = {
    EventKind.INITIALIZING: _render_initializing,
    EventKind.TEST_PASSED: _render_test_passed,
    EventKind.TEST_FAILED: _render_test_failed,
    EventKind.STOPPING: _render_stopping,
    EventKind.WAITING_FOR_STOP: _render_waiting_for_stop,
    EventKind.STARTING: _render_starting,
    EventKind.WAITING_FOR_FIRST_SUCCESS: _render_waiting_for_first_success,
}


def render_event(event: NotificationEvent) -> str:
    """Human-readable text for an event. Never raises."""
    payload = event.payload if isinstance(event.payload, Mapping) else {}
    renderer = _RENDERERS.get(event.kind)
    try:
        if renderer is None:
            raise KeyError(event.kind)
        return renderer(payload).strip()
    except Exception as e:
        logger.warning("Failed to render notification", kind=str(event.kind), error=f"{type(e).__name__}: {e}")
        kind = getattr(event.kind, "value", event.kind)
        return f"{kind}: {_text(payload.get('service'))}"
