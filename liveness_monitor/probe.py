from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    url: str
    success: bool
    elapsed_ms: int
    status_code: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def outcome(self) -> str:
        if self.success:
            return "success"
        return "http_failure" if self.status_code is not None else "transport_failure"


def _safe_url(url: str) -> str:
    """
    Strip query strings so tokens passed to the health endpoint never reach logs or chat.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def _elapsed_ms(started: float) -> int:
    return max(0, int(round((time.perf_counter() - started) * 1000.0)))


def _describe_exception(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


async def probe_url(
    client: httpx.AsyncClient,
    url: str,
    *,
    accept_header: str,
    timeout_seconds: float,
) -> ProbeResult:
    """One bounded GET against the health endpoint. Never raises."""
    safe_url = _safe_url(url)
    started = time.perf_counter()
    try:
        resp = await asyncio.wait_for(
            client.get(
                url,
                headers={"Accept": accept_header},
                follow_redirects=True,
                timeout=timeout_seconds,
            ),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        return ProbeResult(
            url=safe_url,
            success=False,
            elapsed_ms=_elapsed_ms(started),
            error=f"timed out after {timeout_seconds:g}s",
        )
    except Exception as e:
        return ProbeResult(
            url=safe_url,
            success=False,
            elapsed_ms=_elapsed_ms(started),
            error=_describe_exception(e),
        )

    elapsed_ms = _elapsed_ms(started)
    success = 200 <= resp.status_code < 300
    return ProbeResult(
        url=safe_url,
        success=success,
        elapsed_ms=elapsed_ms,
        status_code=resp.status_code,
        error=None if success else f"HTTP {resp.status_code} {resp.reason_phrase}".strip(),
    )


class HealthProbe:
    """Probes the configured health endpoint with a shared client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        accept_header: str = "text/html",
        timeout_seconds: float = 100.0,
    ):
        self.client = client
        self.url = url
        self.accept_header = accept_header
        self.timeout_seconds = float(timeout_seconds)

    async def probe(self) -> ProbeResult:
        result = await probe_url(
            self.client,
            self.url,
            accept_header=self.accept_header,
            timeout_seconds=self.timeout_seconds,
        )
        if result.success:
            logger.debug("Probe passed", url=result.url, elapsed_ms=result.elapsed_ms)
        else:
            logger.warning(
                "Probe failed",
                url=result.url,
                status_code=result.status_code,
                elapsed_ms=result.elapsed_ms,
                error=result.error,
            )
        return result
