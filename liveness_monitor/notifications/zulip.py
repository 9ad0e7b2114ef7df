from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from liveness_monitor.config import ZulipSettings
from liveness_monitor.errors import ConfigError, NotificationError

logger = structlog.get_logger(__name__)

ZULIPRC_NAME = "zuliprc"


@dataclass(frozen=True)
class ZulipCredentials:
    site: str
    email: str
    api_key: str


@dataclass(frozen=True)
class ZulipTarget:
    type: str  # 'stream' | 'private'
    to: str | int

    def __str__(self) -> str:
        return f"{self.type}/{self.to}"


def find_zuliprc(starting_dir: str | Path) -> Path | None:
    """
    Walk up from ``starting_dir`` looking for ``zuliprc`` or ``secrets/zuliprc``.
    """
    current = Path(starting_dir).resolve()
    while True:
        for candidate in (current / ZULIPRC_NAME, current / "secrets" / ZULIPRC_NAME):
            if candidate.is_file():
                return candidate
        if current.parent == current:
            return None
        current = current.parent


def _normalize_site(site: str) -> str:
    s = site.strip().rstrip("/")
    if not s.startswith(("http://", "https://")):
        s = f"https://{s}"
    return s


def read_zuliprc(path: str | Path) -> ZulipCredentials:
    parser = configparser.ConfigParser()
    try:
        with open(path, "r", encoding="utf-8") as f:
            parser.read_file(f)
    except (OSError, configparser.Error) as exc:
        raise ConfigError(f"Unreadable zuliprc {path}: {exc}") from exc

    if not parser.has_section("api"):
        raise ConfigError(f"zuliprc {path} has no [api] section")
    api = parser["api"]
    email = (api.get("email") or "").strip()
    key = (api.get("key") or "").strip()
    site = (api.get("site") or "").strip()
    if not (email and key and site):
        raise ConfigError(f"zuliprc {path} must define email, key and site")
    return ZulipCredentials(site=_normalize_site(site), email=email, api_key=key)


def resolve_credentials(settings: ZulipSettings, search_from: str | Path) -> ZulipCredentials | None:
    """Explicit settings first, then an explicit zuliprc, then a discovered one."""
    if settings.site and settings.email and settings.api_key:
        return ZulipCredentials(
            site=_normalize_site(settings.site), email=settings.email, api_key=settings.api_key
        )
    path = Path(settings.zuliprc) if settings.zuliprc else find_zuliprc(search_from)
    if path is None:
        return None
    return read_zuliprc(path)


def targets_from_settings(settings: ZulipSettings) -> list[ZulipTarget]:
    targets: list[ZulipTarget] = []
    if settings.stream_name:
        targets.append(ZulipTarget(type="stream", to=settings.stream_name))
    if settings.user_name:
        targets.append(ZulipTarget(type="private", to=settings.user_name))
    if settings.stream_id:
        targets.append(ZulipTarget(type="stream", to=settings.stream_id))
    if settings.user_id:
        targets.append(ZulipTarget(type="private", to=settings.user_id))
    return targets


class ZulipSink:
    """Zulip REST delivery (``/api/v1/messages``) using HTTP basic auth."""

    name = "zulip"

    def __init__(self, client: httpx.AsyncClient, credentials: ZulipCredentials):
        self.client = client
        self.credentials = credentials

    @property
    def _auth(self) -> tuple[str, str]:
        return (self.credentials.email, self.credentials.api_key)

    async def send_message(self, destination: ZulipTarget, topic: str, text: str) -> int:
        if destination.type == "stream":
            data = {"type": "stream", "to": str(destination.to), "topic": topic or "(no topic)", "content": text}
        else:
            data = {"type": "private", "to": json.dumps([destination.to]), "content": text}

        try:
            resp = await self.client.post(
                f"{self.credentials.site}/api/v1/messages", data=data, auth=self._auth
            )
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NotificationError(f"zulip send to {destination}: {type(e).__name__}: {e}") from e

        if not isinstance(payload, dict) or payload.get("result") != "success":
            msg = payload.get("msg") if isinstance(payload, dict) else None
            raise NotificationError(f"zulip send to {destination} rejected: {msg or resp.status_code}")
        return int(payload.get("id") or 0)

    async def edit_message(self, message_id: int, text: str) -> bool:
        if not message_id:
            return False
        try:
            resp = await self.client.patch(
                f"{self.credentials.site}/api/v1/messages/{message_id}",
                data={"content": text},
                auth=self._auth,
            )
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.info("Zulip edit failed", message_id=message_id, error=f"{type(e).__name__}: {e}")
            return False
        ok = isinstance(payload, dict) and payload.get("result") == "success"
        if not ok:
            logger.info("Zulip edit rejected", message_id=message_id, status_code=resp.status_code)
        return ok
