"""Configuration management for the liveness monitor.

Options are read from a YAML (or JSON) file and overridden by environment variables
carrying the same option names. Nested sections use ``__`` as separator, e.g.
``Zulip__StreamName`` or ``Telegram__ChatIds=123,456``.
"""

from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from liveness_monitor.errors import ConfigError

DEFAULT_CONFIG_PATH = "appsettings.yaml"
CONFIG_PATH_ENV = "LIVENESS_MONITOR_CONFIG"
DEFAULT_ACCEPT_HEADER = "text/html"
POLL_INTERVAL_STEP_SECONDS = 5


class ZulipSettings(BaseModel):
    """Zulip credentials and destinations."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    site: Optional[str] = Field(default=None, alias="Site", description="Zulip server URL")
    email: Optional[str] = Field(default=None, alias="Email", description="Bot email address")
    api_key: Optional[str] = Field(default=None, alias="ApiKey", description="Bot API key")
    zuliprc: Optional[str] = Field(default=None, alias="ZulipRc", description="Explicit zuliprc path")
    stream_name: Optional[str] = Field(default=None, alias="StreamName")
    stream_id: int = Field(default=0, alias="StreamId")
    user_name: Optional[str] = Field(default=None, alias="UserName")
    user_id: int = Field(default=0, alias="UserId")

    @field_validator("stream_id", "user_id", mode="before")
    @classmethod
    def _zero_if_unparseable(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    @property
    def enabled(self) -> bool:
        return bool(self.stream_name or self.user_name or self.stream_id or self.user_id)


class TelegramSettings(BaseModel):
    """Telegram bot token and chat destinations."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    bot_token: Optional[str] = Field(default=None, alias="BotToken")
    chat_ids: list[str] = Field(default_factory=list, alias="ChatIds")
    api_base: str = Field(default="https://api.telegram.org", alias="ApiBase")

    @field_validator("chat_ids", mode="before")
    @classmethod
    def _split_chat_ids(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = str(value).split(",")
        return [str(v).strip() for v in value if str(v).strip()]

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_ids)


class MonitorConfig(BaseModel):
    """Immutable monitor configuration, loaded once at startup."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    service_name: str = Field(alias="WindowsServiceName", description="OS service to restart")
    test_url: str = Field(alias="ServiceTestUrl", description="Health endpoint to probe")
    process_name: Optional[str] = Field(default=None, alias="ProcessName")
    accept_header: str = Field(default=DEFAULT_ACCEPT_HEADER, alias="ServiceAcceptHeader")
    service_stop_delay_seconds: int = Field(default=10, ge=0, alias="ServiceStopDelaySeconds")
    poll_interval_seconds: int = Field(default=30, ge=1, alias="PollIntervalSeconds")
    http_timeout_seconds: int = Field(default=100, ge=1, alias="HttpTimeoutSeconds")
    failures_until_restart: int = Field(default=1, ge=1, alias="FailuresUntilRestart")
    kill_process: bool = Field(default=False, alias="KillProcess")
    kill_on_stop_pending: bool = Field(
        default=True,
        alias="KillOnStopPending",
        description="Run the process kill-check while the service reports StopPending",
    )
    host_id: str = Field(default_factory=socket.gethostname, alias="HostId")
    notification_timeout_seconds: float = Field(default=15.0, gt=0, alias="NotificationTimeoutSeconds")
    edit_repeated_status: bool = Field(default=False, alias="EditRepeatedStatus")
    zulip: ZulipSettings = Field(default_factory=ZulipSettings, alias="Zulip")
    telegram: TelegramSettings = Field(default_factory=TelegramSettings, alias="Telegram")

    @field_validator("service_name", "test_url", mode="before")
    @classmethod
    def _required_text(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or not str(value).strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return str(value).strip()

    @field_validator("process_name", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    @field_validator("accept_header", mode="before")
    @classmethod
    def _default_accept(cls, value: Any) -> Any:
        if value is None or not str(value).strip():
            return DEFAULT_ACCEPT_HEADER
        return value

    @field_validator("poll_interval_seconds")
    @classmethod
    def _poll_covers_stop_delay(cls, value: int, info: ValidationInfo) -> int:
        # A poll must never fire while we are still waiting on a stop.
        stop_delay_seconds = info.data.get("service_stop_delay_seconds")
        if stop_delay_seconds is None:
            return value
        while value < stop_delay_seconds:
            value += POLL_INTERVAL_STEP_SECONDS
        return value

    @field_validator("kill_process")
    @classmethod
    def _kill_needs_process_name(cls, value: bool, info: ValidationInfo) -> bool:
        return bool(value and info.data.get("process_name"))

    @field_validator("zulip", "telegram", mode="before")
    @classmethod
    def _empty_section(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def service_stop_delay_ms(self) -> int:
        return self.service_stop_delay_seconds * 1000


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, field in MonitorConfig.model_fields.items():
        alias = field.alias or name
        annotation = field.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            nested: dict[str, Any] = {}
            for sub_name, sub_field in annotation.model_fields.items():
                sub_alias = sub_field.alias or sub_name
                value = environ.get(f"{alias}__{sub_alias}")
                if value is not None:
                    nested[sub_alias] = value
            if nested:
                overrides[alias] = nested
            continue
        value = environ.get(alias)
        if value is not None:
            overrides[alias] = value
    return overrides


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        if err.get("type") == "missing":
            problems.append(f"{loc} is required")
        else:
            problems.append(f"{loc}: {err.get('msg')}")
    return "; ".join(problems)


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> MonitorConfig:
    """Load configuration from file, then apply environment overrides.

    A missing file is not an error on its own; the required options can come from the
    environment. Raises ConfigError when required options are missing or invalid.
    """
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)
    path = Path(config_path)

    data: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid config file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

    for key, value in _env_overrides(environ).items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value

    try:
        return MonitorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_describe_validation_error(exc)) from exc
