from __future__ import annotations

import argparse
import asyncio
import os
import signal
from datetime import datetime
from pathlib import Path

import httpx
import structlog

from liveness_monitor.config import MonitorConfig, load_config
from liveness_monitor.errors import ConfigError, UnsupportedPlatformError
from liveness_monitor.logging_config import configure_logging
from liveness_monitor.notifications.gate import Destination, NotificationGate
from liveness_monitor.notifications.telegram import TelegramSink
from liveness_monitor.notifications.zulip import ZulipSink, resolve_credentials, targets_from_settings
from liveness_monitor.probe import HealthProbe
from liveness_monitor.scheduler.driver import MonitorDriver
from liveness_monitor.service_control import ServiceController, create_service_controller
from liveness_monitor.state_machine import LivenessStateMachine

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_UNSUPPORTED_PLATFORM = 3


def build_topic(config: MonitorConfig, started_at: datetime) -> str:
    return f"{config.host_id}: {config.service_name} - {started_at:%Y-%m-%d %H:%M:%S}"


def build_destinations(
    config: MonitorConfig,
    client: httpx.AsyncClient,
    *,
    search_from: str | Path,
) -> list[Destination]:
    destinations: list[Destination] = []

    if config.zulip.enabled:
        try:
            credentials = resolve_credentials(config.zulip, search_from)
        except ConfigError as e:
            logger.warning("Zulip notifications are disabled", error=str(e))
            credentials = None
        if credentials is None:
            logger.warning("No zuliprc found - Zulip notifications are disabled")
        else:
            sink = ZulipSink(client, credentials)
            destinations.extend(Destination(sink, target) for target in targets_from_settings(config.zulip))
    else:
        logger.info("Zulip notifications are disabled")

    if config.telegram.enabled:
        sink = TelegramSink(client, config.telegram.bot_token or "", api_base=config.telegram.api_base)
        destinations.extend(Destination(sink, chat_id) for chat_id in config.telegram.chat_ids)
    else:
        logger.info("Telegram notifications are disabled")

    return destinations


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_monitor(
    config: MonitorConfig,
    controller: ServiceController,
    *,
    once: bool = False,
    stop_event: asyncio.Event | None = None,
) -> int:
    started_at = datetime.now()
    async with httpx.AsyncClient() as probe_client, httpx.AsyncClient(
        timeout=config.notification_timeout_seconds
    ) as notify_client:
        gate = NotificationGate(
            build_destinations(config, notify_client, search_from=os.getcwd()),
            topic=build_topic(config, started_at),
            send_timeout_seconds=config.notification_timeout_seconds,
            edit_repeated_status=config.edit_repeated_status,
        )
        probe = HealthProbe(
            probe_client,
            config.test_url,
            accept_header=config.accept_header,
            timeout_seconds=config.http_timeout_seconds,
        )
        machine = LivenessStateMachine(config, probe, controller, gate)
        driver = MonitorDriver(
            machine.step,
            poll_interval_seconds=config.poll_interval_seconds,
            drain_timeout_seconds=config.http_timeout_seconds + config.service_stop_delay_seconds + 5,
        )

        try:
            if once:
                steps = await driver.run_until_idle()
                logger.info("Single cycle finished", steps=steps, state=machine.state.value)
            else:
                if stop_event is None:
                    stop_event = asyncio.Event()
                    _install_signal_handlers(stop_event)
                await driver.start()
                await stop_event.wait()
                logger.info("Stopping...")
        finally:
            await driver.stop()
            await gate.drain(timeout=config.notification_timeout_seconds)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Restart a service when its health endpoint stops answering")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML/JSON config (default: $LIVENESS_MONITOR_CONFIG or appsettings.yaml)",
    )
    parser.add_argument("--once", action="store_true", help="Run until the first idle step and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        controller = create_service_controller()
    except UnsupportedPlatformError as e:
        logger.error("Unsupported platform", error=str(e))
        return EXIT_UNSUPPORTED_PLATFORM

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        return EXIT_CONFIG_ERROR

    logger.info(
        "Liveness monitor starting",
        service=config.service_name,
        url=config.test_url,
        poll_interval_seconds=config.poll_interval_seconds,
        failures_until_restart=config.failures_until_restart,
        kill_process=config.kill_process,
    )
    return asyncio.run(run_monitor(config, controller, once=args.once))


if __name__ == "__main__":
    raise SystemExit(main())
