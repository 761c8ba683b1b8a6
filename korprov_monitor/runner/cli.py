from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from rich.text import Text

from korprov_monitor.core.api_client import WorkerAPIClient
from korprov_monitor.core.errors import WorkerAPIError
from korprov_monitor.core.events import EventEmitter, StatusEvent
from korprov_monitor.core.freshness import is_terminal_status
from korprov_monitor.core.health_monitor import ConnectionHealthMonitor
from korprov_monitor.core.models import ConnectionState
from korprov_monitor.core.realtime_bridge import RealtimeEventBridge
from korprov_monitor.core.session import BookingMonitorSession
from korprov_monitor.core.settings_manager import PROJECT_ROOT, SettingsManager
from korprov_monitor.core.worker_socket import WorkerSocketFeed
from korprov_monitor.runner.console import CONNECTION_LABELS, CONNECTION_STYLES, ConsoleDisplay, make_console
from korprov_monitor.utils.logger import generate_trace_id, setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitor a driving test booking job on the automation worker")
    parser.add_argument(
        "--mode",
        choices=["watch", "start", "health"],
        default="watch",
        help="'watch' an existing job, 'start' a new one, or run a single 'health' probe",
    )
    parser.add_argument("--job-id", help="Job ID to watch")
    parser.add_argument("--config", help="Booking configuration file (YAML or JSON) for --mode start")
    parser.add_argument("--user-id", help="Key for the realtime channel (defaults to the job id)")
    parser.add_argument(
        "--env",
        choices=["dev", "prod"],
        default=os.environ.get("ENVIRONMENT", "prod"),
        help="Environment to run in. Defaults to ENVIRONMENT env var or 'prod'",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    if args.mode == "watch" and not args.job_id:
        parser.error("--job-id is required for --mode watch")
    if args.mode == "start" and not args.config:
        parser.error("--config is required for --mode start")

    return args


def load_environment(env: str, root: Path = PROJECT_ROOT) -> Path | None:
    """Load .env (or .env.development for dev) into the process environment."""
    env_file = root / ".env"
    if env == "dev":
        dev_file = root / ".env.development"
        if dev_file.exists():
            env_file = dev_file
        else:
            logger.warning(f"{dev_file} not found, falling back to .env")

    if env_file.exists():
        load_dotenv(env_file, override=True)
        return env_file
    return None


def load_booking_config(path: str | Path) -> dict[str, Any]:
    """Read a booking configuration from a YAML or JSON file."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            config = json.load(f)
        else:
            config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise ValueError(f"Booking config in {path} must be a mapping")
    return config


def build_session(settings: SettingsManager) -> tuple[BookingMonitorSession, ConnectionHealthMonitor]:
    client = WorkerAPIClient(
        api_url=settings.get("worker_api_url") or None,
        api_token=settings.get("worker_api_token") or None,
    )
    emitter = EventEmitter()
    health = ConnectionHealthMonitor(client, emitter=emitter, **settings.health_settings)

    bridge = None
    if settings.realtime_enabled:
        bridge = RealtimeEventBridge(settings.get("supabase_url"), settings.get("supabase_anon_key"))
    else:
        logger.info("[Runner] SUPABASE_URL/SUPABASE_ANON_KEY not set, realtime updates disabled")

    socket_feed = None
    if settings.worker_socket_enabled:
        socket_feed = WorkerSocketFeed(settings.get("worker_api_url"), settings.get("worker_api_token") or None)

    session = BookingMonitorSession(
        client,
        emitter=emitter,
        health_monitor=health,
        bridge=bridge,
        config=settings.polling_config(),
        log_limit=settings.get_int("log_limit"),
        socket_feed=socket_feed,
    )
    return session, health


async def run_health_check(settings: SettingsManager) -> int:
    client = WorkerAPIClient(
        api_url=settings.get("worker_api_url") or None,
        api_token=settings.get("worker_api_token") or None,
    )
    health = ConnectionHealthMonitor(client, **settings.health_settings)
    state = await health.check_now(manual=True)
    console = make_console()
    console.print(Text(f"VPS: {CONNECTION_LABELS.get(state, state.value)}", style=CONNECTION_STYLES.get(state, "")))
    if health.last_error is not None:
        console.print(Text(health.last_error.user_message, style="dim"))
    return 0 if state == ConnectionState.CONNECTED else 1


async def run_monitor(args: argparse.Namespace, settings: SettingsManager) -> int:
    session, health = build_session(settings)
    session.attach_display(ConsoleDisplay())

    finished = asyncio.Event()

    def on_status(event: StatusEvent) -> None:
        if is_terminal_status(event.snapshot.status):
            finished.set()

    session.emitter.subscribe(StatusEvent, on_status)
    health.start()

    try:
        if args.mode == "start":
            booking_config = load_booking_config(args.config)
            handle = await session.start_job(booking_config, channel_key=args.user_id)
            if handle.fallback:
                logger.warning(f"[Runner] Worker offline, job {handle.job_id} runs in fallback mode")
                return 2
        else:
            handle = await session.attach(args.job_id, channel_key=args.user_id)

        logger.info(f"[Runner] Watching job {handle.job_id}", extra={"job_id": handle.job_id})
        await finished.wait()

        snapshot = session.latest_snapshot
        return 0 if snapshot is not None and snapshot.status == "completed" else 1

    except WorkerAPIError as e:
        logger.error(f"[Runner] Worker API error ({e.code}): {e}")
        return 1

    finally:
        await session.close()
        await health.stop()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    load_environment(args.env)

    settings = SettingsManager()
    setup_logging(debug_mode=args.debug or settings.debug_mode)

    trace_id = generate_trace_id()
    logger.info(f"[Runner] Starting in {args.mode} mode", extra={"trace_id": trace_id})

    if not settings.get("worker_api_url"):
        logger.error("No worker URL provided. Set WORKER_API_URL")
        sys.exit(1)

    try:
        if args.mode == "health":
            exit_code = asyncio.run(run_health_check(settings))
        else:
            exit_code = asyncio.run(run_monitor(args, settings))
    except KeyboardInterrupt:
        logger.info("[Runner] Interrupted, shutting down")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
