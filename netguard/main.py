from __future__ import annotations

"""Command-line entrypoint: logging setup and one-shot management commands."""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Sequence

from loguru import logger

from .config import Settings, get_settings
from .engine import MonitorEngine
from .notifier import NotificationGateway, NotificationQueue
from .supervisor import ServiceSupervisor


def configure_logger(settings: Settings | None = None) -> None:
    """Configure file and stdout log sinks for runtime observability."""
    settings = settings or get_settings()
    logger.remove()
    logger.add(
        str(Path(settings.LOG_DIR) / "runtime_{time:YYYY-MM-DD}.log"),
        level=settings.LOG_LEVEL,
        rotation="00:00",
        retention="14 days",
        enqueue=True,
    )
    logger.add(lambda msg: print(msg, end=""), level=settings.LOG_LEVEL)


def build_service(settings: Settings) -> tuple[MonitorEngine, ServiceSupervisor]:
    """Construct the owned object graph once."""
    engine = MonitorEngine(settings)
    gateway = NotificationGateway(settings.NOTIFY_URL) if settings.NOTIFY_URL else None
    notifications = NotificationQueue(engine.store, settings.MAX_NOTIFICATIONS, gateway=gateway)
    supervisor = ServiceSupervisor(engine, settings, notifications=notifications)
    return engine, supervisor


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="netguard", description="Endpoint reachability monitor")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="run the monitoring service until interrupted")

    check = sub.add_parser("check", help="probe one url, or run one batch over all targets")
    check.add_argument("url", nargs="?", default=None, help="url to probe without storing it")

    add = sub.add_parser("add", help="add a target url")
    add.add_argument("url")

    remove = sub.add_parser("remove", help="remove a target by id")
    remove.add_argument("target_id")

    receiver = sub.add_parser("receiver", help="set the summary receiver")
    receiver.add_argument("name")
    receiver.add_argument("url", help="receiver url, empty string disables delivery")

    interval = sub.add_parser("interval", help="set the check interval in minutes")
    interval.add_argument("minutes", type=int)

    sync = sub.add_parser("sync", help="reconcile targets with the external source")
    sync.add_argument("endpoint", nargs="?", default=None, help="source endpoint to store before syncing")

    sub.add_parser("status", help="print engine status as json")
    notes = sub.add_parser("notifications", help="list supervisor notifications")
    notes_action = notes.add_mutually_exclusive_group()
    notes_action.add_argument("--pending", action="store_true", help="only list unacknowledged entries")
    notes_action.add_argument("--ack", metavar="ID", default=None, help="acknowledge one notification")
    notes_action.add_argument("--clear-acked", action="store_true", help="drop acknowledged notifications")
    sub.add_parser("clear", help="wipe targets, stats, summaries and notifications")
    return parser


def _format_check(url: str, result) -> str:
    lines = [f"url: {url}", f"status: {result.status}"]
    if result.status_code is not None:
        lines.append(f"status_code: {result.status_code} {result.status_text or ''}".rstrip())
    if result.redirected:
        lines.append(f"redirected_to: {result.redirect_url}")
    if result.error_kind is not None:
        lines.append(f"error: {result.error_kind} ({result.error_message})")
    return "\n".join(lines)


def _format_summary(summary) -> str:
    lines = [f"total: {summary.total_count} active: {summary.active_count} inactive: {summary.inactive_count}"]
    for item in summary.results:
        code = item.status_code if item.status_code is not None else "-"
        lines.append(f"  {item.status:<8} {code:>4} {item.response_time_ms or 0:>6}ms {item.url}")
    lines.append(f"delivered: {'YES' if summary.delivered else 'NO'}")
    return "\n".join(lines)


def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    engine, supervisor = build_service(settings)

    if args.command == "check":
        if args.url:
            try:
                result = asyncio.run(engine.check_url(args.url))
            except ValueError as exc:
                print(f"invalid url: {exc}")
                return 2
            print(_format_check(args.url, result))
            return 0
        summary = asyncio.run(engine.run_once("manual"))
        engine.on_suspend()
        if summary is None:
            print("no targets to check")
            return 2
        print(_format_summary(summary))
        return 0

    if args.command == "add":
        target = engine.add_target(args.url)
        if target is None:
            print(f"target not added: {args.url}")
            return 2
        print(f"added {target.id} {target.url}")
        return 0

    if args.command == "remove":
        if not engine.remove_target(args.target_id):
            print(f"unknown target id: {args.target_id}")
            return 2
        print(f"removed {args.target_id}")
        return 0

    if args.command == "receiver":
        if not engine.set_receiver(args.name, args.url.strip()):
            print(f"invalid receiver url: {args.url}")
            return 2
        print(f"receiver set: {args.name} {args.url or '<disabled>'}")
        return 0

    if args.command == "interval":
        if not engine.set_interval(args.minutes):
            print(f"invalid interval: {args.minutes}")
            return 2
        print(f"interval set: {args.minutes}m")
        return 0

    if args.command == "sync":
        if args.endpoint is not None and not engine.set_source_endpoint(args.endpoint.strip()):
            print(f"invalid source endpoint: {args.endpoint}")
            return 2
        if supervisor.source is None:
            print("no source endpoint configured")
            return 2
        diff = asyncio.run(supervisor.sync_targets())
        engine.on_suspend()
        if diff is None:
            print("sync failed")
            return 3
        print(f"added: {len(diff.added)} modified: {len(diff.modified)} removed: {len(diff.removed)}")
        return 0

    if args.command == "status":
        print(json.dumps(engine.status(), indent=2, ensure_ascii=False, default=str))
        return 0

    if args.command == "notifications":
        queue = supervisor.notifications
        if args.ack is not None:
            if not queue.acknowledge(args.ack):
                print(f"unknown notification id: {args.ack}")
                return 2
            print(f"acknowledged {args.ack}")
            return 0
        if args.clear_acked:
            print(f"cleared {queue.clear_acknowledged()} acknowledged notifications")
            return 0
        items = queue.pending() if args.pending else queue.items()
        if not items:
            print("no notifications")
        for item in items:
            mark = " " if item.acknowledged else "*"
            print(f"{mark} {item.id} {item.timestamp:%Y-%m-%d %H:%M:%S} [{item.type}] {item.title}: {item.message}")
        return 0

    if args.command == "clear":
        engine.clear_all()
        print("state cleared")
        return 0

    print(f"unknown command: {args.command}")
    return 2


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Run one CLI command and return process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"invalid configuration: {exc}")
        return 2

    if args.command == "run":
        from .app import run_app

        try:
            return 0 if asyncio.run(run_app(settings)) else 2
        except KeyboardInterrupt:
            return 0

    try:
        return _run_command(args, settings)
    except Exception as exc:
        logger.exception("command {} failed: {}", args.command, exc)
        print(f"{args.command} failed: {exc}")
        return 3


def main() -> None:
    """Console script entrypoint."""
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
