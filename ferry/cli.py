"""
Ferry CLI: run the gateway and manage its queue, sources and settings.

Usage:
    ferry run [--config PATH]
    ferry status
    ferry retry-failed
    ferry archive [--days N]
    ferry sources list|add-folder|add-api|enable|disable ...
    ferry settings get KEY | set KEY VALUE

Every command except ``run`` works directly against the SQLite store, so
it can be used while a gateway process is running.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional, Tuple

from ferry.core.config import FerryConfig
from ferry.core.errors import FerryError
from ferry.core.types import SourceType
from ferry.delivery.queue import UploadQueue
from ferry.delivery.retry import RetryPolicy
from ferry.gateway import Gateway
from ferry.platform import get_platform_info
from ferry.store.settings import SettingsStore
from ferry.store.sqlite_store import SQLiteStore
from ferry.version import __version__

logger = logging.getLogger("Ferry.CLI")


def _load_config(args: argparse.Namespace) -> FerryConfig:
    if args.data_dir:
        return FerryConfig.for_data_dir(args.data_dir)
    if args.config:
        return FerryConfig.from_yaml(args.config)
    return FerryConfig.from_env()


def _open_store(config: FerryConfig) -> Tuple[SQLiteStore, SettingsStore, UploadQueue]:
    config.ensure_directories()
    store = SQLiteStore(config.store.path)
    settings = SettingsStore(store, archive_dir=config.archive_dir, api_temp_dir=config.api_temp_dir)
    return store, settings, UploadQueue(store, RetryPolicy(settings))


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _configure_logging(config: FerryConfig) -> None:
    os.makedirs(config.logging.log_dir, exist_ok=True)
    log_path = os.path.join(config.logging.log_dir, config.logging.file_name)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode="a"),
            logging.StreamHandler(),
        ],
    )


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

async def _run_gateway(gateway: Gateway) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass
    async with gateway:
        await stop_event.wait()


def cmd_run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    _configure_logging(config)
    try:
        gateway = Gateway(config)
    except FerryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    try:
        asyncio.run(_run_gateway(gateway))
    except KeyboardInterrupt:
        logger.info("Interrupted; gateway stopped")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    store, _, queue = _open_store(config)
    try:
        failed = queue.list_failed()
        _print_json({
            "version": __version__,
            "queue": queue.summary(),
            "failed": [
                {"id": item.id, "name": item.display_name, "attempts": item.attempt_count, "error": item.last_error}
                for item in failed[:20]
            ],
            "sources": [source.model_dump(exclude={"api_key"}) for source in store.list_data_sources()],
            "platform": get_platform_info(),
        })
    finally:
        store.close()
    return 0


def cmd_retry_failed(args: argparse.Namespace) -> int:
    config = _load_config(args)
    store, _, queue = _open_store(config)
    try:
        count = queue.reset_failed()
    finally:
        store.close()
    print(f"Reset {count} failed item(s) to pending")
    return 0


def cmd_archive(args: argparse.Namespace) -> int:
    config = _load_config(args)
    store, settings, queue = _open_store(config)
    try:
        days = args.days
        if days is None:
            days = settings.get_or_default("System.CleanupDays", float, 30.0)
        count = queue.archive_completed_older_than(days)
    finally:
        store.close()
    print(f"Archived {count} completed item(s) older than {days} day(s)")
    return 0


def _parse_settings_json(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("--settings must be a JSON object")
    return parsed


def cmd_sources(args: argparse.Namespace) -> int:
    config = _load_config(args)
    store, _, _ = _open_store(config)
    try:
        if args.sources_command == "list":
            _print_json([source.model_dump(exclude={"api_key"}) for source in store.list_data_sources()])
            return 0

        if args.sources_command in ("add-folder", "add-api"):
            try:
                extra = _parse_settings_json(args.settings)
            except ValueError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return 2
            if args.sources_command == "add-folder":
                source = store.add_data_source(
                    name=args.name,
                    source_type=SourceType.FOLDER,
                    folder_path=args.path,
                    file_pattern=args.pattern,
                    additional_settings=extra,
                )
            else:
                source = store.add_data_source(
                    name=args.name,
                    source_type=SourceType.API,
                    api_endpoint=args.endpoint,
                    api_key=args.api_key,
                    polling_interval_minutes=args.interval_minutes,
                    additional_settings=extra,
                )
            print(f"Added {source.source_type.value} source {source.name} (ID: {source.id})")
            return 0

        source = store.get_data_source(args.id)
        if source is None:
            print(f"Error: data source {args.id} not found", file=sys.stderr)
            return 1
        enabled = args.sources_command == "enable"
        store.set_data_source_enabled(args.id, enabled)
        print(f"{'Enabled' if enabled else 'Disabled'} source {source.name} (ID: {source.id})")
        return 0
    finally:
        store.close()


def cmd_settings(args: argparse.Namespace) -> int:
    config = _load_config(args)
    store, settings, _ = _open_store(config)
    try:
        if args.settings_command == "get":
            if args.key is None:
                _print_json(settings.all())
                return 0
            value = settings.get_value(args.key)
            if value is None:
                print(f"Error: setting {args.key} not found", file=sys.stderr)
                return 1
            print(value)
            return 0
        settings.set_value(args.key, args.value)
        print(f"{args.key} = {args.value}")
        return 0
    finally:
        store.close()


# ─────────────────────────────────────────────────────────────────────────────
# Argument parser
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ferry",
        description="Ferry: deliver files from watched folders and APIs to object storage.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  ferry run\n"
               "  ferry sources add-folder --name inbox --path /srv/inbox\n"
               "  ferry sources add-api --name orders --endpoint https://example.test/orders\n"
               "  ferry settings set Upload.MaxConcurrentUploads 5\n"
               "  ferry retry-failed\n",
    )
    parser.add_argument("--version", action="version", version=f"ferry {__version__}")
    parser.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="YAML configuration file (default: FERRY_* environment variables).",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="PATH",
        help="Root every data path under this directory.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the gateway until interrupted.")
    subparsers.add_parser("status", help="Print queue, source and platform status as JSON.")
    subparsers.add_parser("retry-failed", help="Reset terminally failed items to pending.")

    archive = subparsers.add_parser("archive", help="Archive completed items past retention.")
    archive.add_argument(
        "--days",
        type=float,
        default=None,
        help="Retention in days (default: System.CleanupDays setting).",
    )

    sources = subparsers.add_parser("sources", help="Manage folder and API data sources.")
    sources_sub = sources.add_subparsers(dest="sources_command", required=True)
    sources_sub.add_parser("list", help="List configured data sources.")

    add_folder = sources_sub.add_parser("add-folder", help="Add a watched folder source.")
    add_folder.add_argument("--name", required=True)
    add_folder.add_argument("--path", required=True)
    add_folder.add_argument("--pattern", default="*.*", help="Glob applied to file names.")
    add_folder.add_argument("--settings", default=None, help="JSON object of additional settings.")

    add_api = sources_sub.add_parser("add-api", help="Add a polled API source.")
    add_api.add_argument("--name", required=True)
    add_api.add_argument("--endpoint", required=True)
    add_api.add_argument("--api-key", default=None)
    add_api.add_argument("--interval-minutes", type=float, default=5.0)
    add_api.add_argument("--settings", default=None, help="JSON object of additional settings.")

    for name, help_text in (("enable", "Enable a data source."), ("disable", "Disable a data source.")):
        toggle = sources_sub.add_parser(name, help=help_text)
        toggle.add_argument("id", type=int)

    settings = subparsers.add_parser("settings", help="Read or change runtime settings.")
    settings_sub = settings.add_subparsers(dest="settings_command", required=True)
    get = settings_sub.add_parser("get", help="Print one setting, or all when KEY is omitted.")
    get.add_argument("key", nargs="?", default=None)
    set_ = settings_sub.add_parser("set", help="Change a setting.")
    set_.add_argument("key")
    set_.add_argument("value")
    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "run":
        return cmd_run(args)
    if args.command == "status":
        return cmd_status(args)
    if args.command == "retry-failed":
        return cmd_retry_failed(args)
    if args.command == "archive":
        return cmd_archive(args)
    if args.command == "sources":
        return cmd_sources(args)
    if args.command == "settings":
        return cmd_settings(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
