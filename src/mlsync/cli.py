from __future__ import annotations

import argparse
import json
import signal
import threading
from pathlib import Path

from loguru import logger

from .config import SyncSettings, cli_overrides_from_args
from .controller import LibrarySyncController
from .errors import SyncError
from .logging import configure_logging
from .models import Folder, SyncSessionSummary


EXIT_OK = 0
EXIT_USAGE = 1
EXIT_WITH_ERRORS = 2


def _print_progress(phase: str, folder: Folder, completed: int, total: int) -> None:
    if phase == "scan_finished":
        logger.info(f"[{completed}/{total}] {folder.name} done")


def _report(summary: SyncSessionSummary, as_json: bool) -> int:
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print(summary.user_message())
        for outcome in sorted(summary.per_folder.values(), key=lambda o: o.folder_name):
            if outcome.ok and outcome.scan is not None:
                s = outcome.scan
                print(f"  OK    {outcome.folder_name}: +{s.added} ~{s.updated} -{s.removed} ({s.files_failed} unreadable)")
            else:
                print(f"  {outcome.status.upper():<5} {outcome.folder_name}: {outcome.code} {outcome.message or ''}".rstrip())
    return EXIT_WITH_ERRORS if summary.has_errors else EXIT_OK


def cmd_folders(ctl: LibrarySyncController) -> int:
    folders = ctl.folders()
    if not folders:
        print("No watched folders")
    for f in folders:
        print(f"{f.id:>4}  {ctl.track_count(f.id):>6} tracks  {f.path}")
    return EXIT_OK


def cmd_duplicates(ctl: LibrarySyncController) -> int:
    result = ctl.find_duplicates()
    tracks = {t.id: t for t in ctl.db.list_all_tracks()}
    print(f"{result.groups_found} duplicate group(s), {result.tracks_marked_duplicate} duplicate track(s)")
    for gid, member_ids in sorted(result.groups.items()):
        print(f"[{gid}]")
        for i, tid in enumerate(member_ids):
            t = tracks.get(tid)
            if t is None:
                continue
            mark = "*" if i == 0 else " "
            print(f"  {mark} {t.format:<5} {t.bitrate:>5} kbps  {t.path}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="mlsync")
    # Config/Logging options (defaults resolved via SyncSettings)
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/mlsync/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument("--log-level", default=None, help="Console log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-json", dest="log_json", default=None, help="Path to write JSON lines log (structured events)")
    p.add_argument("--db", dest="db_path", default=None, help="Path to the library DB")
    p.add_argument("--workers", type=int, default=None, help="Folders scanned in parallel")

    sub = p.add_subparsers(dest="cmd")

    p_add = sub.add_parser("add", help="Add a watched folder and scan it")
    p_add.add_argument("path", help="Folder to watch")

    p_rm = sub.add_parser("remove", help="Remove a watched folder and its tracks")
    p_rm.add_argument("folder_id", type=int)

    sub.add_parser("folders", help="List watched folders")

    p_sync = sub.add_parser("sync", help="Rescan changed folders and detect duplicates")
    p_sync.add_argument("folder_ids", nargs="*", type=int, help="Limit to these folder ids")
    p_sync.add_argument("--json", action="store_true", help="Print the session summary as JSON")

    sub.add_parser("duplicates", help="Run duplicate detection and list groups")
    sub.add_parser("cleanup", help="Remove watched folders that no longer exist")

    p_watch = sub.add_parser("watch", help="Sync periodically per auto_scan_interval")
    p_watch.add_argument(
        "--interval",
        dest="auto_scan_interval",
        choices=["every_15_minutes", "every_30_minutes", "every_60_minutes", "only_on_launch"],
        default=None,
    )

    args = p.parse_args(argv)
    # Load settings: defaults + TOML + env + CLI overrides
    overrides = cli_overrides_from_args(args)
    config_path = Path(args.config_path).expanduser() if args.config_path else None
    cfg = SyncSettings.load(config_path=config_path, overrides=overrides)

    if args.write_config:
        written = cfg.write(config_path)
        print(f"Config written to: {written}")
        return EXIT_OK
    if not args.cmd:
        p.print_help()
        return EXIT_USAGE

    configure_logging(cfg.log_level, cfg.log_json)
    stop_event = threading.Event()

    def _on_signal(signum, _frame) -> None:
        logger.warning(f"Signal {signum} received, stopping after in-flight work")
        stop_event.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}

    try:
        ctl = LibrarySyncController(cfg)
        if args.cmd == "add":
            folder, summary = ctl.add_folder(args.path, stop_event=stop_event)
            print(f"Watching {folder.path} (id {folder.id})")
            return _report(summary, as_json=False)
        if args.cmd == "remove":
            ctl.remove_folder(args.folder_id)
            return EXIT_OK
        if args.cmd == "folders":
            return cmd_folders(ctl)
        if args.cmd == "sync":
            summary = ctl.sync(
                args.folder_ids or None, stop_event=stop_event, progress_callback=_print_progress
            )
            return _report(summary, as_json=args.json)
        if args.cmd == "duplicates":
            return cmd_duplicates(ctl)
        if args.cmd == "cleanup":
            removed = ctl.cleanup_missing_folders()
            print(f"Removed {len(removed)} missing folder(s)")
            return EXIT_OK
        if args.cmd == "watch":
            ctl.add_listener(lambda s: _report(s, as_json=False))
            ctl.watch(stop_event)
            return EXIT_OK
    except SyncError as e:
        logger.error(str(e))
        return EXIT_WITH_ERRORS
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    p.error("unknown command")
    return EXIT_USAGE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
