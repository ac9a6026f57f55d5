"""Launcher for the Checkpoint backup engine.

Usage:
    python run.py backup   [--config config/config.json] [--force]
    python run.py backup-all CONFIG [CONFIG ...] [--force]
    python run.py watch    [--config ...]
    python run.py watchdog [--config ...]
    python run.py cleanup  [--config ...] [--dry-run]
"""

import argparse
import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path

from checkpoint.config import load_config

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG = str(PROJECT_ROOT / "config" / "config.json")

logger = logging.getLogger("checkpoint")


def cmd_backup(config, args) -> int:
    from checkpoint.backup.backup_cycle import run_backup_cycle

    return int(run_backup_cycle(config, force=args.force))


def cmd_backup_all(args) -> int:
    from checkpoint.backup.backup_cycle import run_all_projects

    configs = []
    for path in args.configs:
        try:
            configs.append(load_config(path))
        except (FileNotFoundError, ValueError) as exc:
            logger.error("Skipping %s: %s", path, exc)
    if not configs:
        return 2
    return int(run_all_projects(configs, force=args.force))


def cmd_watch(config, args) -> int:
    from checkpoint.monitor.file_watcher import ProjectWatcher

    def trigger():
        logger.info("Changes settled, starting backup")
        subprocess.Popen(
            [sys.executable, str(Path(__file__).resolve()), "backup",
             "--config", args.config, "--force"],
        )

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    ProjectWatcher(config, trigger).run(stop_event)
    return 0


def cmd_watchdog(config, args) -> int:
    from checkpoint.health.daemon_manager import get_daemon_manager
    from checkpoint.health.notifier import Notifier
    from checkpoint.health.watchdog_monitor import Watchdog

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    notifier = Notifier(cooldowns=config.notify_cooldowns, state_dir=config.state_root)
    watchdog = Watchdog(config, get_daemon_manager(state_root=config.state_root), notifier)
    watchdog.run(stop_event)
    return 0


def cmd_cleanup(config, args) -> int:
    from checkpoint.retention.cleanup_engine import engine_for

    engine = engine_for(config)
    plan = engine.plan()
    for key, value in plan.summary().items():
        logger.info("  %s: %s", key, value)
    result = engine.execute(plan, dry_run=args.dry_run)
    return 1 if result.failures else 0


def main():
    parser = argparse.ArgumentParser(
        description="Checkpoint - local backup engine",
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG,
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup", help="Run one backup cycle")
    backup.add_argument("--force", action="store_true",
                        help="Ignore the backup interval")
    backup.set_defaults(func=cmd_backup)

    backup_all = sub.add_parser("backup-all", help="Back up several projects in turn")
    backup_all.add_argument("configs", nargs="+", metavar="CONFIG",
                            help="Project config files")
    backup_all.add_argument("--force", action="store_true",
                            help="Ignore the backup interval")

    watch = sub.add_parser("watch", help="Back up after changes settle")
    watch.set_defaults(func=cmd_watch)

    watchdog = sub.add_parser("watchdog", help="Monitor the heartbeat and restart stuck daemons")
    watchdog.set_defaults(func=cmd_watchdog)

    cleanup = sub.add_parser("cleanup", help="Apply retention policies")
    cleanup.add_argument("--dry-run", action="store_true",
                         help="Report what would be deleted without deleting")
    cleanup.set_defaults(func=cmd_cleanup)

    # Allow --config after the subcommand as well
    for p in (backup, watch, watchdog, cleanup):
        p.add_argument("-c", "--config", default=argparse.SUPPRESS,
                       help=argparse.SUPPRESS)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "backup-all":
        sys.exit(cmd_backup_all(args))

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("%s", exc)
        sys.exit(2)

    sys.exit(args.func(config, args))


if __name__ == "__main__":
    main()
