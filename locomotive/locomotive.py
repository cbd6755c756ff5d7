#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
"""Locomotive: keeps a local directory in sync with remote drop folders via lftp.

Every invocation reconciles the persisted local queue with lftp's backgrounded
transfer queue, starts new transfers into the free slots, verifies finished
ones, moves them to their target directories and optionally removes the
remote originals. It is meant to be run repeatedly from cron or a timer.
"""
__version__ = "1.0.0"

import argparse
import logging
import sys
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import argcomplete

from .completion import check_completion, move_finished, remove_source_files
from .config_manager import (
    APP_HOME, ConfigValidator, Settings, build_settings, load_config, resolve_cutoff, update_config,
)
from .database import get_session_factory
from .events import EventEmitter, setup_listeners
from .lftp_manager import LftpManager, check_lftp_installed
from .queue_parser import parse_queue_output
from .queue_store import QueueStore
from .scheduler import TargetMapper, apply_limits, reconcile, schedule
from .ssh_manager import RemoteFilesystem
from .system_manager import LockFile, add_console_handler, lock_path_for_args, setup_logging
from .transfer_types import QueueState, RunContext
from .ui import print_queue_table, print_run_summary
from .utils import ConfigurationError, LocomotiveError

DEFAULT_CONFIG_PATH = APP_HOME / "config.ini"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="locomotive",
        description="Fetch new items from remote SFTP drop folders with lftp and move them into place.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('host', nargs='?', help='The remote host to fetch from.')
    parser.add_argument('source', nargs='?', help='Remote source directory; a colon-delimited list is allowed.')
    parser.add_argument('target', nargs='?', help='Local target directory; a colon-delimited list is allowed.')
    parser.add_argument('--config', default=str(DEFAULT_CONFIG_PATH), help='Path to the configuration file.')
    parser.add_argument('-u', '--username', help='SSH/SFTP username.')
    parser.add_argument('-p', '--password', help='SSH/SFTP password, or the private key passphrase.')
    parser.add_argument('-o', '--port', type=int, help='SSH port.')
    parser.add_argument('--public-keyfile', dest='public_keyfile', help='Public key file for key authentication.')
    parser.add_argument('--private-keyfile', dest='private_keyfile', help='Private key file for key authentication.')
    parser.add_argument('-w', '--working-dir', dest='working_dir', help='Local directory lftp downloads into.')
    parser.add_argument('-s', '--speed-limit', dest='speed_limit', type=int, metavar='BYTES',
                        help='Global transfer speed limit in bytes/s (0 = unlimited). Overrides the speed schedule.')
    parser.add_argument('-c', '--connection-limit', dest='connection_limit', type=int, metavar='N',
                        help='Connections per transfer.')
    parser.add_argument('-t', '--transfer-limit', dest='transfer_limit', type=int, metavar='N',
                        help='Items transferred at the same time.')
    parser.add_argument('-m', '--max-retries', dest='max_retries', type=int, metavar='N',
                        help='How often a failed item is transferred again.')
    parser.add_argument('--newer-than', dest='newer_than', metavar='DATE',
                        help="Only fetch items modified after this ISO date, or 'last_run'.")
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--simple', action='store_true', help='Plain console logging without rich formatting.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--list-queue', action='store_true', help='Print the local queue and exit.')
    parser.add_argument('--forget', metavar='FINGERPRINT',
                        help='Remove an item from the local queue so it may be fetched again.')
    return parser


def probe_queue(lftp: LftpManager, ctx: RunContext) -> RunContext:
    """Reads lftp's backgrounded queue into the context."""
    snapshot = parse_queue_output(lftp.get_queue_status())
    if snapshot.state == QueueState.UNPARSABLE:
        logging.error("The lftp queue listing could not be understood; "
                      "new transfers and completion checks are skipped this run.")
        for line in snapshot.raw:
            logging.debug(f"lftp queue: {line}")
        ctx = ctx.with_message("lftp queue unreadable")
    elif snapshot.is_backgrounded:
        logging.info(f"Found backgrounded lftp session [{snapshot.terminal_id}].")
    else:
        logging.info("No backgrounded lftp session found.")
    return replace(ctx, snapshot=snapshot)


def run_pipeline(ctx: RunContext, settings: Settings, store: QueueStore, lftp: LftpManager,
                 remote_fs: RemoteFilesystem, mapper: TargetMapper, emitter: EventEmitter,
                 cutoff: Optional[datetime] = None) -> RunContext:
    """Runs every stage of one invocation after the connections are set up."""
    ctx = probe_queue(lftp, ctx)
    ctx = reconcile(store, ctx)
    ctx = apply_limits(lftp, ctx, settings.speed_limit, settings.transfer_limit)
    ctx = schedule(ctx, store, lftp, remote_fs, settings, mapper, emitter, cutoff)
    ctx = check_completion(store, ctx, settings.working_dir, emitter)
    ctx = move_finished(store, ctx, settings.working_dir, emitter)
    if settings.remove_sources:
        ctx = remove_source_files(store, ctx, remote_fs, settings.remove_exclude)
    return ctx


def _open_store(database_path: str) -> QueueStore:
    return QueueStore(get_session_factory(database_path)())


def _handle_utility_commands(args: argparse.Namespace, config) -> bool:
    """Handles the queue maintenance flags.

    Returns:
        True if a utility command ran and the program should exit.
    """
    if not (args.list_queue or args.forget):
        return False
    database_path = config.get("TRANSFER", "database_path", fallback="").strip() \
        or str(APP_HOME / "locomotive.sqlite")
    store = _open_store(str(Path(database_path).expanduser()))
    try:
        if args.forget:
            if not store.soft_delete(args.forget):
                logging.warning(f"No queued item with fingerprint '{args.forget}'.")
        if args.list_queue:
            print_queue_table(store.query().all())
    finally:
        store.close()
    return True


def run(args: argparse.Namespace) -> int:
    """Loads configuration, connects, and runs one invocation."""
    update_config(args.config)
    config = load_config(args.config)

    if args.check_config:
        logging.info("--- Running Configuration Check ---")
        if ConfigValidator(config).validate():
            logging.info("SUCCESS: Configuration file appears to be valid.")
            return 0
        logging.error("FAILURE: Configuration file has errors.")
        return ConfigurationError.exit_code

    if _handle_utility_commands(args, config):
        return 0

    if not ConfigValidator(config).validate():
        raise ConfigurationError(f"Configuration file '{args.config}' has errors.")
    if not args.host:
        raise ConfigurationError("A HOST argument is required.")

    now = datetime.now()
    settings = build_settings(config, args, now)
    mapper = TargetMapper(settings.sources, settings.targets)
    Path(settings.working_dir).mkdir(parents=True, exist_ok=True)

    store = _open_store(settings.database_path)
    remote_fs = RemoteFilesystem(
        settings.host, settings.port, settings.username, settings.password,
        private_keyfile=settings.private_keyfile, public_keyfile=settings.public_keyfile,
    )
    try:
        last_run = store.touch_last_run(now)
        cutoff = resolve_cutoff(settings.newer_than, last_run)
        lftp_path = check_lftp_installed(settings.lftp_path)
        remote_fs.connect()

        lftp = LftpManager(
            settings.host, settings.port, settings.username, settings.password,
            working_dir=settings.working_dir, private_keyfile=settings.private_keyfile,
            lftp_path=lftp_path,
        )
        emitter = setup_listeners(EventEmitter(), settings)
        ctx = RunContext(run_id=uuid.uuid4().hex, started_at=now, last_run=last_run)
        logging.debug(f"Starting run {ctx.run_id} (previous run: {last_run:%Y-%m-%d %H:%M:%S}).")

        ctx = run_pipeline(ctx, settings, store, lftp, remote_fs, mapper, emitter, cutoff)
        print_run_summary(ctx)
        logging.info(f"Run finished: {ctx.as_dict()}")
    finally:
        remote_fs.close()
        store.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """The main entry point for the application.

    Returns:
        The process exit code: 0 on success (or when an identical invocation
        is already running), otherwise the `exit_code` of the error raised.
    """
    parser = build_parser()
    argcomplete.autocomplete(parser)
    raw_args: List[str] = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(raw_args)

    if args.version:
        print(f"locomotive {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    setup_logging(APP_HOME, args.debug)
    add_console_handler(args.simple, args.debug)
    logging.info("--- Locomotive started ---")
    logging.info(f"Using configuration file: {args.config}")

    lock = LockFile(lock_path_for_args(raw_args))
    try:
        lock.acquire()
        return run(args)
    except LocomotiveError as e:
        if e.exit_code == 0:
            logging.info(str(e))
        else:
            logging.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        logging.warning("Process interrupted by user. Shutting down.")
        return 1
    except Exception as e:
        logging.error(f"An unexpected error occurred: {e}", exc_info=True)
        return 1
    finally:
        if lock.acquired:
            lock.release()
            logging.debug("Locomotive lock released.")
        logging.info("--- Locomotive finished ---")


if __name__ == "__main__":
    sys.exit(main())
