"""Post-transfer stages: verification, relocation and source cleanup."""
import errno
import logging
import os
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .events import ITEM_MOVED, TRANSFER_COMPLETE, TRANSFER_FAILED, EventEmitter
from .queue_store import QueueStore
from .ssh_manager import RemoteFilesystem
from .transfer_types import RunContext
from .utils import calculate_local_size


def check_completion(store: QueueStore, ctx: RunContext, working_dir: str,
                     emitter: EventEmitter) -> RunContext:
    """Marks items lftp is done with as finished or failed.

    An item counts as finished when its copy in the working directory has
    exactly the byte total and file count recorded when it was started.
    Items started by this run and items still in the lftp queue are left
    alone.
    """
    if not ctx.queue_is_readable:
        logging.warning("The lftp queue could not be read; skipping the completion check.")
        return ctx

    candidates = (store.query()
                  .not_finished()
                  .not_failed()
                  .not_for_run(ctx.run_id)
                  .excluding_ids(ctx.mapped_queue.keys())
                  .all())
    logging.debug(f"Checking {len(candidates)} item(s) for completion.")

    for item in candidates:
        local_path = Path(working_dir) / item.name
        if not local_path.exists():
            logging.error(f"'{item.name}' was not found in the working directory; marking it as failed.")
            item.is_failed = True
            store.save(item)
            emitter.emit(TRANSFER_FAILED, item.name)
            continue

        local = calculate_local_size(local_path)
        if local.size_bytes == item.size_bytes and local.file_count == item.file_count:
            item.is_finished = True
            item.is_failed = False
            store.save(item)
            logging.info(f"Transfer of '{item.name}' is complete.")
            emitter.emit(TRANSFER_COMPLETE, item.name)
        else:
            logging.error(
                f"Size mismatch for '{item.name}': expected {item.size_bytes} bytes in "
                f"{item.file_count} file(s), found {local.size_bytes} bytes in {local.file_count} file(s)."
            )
            item.is_failed = True
            store.save(item)
            emitter.emit(TRANSFER_FAILED, item.name)
    return ctx


def _relocate(source: Path, destination: Path) -> None:
    try:
        os.rename(source, destination)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        shutil.move(str(source), str(destination))


def move_finished(store: QueueStore, ctx: RunContext, working_dir: str,
                  emitter: EventEmitter) -> RunContext:
    """Moves verified items from the working directory to their target directory."""
    moved = []
    for item in store.query().finished().not_moved().all():
        if not item.target_dir or not os.path.isdir(item.target_dir):
            logging.error(f"Target directory '{item.target_dir}' for '{item.name}' does not exist.")
            continue
        source = Path(working_dir) / item.name
        destination = Path(item.target_dir) / item.name
        if destination.exists():
            logging.error(f"Cannot move '{item.name}': '{destination}' already exists.")
            continue
        try:
            _relocate(source, destination)
        except OSError as e:
            logging.error(f"Moving '{item.name}' to '{item.target_dir}' failed: {e}")
            continue

        item.is_moved = True
        store.save(item)
        moved.append(item.name)
        logging.info(f"Moved '{item.name}' to '{item.target_dir}'.")
        emitter.emit(ITEM_MOVED, item.name)
    return replace(ctx, moved_items=ctx.moved_items + tuple(moved))


def remove_source_files(store: QueueStore, ctx: RunContext, remote_fs: RemoteFilesystem,
                        exclude: Sequence[str] = ()) -> RunContext:
    """Deletes the remote copies of finished items.

    Rows whose source directory contains any of the `exclude` substrings are
    never touched. A failed removal leaves the row for the next run.
    """
    cleaned = []
    for item in store.query().finished().not_failed().not_cleaned().all():
        source_dir = item.source_dir or ""
        if any(pattern and pattern in source_dir for pattern in exclude):
            logging.debug(f"Source of '{item.name}' is excluded from removal.")
            continue

        remote_path = f"{source_dir.rstrip('/')}/{item.name}"
        try:
            if not remote_fs.exists(remote_path):
                logging.warning(f"Source item '{remote_path}' no longer exists on the host.")
                continue
            remote_fs.remove(remote_path)
        except OSError as e:
            logging.error(f"Unable to remove source item '{remote_path}': {e}")
            continue

        item.source_cleaned = True
        store.save(item)
        cleaned.append(remote_path)
        logging.info(f"Removed source item '{remote_path}'.")
    return replace(ctx, cleaned_items=ctx.cleaned_items + tuple(cleaned))
