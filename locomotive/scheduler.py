"""Reconciliation with the lftp queue and scheduling of new transfers.

Each stage takes the current `RunContext` and returns a new one:

1. `reconcile` maps unfinished store items onto the entries lftp reports as
   active or queued.
2. `apply_limits` pushes the speed and parallelism limits to a running
   lftp session.
3. `schedule` lists the remote sources, drops what is already known, zips
   the sources together up to the free capacity and hands the batch to lftp.
"""
import logging
from dataclasses import replace
from datetime import datetime
from itertools import zip_longest
from typing import Dict, List, Optional, Sequence

from .database import QueueItem
from .events import TRANSFER_STARTED, EventEmitter
from .lftp_manager import LftpManager
from .queue_store import QueueStore
from .ssh_manager import RemoteFilesystem
from .transfer_types import ItemSize, QueueState, RunContext, SourceItem
from .utils import PathMappingError, make_fingerprint, normalize_remote_path

# Directories with at least this many immediate children are mirrored
# file-parallel rather than segment-parallel.
PARALLEL_MIRROR_THRESHOLD = 8


class TargetMapper:
    """Resolves the local target directory of a remote source directory.

    With one target every source maps to it. With several targets the two
    lists are paired by position.

    Raises:
        PathMappingError: If the lists cannot be paired.
    """

    def __init__(self, sources: Sequence[str], targets: Sequence[str]):
        if not sources or not targets:
            raise PathMappingError("At least one source and one target path are required.")
        sources = [normalize_remote_path(s) for s in sources]
        targets = [t.rstrip("/") or "/" for t in targets]

        if len(targets) == 1:
            self._table = {source: targets[0] for source in sources}
        elif len(sources) == 1:
            raise PathMappingError(
                "Multiple target paths were given for a single source path."
            )
        elif len(sources) != len(targets):
            raise PathMappingError(
                f"Found {len(sources)} source paths but {len(targets)} target paths; "
                "paired lists must be the same length."
            )
        else:
            self._table = dict(zip(sources, targets))
        self.sources = sources

    def target_for(self, source_dir: str) -> Optional[str]:
        source_dir = normalize_remote_path(source_dir)
        if source_dir in self._table:
            return self._table[source_dir]
        for source, target in self._table.items():
            if source in source_dir:
                return target
        return None


def map_known_to_remote(items: Sequence[QueueItem], candidates: Sequence[str]) -> Dict[int, int]:
    """Maps each store item onto the first queue entry mentioning its name.

    Args:
        items: Unfinished store items.
        candidates: lftp queue entries, active ones first.

    Returns:
        Store item id -> candidate index.
    """
    mapped: Dict[int, int] = {}
    for item in items:
        for index, line in enumerate(candidates):
            if item.name and item.name in line:
                mapped[item.id] = index
                break
    return mapped


def reconcile(store: QueueStore, ctx: RunContext) -> RunContext:
    """Determines which known items lftp is still working on."""
    snapshot = ctx.snapshot
    if snapshot is None or snapshot.state != QueueState.ACTIVE:
        logging.debug("No readable lftp queue; nothing to reconcile.")
        return replace(ctx, mapped_queue={})

    unfinished = store.query().not_finished().all()
    mapped = map_known_to_remote(unfinished, snapshot.candidates)
    logging.info(f"Found {len(mapped)} known item(s) in the lftp queue.")
    return replace(ctx, mapped_queue=mapped)


def apply_limits(lftp: LftpManager, ctx: RunContext, speed_limit: int, transfer_limit: int) -> RunContext:
    """Updates the limits of an already backgrounded lftp session.

    A new session gets its limits with the first batch instead.
    """
    snapshot = ctx.snapshot
    if snapshot is None or not snapshot.is_backgrounded:
        logging.debug("No backgrounded lftp session; limits will be sent with the next batch.")
        return ctx
    lftp.set_speed_limit(speed_limit).set_queue_transfer_limit(transfer_limit)
    lftp.execute(attach=True, terminal_id=snapshot.terminal_id)
    return ctx


def compute_capacity(transfer_limit: int, ctx: RunContext) -> int:
    """Free transfer slots: the limit minus the items lftp already holds."""
    if not ctx.queue_is_readable:
        return 0
    return max(0, transfer_limit - ctx.queue_count)


def list_source_items(remote_fs: RemoteFilesystem, sources: Sequence[str],
                      cutoff: Optional[datetime] = None) -> List[List[SourceItem]]:
    """Lists every source root at depth 0, one list per source.

    Items last modified before `cutoff` are dropped. A source that cannot be
    listed is logged and contributes nothing.
    """
    listings = []
    for source in sources:
        try:
            items = remote_fs.list_dir(source)
        except OSError as e:
            logging.error(f"Could not list source directory '{source}': {e}")
            items = []
        if cutoff is not None:
            items = [item for item in items if datetime.fromtimestamp(item.mtime) >= cutoff]
        logging.debug(f"{len(items)} item(s) available in '{source}'.")
        listings.append(items)
    return listings


def filter_source_items(listings: Sequence[Sequence[SourceItem]], store: QueueStore,
                        ctx: RunContext, max_retries: int) -> List[List[SourceItem]]:
    """Drops items already in the store, keeping failed ones that may retry."""
    known = {row.fingerprint for row in store.query().all()}
    retryable = {
        row.fingerprint: row
        for row in store.query().retry_eligible(max_retries).excluding_ids(ctx.mapped_queue.keys()).all()
    }
    filtered = []
    for items in listings:
        kept = []
        for item in items:
            fingerprint = make_fingerprint(item.name, item.mtime)
            if fingerprint not in known:
                kept.append(item)
            elif fingerprint in retryable:
                row = retryable[fingerprint]
                logging.info(f"Retrying '{item.name}' (attempt {row.retries + 1} of {max_retries}).")
                kept.append(item)
        filtered.append(kept)
    return filtered


def build_transfer_list(listings: Sequence[Sequence[SourceItem]], capacity: int) -> List[SourceItem]:
    """Interleaves the sources round-robin, stopping at `capacity` items."""
    transfer_list: List[SourceItem] = []
    if capacity <= 0:
        return transfer_list
    for round_items in zip_longest(*listings):
        for item in round_items:
            if item is None:
                continue
            transfer_list.append(item)
            if len(transfer_list) >= capacity:
                return transfer_list
    return transfer_list


def issue_transfers(lftp: LftpManager, remote_fs: RemoteFilesystem, items: Sequence[SourceItem],
                    ctx: RunContext, speed_limit: int, transfer_limit: int,
                    connection_limit: int) -> None:
    """Queues one lftp command per item and runs the batch.

    Raises:
        TransferToolError: If lftp rejects the batch.
    """
    lftp.set_speed_limit(speed_limit)
    snapshot = ctx.snapshot
    backgrounded = snapshot is not None and snapshot.is_backgrounded
    if not backgrounded:
        lftp.set_queue_transfer_limit(transfer_limit)

    for item in items:
        if item.is_dir:
            if remote_fs.count_children(item.path) >= PARALLEL_MIRROR_THRESHOLD:
                lftp.mirror_dir(item.path, parallel=connection_limit, queue=True)
            else:
                lftp.mirror_dir(item.path, pget=connection_limit, queue=True)
        else:
            lftp.pget_file(item.path, connections=connection_limit, queue=True)

    if backgrounded:
        lftp.execute(attach=True, terminal_id=snapshot.terminal_id)
    else:
        lftp.execute(detach=True)


def record_item_to_queue(store: QueueStore, item: SourceItem, size: ItemSize,
                         ctx: RunContext, host: str, mapper: TargetMapper) -> QueueItem:
    """Upserts the store row of a newly started transfer."""
    row = store.first_or_new(make_fingerprint(item.name, item.mtime))
    row.run_id = ctx.run_id
    row.name = item.name
    row.host = host
    row.source_dir = item.source_dir
    row.size_bytes = size.size_bytes
    row.file_count = size.file_count
    row.last_modified = datetime.fromtimestamp(item.mtime)
    row.started_at = datetime.now()
    row.target_dir = mapper.target_for(item.source_dir)
    if row.is_failed:
        row.is_failed = False
        row.retries += 1
    return store.save(row)


def schedule(ctx: RunContext, store: QueueStore, lftp: LftpManager, remote_fs: RemoteFilesystem,
             settings, mapper: TargetMapper, emitter: EventEmitter,
             cutoff: Optional[datetime] = None) -> RunContext:
    """Starts as many new transfers as there are free slots.

    Args:
        ctx: Context carrying the reconciled queue.
        store: The local queue.
        lftp: Command builder for the transfer batch.
        remote_fs: Connected SFTP session.
        settings: Effective `Settings` of the run.
        mapper: Source to target directory lookup.
        emitter: Receives a `transferStarted` event per item.
        cutoff: Ignore items modified before this time.

    Returns:
        The context with `new_transfers` set.
    """
    if not ctx.queue_is_readable:
        logging.warning("The lftp queue could not be read; not starting new transfers this run.")
        return ctx

    capacity = compute_capacity(settings.transfer_limit, ctx)
    if capacity == 0:
        logging.info("All transfer slots are full.")
        return ctx
    logging.info(f"Setting available transfer slots to {capacity}.")

    logging.info("Retrieving all available items from host source(s).")
    listings = list_source_items(remote_fs, settings.sources, cutoff)
    listings = filter_source_items(listings, store, ctx, settings.max_retries)
    transfer_list = build_transfer_list(listings, capacity)

    if not transfer_list:
        logging.info("No new items to transfer.")
        return ctx

    # Sized before issuing so a failing SFTP walk leaves lftp untouched.
    sizes = [remote_fs.calculate_item_size(item) for item in transfer_list]

    issue_transfers(lftp, remote_fs, transfer_list, ctx, settings.speed_limit,
                    settings.transfer_limit, settings.connection_limit)

    for item, size in zip(transfer_list, sizes):
        record_item_to_queue(store, item, size, ctx, settings.host, mapper)
        logging.info(f"Started transfer of '{item.name}'.")
        emitter.emit(TRANSFER_STARTED, item.name)
    logging.debug("Recorded new transfers to the local queue.")

    return replace(ctx, new_transfers=tuple(transfer_list))
