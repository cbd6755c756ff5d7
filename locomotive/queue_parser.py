"""Parses the text lftp prints for `queue` into a `RemoteQueueSnapshot`.

A backgrounded lftp session answers `queue` with something like::

    [7] lftp -c connect -p 22 -u user sftp://example.org
    Now executing: [1] pget -c -n 25 /data/movie.mkv -o /work/
            -[2] mirror -c --parallel=25 /data/show /work/
    Commands queued:
     1. mirror -c --use-pget-n=25 /data/album /work/
    <summary line>

The terminal id (`7`) is what `attach` needs to feed more commands to the
same session. Everything else is only used to recognise item names.
"""
import logging
import re
from typing import List, Optional, Sequence

from .transfer_types import QueueState, RemoteQueueSnapshot

ACTIVE_MARKER = "Now executing:"
QUEUED_MARKER = "Commands queued:"
NOT_BACKGROUNDED_MARKER = "backgrounded"

# Width of the "Now executing: " prefix on the first active line.
ACTIVE_PREFIX_WIDTH = 15

TERMINAL_ID_PATTERN = re.compile(r"^\s*\[(\d+)\].*")

logger = logging.getLogger(__name__)


def _find_marker(lines: Sequence[str], marker: str) -> Optional[int]:
    for index, line in enumerate(lines):
        if marker in line:
            return index
    return None


def _clean_active(lines: Sequence[str]) -> List[str]:
    cleaned = []
    for index, line in enumerate(lines):
        if index == 0:
            cleaned.append(line[ACTIVE_PREFIX_WIDTH:])
        else:
            cleaned.append(line.lstrip("\t-"))
    return [line for line in cleaned if line.strip()]


def _clean_queued(lines: Sequence[str]) -> List[str]:
    return [line.lstrip() for line in lines if line.strip()]


def parse_queue_output(output: Sequence[str]) -> RemoteQueueSnapshot:
    """Turns `queue` output lines into a snapshot.

    Args:
        output: Raw output lines, trailing summary line included.

    Returns:
        An INACTIVE snapshot when lftp has no backgrounded session, an ACTIVE
        snapshot with the active and queued entries, or an UNPARSABLE snapshot
        when a session exists but its listing isn't recognised.
    """
    raw = tuple(output)
    lines = [line.rstrip("\r\n") for line in output]
    while lines and not lines[-1].strip():
        lines.pop()

    if not lines:
        logger.debug("lftp returned no queue output; assuming no backgrounded session.")
        return RemoteQueueSnapshot.inactive(raw)

    if NOT_BACKGROUNDED_MARKER in lines[-1]:
        logger.debug("It appears that lftp is NOT backgrounded.")
        return RemoteQueueSnapshot.inactive(raw)

    # the last line is lftp's summary
    lines = lines[:-1]
    if not lines:
        return RemoteQueueSnapshot.inactive(raw)

    match = TERMINAL_ID_PATTERN.match(lines[0])
    if not match:
        logger.debug("No terminal id at the head of the queue listing; lftp is not backgrounded.")
        return RemoteQueueSnapshot.inactive(raw)
    terminal_id = match.group(1)
    logger.debug(f"Setting the lftp terminal attachment ID to {terminal_id}.")

    active_key = _find_marker(lines, ACTIVE_MARKER)
    queued_key = _find_marker(lines, QUEUED_MARKER)

    if active_key is None:
        if queued_key is not None:
            queued = _clean_queued(lines[queued_key + 1:])
            return RemoteQueueSnapshot(
                state=QueueState.ACTIVE, terminal_id=terminal_id, queued=tuple(queued), raw=raw,
            )
        leftovers = [line for line in lines[1:] if line.strip()]
        if leftovers:
            logger.warning(
                "The lftp queue listing could not be parsed; no active-items marker was found. "
                f"Unrecognised lines: {leftovers}"
            )
            return RemoteQueueSnapshot(state=QueueState.UNPARSABLE, terminal_id=terminal_id, raw=raw)
        logger.debug("The backgrounded lftp session is idle.")
        return RemoteQueueSnapshot(state=QueueState.ACTIVE, terminal_id=terminal_id, raw=raw)

    if queued_key is not None and queued_key > active_key:
        active = _clean_active(lines[active_key:queued_key])
        queued = _clean_queued(lines[queued_key + 1:])
    else:
        active = _clean_active(lines[active_key:])
        queued = []

    logger.debug(f"Parsed lftp queue: {len(active)} active, {len(queued)} queued.")
    return RemoteQueueSnapshot(
        state=QueueState.ACTIVE,
        terminal_id=terminal_id,
        active=tuple(active),
        queued=tuple(queued),
        raw=raw,
    )
