import hashlib
import json
import logging
import os
import time
from functools import wraps
from pathlib import Path
from typing import Callable, Any, List, Union

from .transfer_types import ItemSize


def retry(tries: int = 2, delay: int = 5, backoff: int = 1) -> Callable:
    """Creates a decorator that retries a function call.

    This decorator will re-invoke the decorated function upon exceptions up to
    a specified number of times, with an optional exponential backoff.

    Args:
        tries: The maximum number of attempts.
        delay: The initial delay between retries in seconds.
        backoff: The factor by which the delay should be multiplied after each
            failed attempt. A value of 1 results in a fixed delay.

    Returns:
        A decorator that can be applied to a function.
    """
    def deco_retry(f: Callable) -> Callable:
        @wraps(f)
        def f_retry(*args: Any, **kwargs: Any) -> Any:
            _tries, _delay = tries, delay
            for attempt in range(1, _tries + 1):
                try:
                    return f(*args, **kwargs)
                except AuthenticationError:
                    raise
                except Exception as e:
                    if attempt == _tries:
                        logging.error(f"'{f.__name__}' failed on the final attempt ({attempt}/{_tries}): {e}")
                        raise

                    msg = (f"'{f.__name__}' failed with '{e}'. Attempt {attempt}/{_tries}. "
                           f"Retrying in {_delay} seconds...")
                    logging.warning(msg)
                    time.sleep(_delay)
                    _delay *= backoff
        return f_retry
    return deco_retry


class LocomotiveError(Exception):
    """Base class for errors that abort the current run."""
    exit_code = 1


class ConfigurationError(LocomotiveError):
    """Invalid or missing configuration."""
    exit_code = 2


class PathMappingError(ConfigurationError):
    """Source and target path lists cannot be mapped onto each other."""


class DependencyError(LocomotiveError):
    """A required external program is missing."""
    exit_code = 3


class AuthenticationError(LocomotiveError):
    """The SSH/SFTP session could not be authenticated."""
    exit_code = 4


class AlreadyRunningError(LocomotiveError):
    """An identical invocation holds the lock; not a failure."""
    exit_code = 0


class TransferToolError(LocomotiveError):
    """lftp exited with a non-zero status."""
    exit_code = 5

    def __init__(self, message: str, returncode: int = 1, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


def _create_safe_command_for_logging(command: Union[str, List[str]], password: str = "") -> str:
    """Returns a printable command with the lftp login password redacted."""
    text = command if isinstance(command, str) else " ".join(command)
    if password:
        text = text.replace(password, "********")
    return text


def make_fingerprint(name: str, mtime: Union[int, float]) -> str:
    """Builds the stable identity hash of an item from its name and mtime.

    Two listings of the same remote item always produce the same fingerprint,
    while a re-uploaded item with the same name gets a new one because its
    modification time changed.
    """
    serial = json.dumps([name, int(mtime)], ensure_ascii=False)
    return hashlib.md5(serial.encode("utf-8")).hexdigest()


def calculate_local_size(path: Path) -> ItemSize:
    """Calculates total bytes and regular file count of a local file or directory."""
    if path.is_file():
        return ItemSize(size_bytes=path.stat().st_size, file_count=1)

    size_bytes = 0
    file_count = 0
    for root, _dirs, files in os.walk(path):
        for file_name in files:
            file_path = os.path.join(root, file_name)
            if os.path.isfile(file_path):
                size_bytes += os.path.getsize(file_path)
                file_count += 1
    return ItemSize(size_bytes=size_bytes, file_count=file_count)


def normalize_remote_path(path: str) -> str:
    """Strips trailing slashes (but keeps a lone root slash)."""
    path = path.replace('\\', '/')
    return path.rstrip('/') or '/'
