import atexit
import errno
import fcntl
import hashlib
import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler

from .utils import AlreadyRunningError


class LockFile:
    """Ensures that only one identical invocation runs at a time.

    This class uses the `fcntl` module to create an atomic, advisory lock on a
    file. Invocations with different arguments use different lock files (see
    `lock_path_for_args`) so several Locomotive instances may run side by
    side. The lock is automatically released upon exit.

    Attributes:
        lock_path: The Path object for the lock file.
        lock_fd: The open lock file.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self.lock_fd = None
        self._acquired = False

    def acquire(self) -> None:
        """Acquires an exclusive, non-blocking lock, handling stale locks.

        If the lock file exists, it reads the PID and checks if the process
        is still running. If not, the stale lock is removed.

        Raises:
            AlreadyRunningError: If a live process holds the lock.
        """
        if self.lock_path.exists():
            pid_str = self.get_locking_pid()
            if pid_str and pid_str.isdigit():
                pid = int(pid_str)
                if pid_exists(pid) and pid != os.getpid():
                    raise AlreadyRunningError(f"Locomotive is already running with PID {pid} "
                                              f"(lock file: {self.lock_path})")
                logging.warning(f"Removing stale lock file for PID {pid} that is no longer running.")
                self.lock_path.unlink(missing_ok=True)
            else:
                if pid_str:
                    logging.warning(f"Removing corrupt lock file with invalid PID: '{pid_str}'.")
                self.lock_path.unlink(missing_ok=True)

        try:
            self.lock_fd = open(self.lock_path, 'w')
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            self.lock_fd.write(str(os.getpid()))
            self.lock_fd.flush()
            atexit.register(self.release)
            self._acquired = True
        except OSError as e:
            if self.lock_fd:
                self.lock_fd.close()
                self.lock_fd = None
            pid = self.get_locking_pid()
            holder = f" with PID {pid}" if pid else ""
            raise AlreadyRunningError(
                f"Locomotive is already running{holder} (lock file: {self.lock_path})"
            ) from e

    def release(self) -> None:
        """Releases the lock and deletes the lock file."""
        if self.lock_fd and self._acquired:
            try:
                fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
                self.lock_fd.close()
                self.lock_path.unlink(missing_ok=True)
                self._acquired = False
            except OSError as e:
                logging.error(f"Error releasing lock file '{self.lock_path}': {e}")
            finally:
                self.lock_fd = None

    def get_locking_pid(self) -> Optional[str]:
        """Reads the PID written by the lock holder, or None."""
        if self.lock_path.exists():
            try:
                return self.lock_path.read_text().strip()
            except OSError:
                return None
        return None

    @property
    def acquired(self) -> bool:
        return self._acquired


def lock_path_for_args(argv: Sequence[str], lock_dir: Optional[Path] = None) -> Path:
    """Names the lock file after a hash of the full argument list."""
    lock_id = hashlib.md5(" ".join(argv).encode("utf-8")).hexdigest()
    lock_dir = lock_dir or Path(tempfile.gettempdir())
    return lock_dir / f"locomotive-{lock_id}.lock"


def pid_exists(pid: int) -> bool:
    """Checks if a process with the given PID is currently running.

    This uses `os.kill` with a signal of 0, which does not actually send a
    signal but does perform error checking.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as err:
        if err.errno == errno.ESRCH:
            return False
        elif err.errno == errno.EPERM:
            return True
        else:
            raise
    return True


def setup_logging(app_home: Path, debug: bool) -> Path:
    """Configures the root logger for file-based logging.

    Messages go to a timestamped file in `<app_home>/logs`. Console logging
    is added separately by `add_console_handler`.

    Returns:
        The path of the log file.
    """
    log_dir = app_home / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    log_file_path = log_dir / f"locomotive_{timestamp}.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    logging.getLogger("paramiko").setLevel(logging.WARNING)
    return log_file_path


def add_console_handler(simple: bool, debug: bool) -> logging.Handler:
    """Adds console output: a plain stream with `simple`, rich otherwise."""
    logger = logging.getLogger()
    log_level = logging.DEBUG if debug else logging.INFO
    if simple:
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    else:
        handler = RichHandler(level=log_level, show_path=False, rich_tracebacks=True,
                              markup=False, console=Console(stderr=True))
        handler.setFormatter(logging.Formatter('%(message)s'))
    handler.setLevel(log_level)
    logger.addHandler(handler)
    return handler
