"""Builds and runs lftp command scripts.

Commands are accumulated on an `LftpManager` and sent to lftp as a single
`-c` script, either to a fresh lftp process that detaches into the
background, or to an already backgrounded session through `attach`.
"""
import logging
import shutil
import subprocess
from typing import List, Optional

from .utils import DependencyError, TransferToolError, _create_safe_command_for_logging

LFTP_EXEC_TIMEOUT = 120

logger = logging.getLogger(__name__)


def check_lftp_installed(lftp_path: str = "lftp") -> str:
    """Checks that lftp can be found and returns its resolved path.

    Raises:
        DependencyError: If the lftp executable is not found.
    """
    resolved = shutil.which(lftp_path)
    if resolved is None:
        raise DependencyError(
            f"LFTP is either not installed on this system, or not in the path ('{lftp_path}'). "
            "Set lftp_path in the Locomotive config or see https://github.com/lavv17/lftp"
        )
    logger.debug(f"'lftp' dependency check passed ({resolved}).")
    return resolved


def quote_lftp_path(path: str) -> str:
    """Quotes a path for the lftp command language."""
    escaped = path.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class LftpManager:
    """Accumulates lftp commands and executes them as one invocation.

    Attributes:
        host: Remote host name.
        port: Remote SSH port.
        username: Login user.
        password: Login password (may be empty with key-file auth).
        private_keyfile: Optional private key used by lftp's ssh connect program.
        working_dir: Local directory transfers are written to.
        lftp_path: lftp executable.
        command_log: Every script executed so far, password redacted.
    """

    def __init__(self, host: str, port: int, username: str, password: str = "",
                 working_dir: str = ".", private_keyfile: Optional[str] = None,
                 lftp_path: str = "lftp"):
        self.host = host
        self.port = port
        self.username = username
        self.password = password or ""
        self.private_keyfile = private_keyfile
        self.working_dir = working_dir.rstrip("/") + "/"
        self.lftp_path = lftp_path
        self.commands: List[str] = []
        self.command_log: List[str] = []

    def connect_command(self) -> str:
        """Returns the connection preamble for every script."""
        cmd = f"connect -p {self.port} -u {self.username},{self.password} sftp://{self.host}"
        if self.private_keyfile:
            cmd = f'set sftp:connect-program "ssh -a -x -i {self.private_keyfile}"; {cmd}'
        return cmd

    def add_command(self, command: str) -> "LftpManager":
        self.commands.append(command)
        return self

    def set_speed_limit(self, limit: int) -> "LftpManager":
        self.add_command(f"set net:limit-total-rate {limit}")
        logger.debug(f"Speed limit set to {limit} Bps.")
        return self

    def set_queue_transfer_limit(self, limit: int) -> "LftpManager":
        self.add_command(f"set cmd:queue-parallel {limit}")
        logger.debug(f"Parallel transfer limit set to {limit} item(s).")
        return self

    def mirror_dir(self, path: str, pget: Optional[int] = None,
                   parallel: Optional[int] = None, queue: bool = False) -> "LftpManager":
        """Adds a `mirror -c` of a remote directory into the working directory.

        Args:
            path: Remote directory.
            pget: Segments per file (`--use-pget-n`).
            parallel: Files transferred in parallel (`--parallel`).
            queue: Queue the command in the session instead of running it now.
        """
        cmd = "mirror -c"
        if pget:
            cmd += f" --use-pget-n={pget}"
        if parallel:
            cmd += f" --parallel={parallel}"
        cmd += f" {quote_lftp_path(path)} {quote_lftp_path(self.working_dir)}"
        if queue:
            cmd = f"queue {cmd}"
        return self.add_command(cmd)

    def pget_file(self, path: str, connections: Optional[int] = None,
                  queue: bool = False) -> "LftpManager":
        """Adds a segmented `pget -c` of a single remote file."""
        cmd = "pget -c"
        if connections:
            cmd += f" -n {connections}"
        cmd += f" {quote_lftp_path(path)} -o {quote_lftp_path(self.working_dir)}"
        if queue:
            cmd = f"queue {cmd}"
        return self.add_command(cmd)

    def build_script(self) -> str:
        parts = [self.connect_command()] + self.commands
        return "; ".join(parts) + ";"

    def _log_script(self, script: str, level: int = logging.DEBUG) -> str:
        safe = _create_safe_command_for_logging(script, self.password)
        logger.log(level, f"Executing lftp commands: {safe}")
        return safe

    def _run(self, args: List[str], stdin_text: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                args,
                input=stdin_text,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=LFTP_EXEC_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise TransferToolError(f"lftp timed out after {LFTP_EXEC_TIMEOUT}s", returncode=-1) from e
        except OSError as e:
            raise TransferToolError(f"lftp could not be started: {e}", returncode=-1) from e

    def execute(self, detach: bool = False, attach: bool = False,
                terminal_id: Optional[str] = None) -> List[str]:
        """Runs every accumulated command as one lftp invocation.

        Args:
            detach: Start a new lftp process that keeps running in the
                background; returns without waiting for it.
            attach: Feed the script to an existing backgrounded session.
            terminal_id: The session to attach to; lftp picks one when None.

        Returns:
            Output lines of the invocation (empty for a detached start).

        Raises:
            TransferToolError: If lftp exits non-zero or cannot be started.
        """
        script = self.build_script()
        self.commands = []

        if attach:
            attach_cmd = "attach" if terminal_id is None else f"attach {terminal_id}"
            safe = self._log_script(script)
            result = self._run([self.lftp_path, "-c", attach_cmd], stdin_text=script + "\n")
            output = result.stdout.splitlines() if result.stdout else []
            if result.returncode != 0:
                logger.error(" ".join(output))
                raise TransferToolError(
                    f"lftp exited with code {result.returncode}", result.returncode, result.stdout or ""
                )
            self.command_log.append(safe)
            return output

        if detach:
            script += " exit parent;"
            safe = self._log_script(script)
            try:
                process = subprocess.Popen(
                    [self.lftp_path, "-c", script],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                raise TransferToolError(f"lftp could not be started: {e}", returncode=-1) from e
            logger.debug(f"Started backgrounded lftp process (PID {process.pid}).")
            self.command_log.append(safe)
            return []

        safe = self._log_script(script)
        result = self._run([self.lftp_path, "-c", script])
        output = result.stdout.splitlines() if result.stdout else []
        if result.returncode != 0:
            logger.error(" ".join(output))
            raise TransferToolError(
                f"lftp exited with code {result.returncode}", result.returncode, result.stdout or ""
            )
        self.command_log.append(safe)
        return output

    def get_queue_status(self) -> List[str]:
        """Asks a backgrounded lftp session for its queue listing.

        When no session exists lftp says so on its last output line (and may
        exit non-zero); that answer is returned instead of raising.
        """
        logger.debug("Checking lftp status via queue attachment attempt.")
        script = f"{self.connect_command()}; queue;"
        self._log_script(script)
        result = self._run([self.lftp_path, "-c", "attach"], stdin_text=script + "\n")
        output = result.stdout.splitlines() if result.stdout else []
        if result.returncode != 0:
            if output and "backgrounded" in output[-1]:
                return output
            logger.error(" ".join(output))
            raise TransferToolError(
                f"lftp queue probe exited with code {result.returncode}",
                result.returncode, result.stdout or "",
            )
        return output

    def last_command(self) -> Optional[str]:
        return self.command_log[-1] if self.command_log else None
