import logging
import stat
import typing
from typing import List, Optional

import paramiko

from .transfer_types import ItemSize, SourceItem
from .utils import AuthenticationError, normalize_remote_path, retry

# Constants
DEFAULT_KEEPALIVE_INTERVAL = 30
SSH_CONNECT_TIMEOUT = 10
MAX_RETRY_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 5


def _join(parent: str, name: str) -> str:
    return f"{parent.rstrip('/')}/{name}"


class RemoteFilesystem:
    """One authenticated SFTP session to the source host.

    The session is opened once per run. Listing, sizing and removal of remote
    items all go through it.

    Attributes:
        host: The hostname or IP address of the SSH server.
        port: The port number of the SSH server.
        username: The username for authentication.
        password: The password, or the key passphrase with key-file auth.
        private_keyfile: Optional path to a private key.
        public_keyfile: Optional path to the matching public key; reported
            when key authentication fails.
    """

    def __init__(self, host: str, port: int, username: str, password: Optional[str] = None,
                 private_keyfile: Optional[str] = None, public_keyfile: Optional[str] = None,
                 connect_timeout: int = SSH_CONNECT_TIMEOUT):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_keyfile = private_keyfile
        self.public_keyfile = public_keyfile
        self.connect_timeout = connect_timeout
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def connect(self) -> "RemoteFilesystem":
        """Opens the SSH connection and SFTP channel.

        Raises:
            AuthenticationError: If the server rejects the credentials or
                cannot be reached.
        """
        ssh_client = paramiko.SSHClient()
        ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs: typing.Dict[str, typing.Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.connect_timeout,
        }
        if self.private_keyfile:
            connect_kwargs["key_filename"] = self.private_keyfile
            connect_kwargs["look_for_keys"] = False
            if self.password:
                connect_kwargs["passphrase"] = self.password
        else:
            connect_kwargs["password"] = self.password
            connect_kwargs["look_for_keys"] = False
            connect_kwargs["allow_agent"] = False

        try:
            ssh_client.connect(**connect_kwargs)
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            logging.error(f"SSH connection attempt to {self.host}:{self.port} failed: {e}")
            if self.private_keyfile:
                public_key = self.public_keyfile or f"{self.private_keyfile}.pub"
                logging.error(f"Key pair used: {self.private_keyfile} / {public_key}")
            raise AuthenticationError(
                "SSH connection attempt to host failed. Check your authentication settings and try again."
            ) from e

        transport = ssh_client.get_transport()
        if transport:
            transport.set_keepalive(DEFAULT_KEEPALIVE_INTERVAL)
        self._ssh = ssh_client
        self._sftp = ssh_client.open_sftp()
        logging.debug("SSH connection attempt succeeded.")
        return self

    @property
    def sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise RuntimeError("Remote filesystem is not connected")
        return self._sftp

    def close(self) -> None:
        if self._ssh is not None:
            try:
                self._ssh.close()
            except Exception as e:
                logging.debug(f"Ignoring error while closing SSH connection: {e}")
        self._ssh = None
        self._sftp = None

    @retry(tries=MAX_RETRY_ATTEMPTS, delay=RETRY_DELAY_SECONDS)
    def list_dir(self, remote_path: str) -> List[SourceItem]:
        """Lists the immediate children of a remote directory."""
        remote_path = normalize_remote_path(remote_path)
        items = []
        for attr in self.sftp.listdir_attr(remote_path):
            if attr.filename in (".", ".."):
                continue
            items.append(SourceItem(
                name=attr.filename,
                mtime=int(attr.st_mtime or 0),
                size=int(attr.st_size or 0),
                is_dir=stat.S_ISDIR(attr.st_mode or 0),
                path=_join(remote_path, attr.filename),
                source_dir=remote_path,
            ))
        items.sort(key=lambda item: item.name)
        return items

    def count_children(self, remote_path: str) -> int:
        """Counts the immediate children of a remote directory."""
        return len(self.sftp.listdir(normalize_remote_path(remote_path)))

    def _walk_sizes(self, remote_path: str, totals: typing.List[int]) -> None:
        try:
            entries = self.sftp.listdir_attr(remote_path)
        except FileNotFoundError:
            logging.warning(f"Directory vanished during scan, skipping: {remote_path}")
            return
        for attr in entries:
            item_path = _join(remote_path, attr.filename)
            if stat.S_ISDIR(attr.st_mode or 0):
                self._walk_sizes(item_path, totals)
            elif stat.S_ISREG(attr.st_mode or 0):
                totals[0] += int(attr.st_size or 0)
                totals[1] += 1

    def calculate_item_size(self, item: SourceItem) -> ItemSize:
        """Total bytes and regular file count of a remote item.

        Directories are walked recursively; a plain file counts as one.
        """
        if not item.is_dir:
            return ItemSize(size_bytes=item.size, file_count=1)
        totals = [0, 0]
        self._walk_sizes(item.path, totals)
        return ItemSize(size_bytes=totals[0], file_count=totals[1])

    def exists(self, remote_path: str) -> bool:
        try:
            self.sftp.stat(normalize_remote_path(remote_path))
            return True
        except FileNotFoundError:
            return False

    def remove(self, remote_path: str) -> None:
        """Removes a remote file, or a directory and everything below it.

        Raises:
            IOError: If any entry could not be removed.
        """
        remote_path = normalize_remote_path(remote_path)
        if remote_path == "/":
            raise IOError("Refusing to remove the remote root directory")
        attrs = self.sftp.lstat(remote_path)
        if not stat.S_ISDIR(attrs.st_mode or 0):
            self.sftp.remove(remote_path)
            return
        for attr in self.sftp.listdir_attr(remote_path):
            child = _join(remote_path, attr.filename)
            if stat.S_ISDIR(attr.st_mode or 0):
                self.remove(child)
            else:
                self.sftp.remove(child)
        self.sftp.rmdir(remote_path)

    def __enter__(self) -> "RemoteFilesystem":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
