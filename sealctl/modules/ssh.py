"""
SSH transport built on paramiko.

Connections are pooled per ``user@host:port`` and are safe to share between
the threads of a batch that target different hosts.
"""
import logging
import os
import posixpath
import shlex
import stat
import threading
import time
from typing import Dict, Optional, Tuple

import paramiko

from ..errors import CommandTimeoutError, RemoteCommandError, SSHConnectError, TransferError
from .models import Host, SSHCredentials

logger = logging.getLogger("sealctl.ssh")

_KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def load_private_key(path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Load a private key of any supported type.

    Raises:
        SSHConnectError: If no key class can read the file
    """
    path = os.path.expanduser(path)
    last_error: Optional[Exception] = None
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key_file(path, password=passphrase)
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
            continue
        except OSError as e:
            raise SSHConnectError(path, f"cannot read private key {path}: {e}")
    raise SSHConnectError(path, f"unsupported or encrypted private key {path}: {last_error}")


class SSHConnection:
    """One authenticated SSH session to a host."""

    def __init__(self, host: str, credentials: SSHCredentials, connect_timeout: float = 30):
        """Initialize SSH connection.

        Args:
            host: Remote host to connect to
            credentials: User, password or key, passphrase and port
            connect_timeout: Connection timeout in seconds
        """
        self.host = host
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _connect(self) -> paramiko.SSHClient:
        with self._lock:
            transport = self._client.get_transport() if self._client else None
            if transport is not None and transport.is_active():
                return self._client

            creds = self.credentials
            pkey = load_private_key(creds.private_key, creds.passphrase) if creds.private_key else None

            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            logger.debug(f"Connecting to {creds.user}@{self.host}:{creds.port}")
            try:
                client.connect(
                    hostname=self.host,
                    port=creds.port,
                    username=creds.user,
                    password=creds.password if not pkey else None,
                    pkey=pkey,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except (paramiko.SSHException, OSError) as e:
                client.close()
                raise SSHConnectError(self.host, f"failed to connect to {creds.user}@{self.host}:{creds.port}: {e}")
            self._client = client
            return client

    def _wrap(self, command: str) -> str:
        """Run through bash, escalating with sudo for non-root users."""
        wrapped = f"bash -c {shlex.quote(command)}"
        if self.credentials.user != 'root':
            wrapped = f"sudo -E {wrapped}"
        return wrapped

    def execute(self, command: str, timeout: float) -> Tuple[int, str, str]:
        """Execute a command and wait at most ``timeout`` seconds for it.

        Returns:
            tuple: (exit_status, stdout, stderr)

        Raises:
            SSHConnectError: If the session cannot be opened
            CommandTimeoutError: If the command outlives ``timeout``
        """
        client = self._connect()
        try:
            channel = client.get_transport().open_session(timeout=self.connect_timeout)
            channel.exec_command(self._wrap(command))
        except (paramiko.SSHException, OSError) as e:
            raise SSHConnectError(self.host, f"failed to open session on {self.host}: {e}")

        stdout, stderr = [], []
        deadline = time.monotonic() + timeout
        try:
            while True:
                while channel.recv_ready():
                    stdout.append(channel.recv(32768))
                while channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(32768))
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() > deadline:
                    raise CommandTimeoutError(self.host, command, timeout)
                time.sleep(0.05)
            exit_status = channel.recv_exit_status()
        finally:
            channel.close()

        return (
            exit_status,
            b"".join(stdout).decode("utf-8", errors="replace"),
            b"".join(stderr).decode("utf-8", errors="replace"),
        )

    def cmd(self, command: str, timeout: float) -> str:
        """Execute a command and return its stdout.

        Raises:
            RemoteCommandError: If the command exits non-zero
        """
        exit_status, stdout, stderr = self.execute(command, timeout)
        if exit_status != 0:
            raise RemoteCommandError(self.host, command, exit_status, stderr or stdout)
        return stdout

    def copy(self, local_path: str, remote_path: str) -> None:
        """Upload a file or a directory tree to ``remote_path``."""
        if not os.path.exists(local_path):
            raise TransferError(self.host, f"local path not found: {local_path}")
        client = self._connect()
        try:
            with client.open_sftp() as sftp:
                if os.path.isdir(local_path):
                    self._put_dir(sftp, local_path, remote_path)
                else:
                    self._mkdirs(sftp, posixpath.dirname(remote_path))
                    self._put_file(sftp, local_path, remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(self.host, f"failed to copy {local_path} to {self.host}:{remote_path}: {e}")

    def fetch(self, remote_path: str, local_path: str) -> None:
        """Download a single remote file to ``local_path``."""
        client = self._connect()
        try:
            parent = os.path.dirname(os.path.abspath(local_path))
            os.makedirs(parent, exist_ok=True)
            with client.open_sftp() as sftp:
                sftp.get(remote_path, local_path)
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(self.host, f"failed to fetch {self.host}:{remote_path} to {local_path}: {e}")

    def _put_dir(self, sftp: paramiko.SFTPClient, local_dir: str, remote_dir: str) -> None:
        self._mkdirs(sftp, remote_dir)
        for root, dirs, files in os.walk(local_dir):
            rel = os.path.relpath(root, local_dir)
            target = remote_dir if rel == '.' else posixpath.join(remote_dir, *rel.split(os.sep))
            for name in dirs:
                self._mkdirs(sftp, posixpath.join(target, name))
            for name in files:
                self._put_file(sftp, os.path.join(root, name), posixpath.join(target, name))

    @staticmethod
    def _put_file(sftp: paramiko.SFTPClient, local_file: str, remote_file: str) -> None:
        sftp.put(local_file, remote_file)
        sftp.chmod(remote_file, stat.S_IMODE(os.stat(local_file).st_mode))

    @staticmethod
    def _mkdirs(sftp: paramiko.SFTPClient, remote_dir: str) -> None:
        if not remote_dir or remote_dir == '/':
            return
        try:
            sftp.stat(remote_dir)
            return
        except IOError:
            pass
        SSHConnection._mkdirs(sftp, posixpath.dirname(remote_dir))
        sftp.mkdir(remote_dir)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


class ConnectionPool:
    """Thread-safe pool of SSH connections, one per user@host:port."""

    def __init__(self, connect_timeout: float = 30):
        self.connect_timeout = connect_timeout
        self.connections: Dict[str, SSHConnection] = {}
        self.lock = threading.RLock()

    def get_connection(self, host: Host) -> SSHConnection:
        """Get (or lazily create) the connection for ``host``.

        The connection is not opened until its first command.
        """
        creds = host.ssh
        connection_id = f"{creds.user}@{host.ip}:{creds.port}"
        with self.lock:
            conn = self.connections.get(connection_id)
            if conn is None:
                logger.debug(f"Creating new SSH connection to {connection_id}")
                conn = SSHConnection(host.ip, creds, connect_timeout=self.connect_timeout)
                self.connections[connection_id] = conn
            return conn

    def close_all(self) -> None:
        """Close all connections in the pool."""
        with self.lock:
            for conn in self.connections.values():
                conn.close()
            self.connections.clear()
