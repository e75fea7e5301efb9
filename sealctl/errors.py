"""Exception hierarchy for sealctl.

Configuration errors are fatal and raised before any remote call. Remote
execution errors are per host and are aggregated by the host execution driver
into a single ``BatchExecutionError``.
"""
from typing import Dict, Optional


class SealctlError(Exception):
    """Base class for every error raised by sealctl."""


class ConfigurationError(SealctlError):
    """Invalid cluster description or an illegal request. Never retried."""


class AlreadyInitializedError(ConfigurationError):
    """Install was requested on a cluster that is already bootstrapped."""


class UnsupportedOperationError(SealctlError):
    """The operation is not supported by the current cluster image."""


class ConfirmationAborted(SealctlError):
    """The operator declined a destructive action."""


class TokenParseError(SealctlError):
    """Bootstrap output did not contain the expected join command markers."""


class RemoteExecutionError(SealctlError):
    """A failure bound to one host."""

    def __init__(self, host: str, message: str):
        super().__init__(message)
        self.host = host


class HostNotManagedError(RemoteExecutionError):
    def __init__(self, host: str):
        super().__init__(host, f"host {host} is not managed by this cluster")


class SSHConnectError(RemoteExecutionError):
    pass


class TransferError(RemoteExecutionError):
    pass


class CommandTimeoutError(RemoteExecutionError):
    def __init__(self, host: str, command: str, timeout: float):
        super().__init__(host, f"command timed out after {timeout}s: {command}")
        self.command = command
        self.timeout = timeout


class RemoteCommandError(RemoteExecutionError):
    def __init__(self, host: str, command: str, exit_status: int, stderr: str = ""):
        message = f"command exited with status {exit_status}: {command}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(host, message)
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class BatchExecutionError(SealctlError):
    """One or more hosts of a concurrent batch failed.

    ``failures`` maps every failed host address to its underlying exception.
    """

    def __init__(self, failures: Dict[str, BaseException], step: Optional[str] = None):
        self.failures = dict(failures)
        self.step = step
        super().__init__(self._format())

    @property
    def hosts(self):
        return sorted(self.failures)

    def with_step(self, step: str) -> "BatchExecutionError":
        return BatchExecutionError(self.failures, step=step)

    def _format(self) -> str:
        prefix = f"{self.step}: " if self.step else ""
        lines = [f"{prefix}{len(self.failures)} host(s) failed"]
        for host in self.hosts:
            lines.append(f"  [{host}] {self.failures[host]}")
        return "\n".join(lines)
