"""Host execution driver.

Fans a shell command or a file transfer out to many hosts at once and waits
for every host to finish before returning. A failing host never cancels its
siblings; all per-host failures are reported together.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config import Config
from ..errors import BatchExecutionError, ConfigurationError, HostNotManagedError, RemoteExecutionError
from ..utils import shell
from .models import ENV_HOST_IP, Host, Taint
from .ssh import ConnectionPool

logger = logging.getLogger("sealctl.infradriver")

ClientFactory = Callable[[Host], Any]


@dataclass
class HostOutcome:
    """Result of one host's task within a batch."""
    host: str
    output: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    """Every host outcome of a batch, in submission order."""
    outcomes: Dict[str, HostOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [h for h, o in self.outcomes.items() if o.ok]

    @property
    def failures(self) -> Dict[str, BaseException]:
        return {h: o.error for h, o in self.outcomes.items() if not o.ok}

    @property
    def outputs(self) -> Dict[str, Any]:
        return {h: o.output for h, o in self.outcomes.items() if o.ok}

    def merge(self, other: "BatchResult") -> "BatchResult":
        """Combine two steps of one batch; a later failure wins over an earlier success."""
        merged = dict(self.outcomes)
        for host, outcome in other.outcomes.items():
            if host not in merged or not outcome.ok:
                merged[host] = outcome
        return BatchResult(merged)

    def raise_for_failures(self, step: Optional[str] = None) -> None:
        failures = self.failures
        if failures:
            raise BatchExecutionError(failures, step=step)


class InfraDriver:
    """Executes operations against the managed host set over SSH."""

    def __init__(
        self,
        hosts: Iterable[Host],
        cluster_env: Optional[Dict[str, Any]] = None,
        client_factory: Optional[ClientFactory] = None,
        command_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ):
        """Initialize the driver.

        Args:
            hosts: Every host the driver may talk to, including hosts that are
                about to join or leave the cluster
            cluster_env: Cluster-wide env, overridden per host by ``Host.env``
            client_factory: Builds the SSH client for a host; defaults to a
                paramiko connection pool
            command_timeout: Default per-command timeout in seconds
            connect_timeout: SSH connect timeout in seconds
            max_workers: Upper bound on concurrently running host tasks
        """
        self._hosts: Dict[str, Host] = {h.ip: h for h in hosts}
        self.cluster_env = dict(cluster_env or {})
        self.command_timeout = command_timeout or Config.COMMAND_TIMEOUT
        self.max_workers = max_workers or Config.MAX_WORKERS
        self._pool: Optional[ConnectionPool] = None
        if client_factory is None:
            self._pool = ConnectionPool(connect_timeout=connect_timeout or Config.SSH_TIMEOUT)
            client_factory = self._pool.get_connection
        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # Host metadata
    # ------------------------------------------------------------------
    @property
    def hosts(self) -> List[str]:
        return list(self._hosts)

    def get_host(self, ip: str) -> Host:
        host = self._hosts.get(ip)
        if host is None:
            raise HostNotManagedError(ip)
        return host

    def get_host_env(self, ip: str) -> Dict[str, Any]:
        """Cluster env merged with the host's own env; the host wins."""
        env = dict(self.cluster_env)
        env.update(self.get_host(ip).env)
        env.setdefault(ENV_HOST_IP, ip)
        return env

    def get_host_labels(self, ip: str) -> Dict[str, str]:
        return dict(self.get_host(ip).labels)

    def get_host_taints(self, ip: str) -> List[Taint]:
        return list(self.get_host(ip).taints)

    def client(self, ip: str):
        return self._client_factory(self.get_host(ip))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def run(self, hosts: Iterable[str], task: Callable[[str], Any]) -> BatchResult:
        """Run ``task(host)`` for every host concurrently and wait for all of them.

        Unknown hosts fail immediately with ``HostNotManagedError`` and are
        never submitted. Every other host runs to completion regardless of
        how its siblings fare.
        """
        hosts = list(dict.fromkeys(hosts))
        result = BatchResult({h: HostOutcome(h) for h in hosts})
        runnable = []
        for host in hosts:
            if host in self._hosts:
                runnable.append(host)
            else:
                result.outcomes[host].error = HostNotManagedError(host)

        if not runnable:
            return result

        def _timed(host: str):
            start = time.monotonic()
            try:
                return task(host), None, time.monotonic() - start
            except Exception as e:
                return None, e, time.monotonic() - start

        workers = max(1, min(self.max_workers, len(runnable)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="host") as executor:
            future_to_host = {executor.submit(_timed, host): host for host in runnable}
            for future in as_completed(future_to_host):
                host = future_to_host[future]
                output, error, duration = future.result()
                outcome = result.outcomes[host]
                outcome.output, outcome.error, outcome.duration = output, error, duration
                if error is None:
                    logger.debug(f"[{host}] ✅ done in {duration:.1f}s")
                else:
                    logger.error(f"[{host}] ❌ failed after {duration:.1f}s: {error}")
        return result

    def execute(self, hosts: Iterable[str], task: Callable[[str], Any], step: Optional[str] = None) -> Dict[str, Any]:
        """Like ``run`` but raise one ``BatchExecutionError`` on any failure.

        Returns:
            dict: host -> task return value
        """
        result = self.run(hosts, task)
        result.raise_for_failures(step)
        return result.outputs

    # ------------------------------------------------------------------
    # Single host primitives
    # ------------------------------------------------------------------
    def cmd(self, host: str, command: str, timeout: Optional[float] = None) -> str:
        """Run ``command`` on one host and return its stdout."""
        client = self.client(host)
        logger.debug(f"[{host}] $ {command.splitlines()[0] if command else command}")
        return client.cmd(command, timeout or self.command_timeout)

    def cmd_to_string(self, host: str, command: str) -> str:
        return self.cmd(host, command).strip()

    def copy_to(self, host: str, local_path: str, remote_path: str) -> None:
        self.client(host).copy(local_path, remote_path)

    def copy_from(self, host: str, remote_path: str, local_path: str) -> None:
        self.client(host).fetch(remote_path, local_path)

    def get_hostname(self, host: str) -> str:
        hostname = self.cmd_to_string(host, "hostname")
        if not hostname:
            raise RemoteExecutionError(host, f"failed to get remote hostname of host({host})")
        return hostname.lower()

    def is_file_exist(self, host: str, remote_path: str) -> bool:
        output = self.cmd_to_string(host, f"test -e {remote_path} && echo yes || echo no")
        return output == "yes"

    # ------------------------------------------------------------------
    # Batch primitives
    # ------------------------------------------------------------------
    def cmd_batch(self, hosts: Iterable[str], command: str, timeout: Optional[float] = None,
                  step: Optional[str] = None) -> Dict[str, str]:
        return self.execute(hosts, lambda h: self.cmd(h, command, timeout), step=step)

    def copy(self, hosts: Iterable[str], local_path: str, remote_path: str, step: Optional[str] = None) -> None:
        self.execute(hosts, lambda h: self.copy_to(h, local_path, remote_path), step=step)

    def fetch(self, hosts: Iterable[str], remote_path: str, local_path: str, step: Optional[str] = None) -> Dict[str, str]:
        """Copy ``remote_path`` from every host.

        With more than one host ``local_path`` must contain ``{host}``.

        Returns:
            dict: host -> local file written
        """
        hosts = list(hosts)
        if len(hosts) > 1 and "{host}" not in local_path:
            raise ConfigurationError("fetching from several hosts needs a '{host}' placeholder in the local path")

        def _fetch(h: str) -> str:
            target = local_path.format(host=h)
            self.copy_from(h, remote_path, target)
            return target

        return self.execute(hosts, _fetch, step=step)

    def write_file(self, hosts: Iterable[str], remote_path: str, content: str, mode: str = "0644",
                   step: Optional[str] = None) -> None:
        self.cmd_batch(hosts, shell.write_file(remote_path, content, mode), step=step)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close_all()
