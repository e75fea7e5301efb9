"""Delivery of the cluster image rootfs to remote hosts.

Mounting the image layers into a local directory is done by the image
tooling before sealctl runs; this module only moves an already materialized
tree and runs its init script.
"""
import logging
import os
from typing import Iterable, List, Optional

from ..config import Config
from ..errors import ConfigurationError
from ..utils import shell
from .infradriver import BatchResult, InfraDriver

logger = logging.getLogger("sealctl.rootfs")

REMOTE_INIT = "cd {rootfs} && chmod +x scripts/* && cd scripts && bash init.sh"
REMOTE_CLEAN = "if [ -f {rootfs}/scripts/clean.sh ]; then cd {rootfs}/scripts && bash clean.sh; fi; rm -rf {rootfs}"


class LocalRootfsProvider:
    """Resolves a cluster image name to a local, already mounted rootfs directory.

    An explicit ``path`` wins; otherwise the image is expected under
    ``<data dir>/<cluster>/rootfs``.
    """

    def __init__(self, cluster_name: str, path: Optional[str] = None):
        self.cluster_name = cluster_name
        self.path = path

    def get_rootfs(self, image: str) -> str:
        path = self.path or str(Config.cluster_dir(self.cluster_name) / "rootfs")
        path = os.path.abspath(os.path.expanduser(path))
        if not os.path.isdir(path):
            raise ConfigurationError(f"rootfs of image {image} not found at {path}")
        if not os.path.isdir(os.path.join(path, "scripts")):
            raise ConfigurationError(f"rootfs {path} has no scripts directory")
        return path


class RootfsDistributor:
    """Copies a rootfs tree to every host and runs its init script."""

    def __init__(self, driver: InfraDriver, remote_rootfs: str):
        self.driver = driver
        self.remote_rootfs = remote_rootfs

    def _init_command(self, host: str) -> str:
        env = shell.export_env(self.driver.get_host_env(host))
        return env + REMOTE_INIT.format(rootfs=self.remote_rootfs)

    def distribute(self, hosts: Iterable[str], local_rootfs: str) -> None:
        """Copy ``local_rootfs`` to every host, then init the hosts whose copy worked.

        Raises:
            BatchExecutionError: Listing every host whose copy or init failed
        """
        hosts = list(hosts)
        if not hosts:
            return
        logger.info(f"📦 Distributing rootfs {local_rootfs} to {len(hosts)} host(s)")

        copied = self.driver.run(hosts, lambda h: self.driver.copy_to(h, local_rootfs, self.remote_rootfs))
        ready: List[str] = copied.succeeded
        for host, error in copied.failures.items():
            logger.error(f"[{host}] copy rootfs failed, skipping init: {error}")

        initialized = self.driver.run(ready, lambda h: self.driver.cmd(h, self._init_command(h)))
        result: BatchResult = copied.merge(initialized)
        result.raise_for_failures("distribute rootfs")
        logger.info(f"✅ Rootfs ready on {len(hosts)} host(s)")

    def clean(self, hosts: Iterable[str]) -> None:
        """Run the image clean script and remove the remote rootfs."""
        hosts = list(hosts)
        if not hosts:
            return
        command = REMOTE_CLEAN.format(rootfs=self.remote_rootfs)
        self.driver.cmd_batch(hosts, command, step="clean rootfs")
