"""Node removal and teardown."""
import logging
from typing import Dict, Iterable, List

from sealctl.modules.infradriver import InfraDriver
from sealctl.modules.rootfs import RootfsDistributor
from sealctl.utils import shell
from .kubeadm import KUBECTL

logger = logging.getLogger("sealctl.kubernetes.reset")

DRAIN_NODE = f"{KUBECTL} drain {{name}} --ignore-daemonsets --delete-emptydir-data --force --timeout=300s"
DELETE_NODE = f"{KUBECTL} delete node {{name}} --ignore-not-found"

RESET_COMMANDS = [
    "if command -v kubeadm >/dev/null 2>&1; then kubeadm reset -f; fi",
    "rm -rf /etc/kubernetes/ /var/lib/kubelet/ /var/lib/etcd/ /etc/cni/net.d/ $HOME/.kube/",
    "(ipvsadm -C >/dev/null 2>&1 || true)",
    "(ip link delete kube-ipvs0 >/dev/null 2>&1 || true)",
    shell.unset_host_alias(),
]


def reset_command() -> str:
    return " && ".join(RESET_COMMANDS)


class HostTeardown:
    """Takes hosts out of the cluster and wipes what the install left on them."""

    def __init__(self, driver: InfraDriver, rootfs: RootfsDistributor):
        self.driver = driver
        self.rootfs = rootfs

    def remove_nodes(self, master: str, hosts: Iterable[str]) -> Dict[str, str]:
        """Drain and delete ``hosts`` from the API through ``master``.

        Returns:
            dict: host -> node name
        """
        hosts = list(hosts)
        if not hosts:
            return {}

        def _remove(host: str) -> str:
            name = self.driver.get_hostname(host)
            logger.info(f"[{host}] draining node {name}")
            self.driver.cmd(master, DRAIN_NODE.format(name=name))
            self.driver.cmd(master, DELETE_NODE.format(name=name))
            return name

        return self.driver.execute(hosts, _remove, step="remove nodes")

    def teardown(self, hosts: Iterable[str], step: str = "reset hosts") -> None:
        """Run ``kubeadm reset`` and remove the rootfs on every host concurrently."""
        hosts: List[str] = list(hosts)
        if not hosts:
            return
        logger.info(f"🧹 Resetting {len(hosts)} host(s): {', '.join(hosts)}")
        self.driver.cmd_batch(hosts, reset_command(), step=step)
        self.rootfs.clean(hosts)
