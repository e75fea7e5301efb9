"""Persisted cluster state.

One JSON document per cluster at ``<data dir>/<cluster>/cluster-state.json``.
It holds SSH credentials, so the file is created readable by the owner only.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import Config
from .errors import ConfigurationError
from .modules.kubernetes.models import ClusterPhase
from .modules.models import ClusterSpec, Host, Inventory, RegistryConfig, Role, SSHCredentials, Taint

logger = logging.getLogger("sealctl.registry")

STATE_FILE = "cluster-state.json"


@dataclass
class ClusterState:
    """Everything needed to resume managing a cluster after a restart."""
    spec: ClusterSpec
    inventory: Inventory
    phase: ClusterPhase = ClusterPhase.UNINITIALIZED
    kubernetes_version: str = ""
    vip: str = ""
    apiserver_domain: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.spec.name


def _host_to_dict(host: Host) -> Dict[str, Any]:
    return {
        "ip": host.ip,
        "roles": sorted(r.value for r in host.roles),
        "ssh": {
            "user": host.ssh.user,
            "passwd": host.ssh.password,
            "pk": host.ssh.private_key,
            "pkPasswd": host.ssh.passphrase,
            "port": host.ssh.port,
        },
        "env": dict(host.env),
        "labels": dict(host.labels),
        "taints": [str(t) for t in host.taints],
    }


def _host_from_dict(data: Dict[str, Any]) -> Host:
    ssh = data.get("ssh") or {}
    return Host(
        ip=data["ip"],
        roles=frozenset(Role(r) for r in data.get("roles", [])),
        ssh=SSHCredentials(
            user=ssh.get("user") or "root",
            password=ssh.get("passwd"),
            private_key=ssh.get("pk"),
            passphrase=ssh.get("pkPasswd"),
            port=int(ssh.get("port") or 22),
        ),
        env=dict(data.get("env") or {}),
        labels=dict(data.get("labels") or {}),
        taints=[Taint.parse(t) for t in data.get("taints") or []],
    )


def state_to_dict(state: ClusterState) -> Dict[str, Any]:
    """Plain JSON representation. Hosts are the current members only."""
    return {
        "name": state.spec.name,
        "image": state.spec.image,
        "phase": state.phase.value,
        "kubernetesVersion": state.kubernetes_version,
        "vip": state.vip,
        "apiServerDomain": state.apiserver_domain,
        "primaryMaster": state.inventory.primary_master,
        "registry": {"domain": state.spec.registry.domain, "port": state.spec.registry.port},
        "env": dict(state.spec.env),
        "hosts": [_host_to_dict(h) for h in state.inventory.hosts],
        "extra": dict(state.extra),
    }


def state_from_dict(data: Dict[str, Any]) -> ClusterState:
    try:
        hosts: List[Host] = [_host_from_dict(h) for h in data.get("hosts") or []]
        registry = data.get("registry") or {}
        spec = ClusterSpec(
            name=data["name"],
            image=data.get("image", ""),
            hosts=hosts,
            env=dict(data.get("env") or {}),
            registry=RegistryConfig(
                domain=registry.get("domain", RegistryConfig.domain),
                port=int(registry.get("port", RegistryConfig.port)),
            ),
        )
        return ClusterState(
            spec=spec,
            inventory=Inventory(hosts, data.get("primaryMaster")),
            phase=ClusterPhase(data.get("phase", ClusterPhase.UNINITIALIZED.value)),
            kubernetes_version=data.get("kubernetesVersion", ""),
            vip=data.get("vip", ""),
            apiserver_domain=data.get("apiServerDomain", ""),
            extra=dict(data.get("extra") or {}),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigurationError(f"corrupt cluster state: {e}") from e


class StateStore:
    """Loads and saves ``ClusterState`` documents under a base directory."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir else Config.DATA_DIR

    def path(self, cluster_name: str) -> Path:
        return self.base_dir / cluster_name / STATE_FILE

    def exists(self, cluster_name: str) -> bool:
        return self.path(cluster_name).exists()

    def load(self, cluster_name: str) -> ClusterState:
        """Raises ConfigurationError if the cluster was never saved."""
        path = self.path(cluster_name)
        if not path.exists():
            raise ConfigurationError(f"cluster {cluster_name} not found (no state at {path})")
        with open(path, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"corrupt cluster state {path}: {e}") from e
        return state_from_dict(data)

    def save(self, state: ClusterState) -> Path:
        """Atomically replace the cluster's state document."""
        path = self.path(state.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(state_to_dict(state), f, indent=2)
        os.replace(tmp, path)
        logger.debug(f"Saved state of cluster {state.name} to {path}")
        return path

    def list(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.parent.name for p in self.base_dir.glob(f"*/{STATE_FILE}"))
