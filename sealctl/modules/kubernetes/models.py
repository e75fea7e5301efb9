"""Data models for the kubeadm lifecycle runtime."""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

from sealctl.utils import mask_secret
from sealctl.utils.net import join_host_port


class ClusterPhase(str, Enum):
    """Lifecycle states of a cluster."""
    UNINITIALIZED = 'uninitialized'
    BOOTSTRAPPING = 'bootstrapping'
    READY = 'ready'
    SCALING = 'scaling'
    UPGRADING = 'upgrading'
    RESETTING = 'resetting'
    RESET = 'reset'


@dataclass(frozen=True)
class BootstrapToken:
    """Join credentials produced by the control-plane bootstrap on master-zero.

    Fields the bootstrap output did not contain keep their zero value.
    """
    token: str = ''
    ca_cert_hashes: Tuple[str, ...] = ()
    certificate_key: str = ''
    api_server_endpoint: str = ''

    @property
    def is_empty(self) -> bool:
        return not self.token

    def __str__(self) -> str:
        return (
            f"BootstrapToken(endpoint={self.api_server_endpoint}, token={mask_secret(self.token)}, "
            f"ca_cert_hashes={list(self.ca_cert_hashes)}, certificate_key={mask_secret(self.certificate_key)})"
        )


@dataclass(frozen=True)
class LoadBalancerBackends:
    """Master addresses served behind one virtual IP."""
    vip: str
    masters: Tuple[str, ...] = field(default_factory=tuple)
    port: int = 6443

    @property
    def virtual_server(self) -> str:
        return join_host_port(self.vip, self.port)

    @property
    def real_servers(self) -> List[str]:
        return [join_host_port(m, self.port) for m in self.masters]
