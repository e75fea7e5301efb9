"""kubeadm configuration documents and command lines."""
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml

from sealctl.errors import ConfigurationError
from sealctl.utils.net import join_host_port
from .config import ClusterConfig
from .models import BootstrapToken

KUBEADM_API_VERSION = "kubeadm.k8s.io/v1beta3"
KUBELET_API_VERSION = "kubelet.config.k8s.io/v1beta1"
KUBEPROXY_API_VERSION = "kubeproxy.config.k8s.io/v1alpha1"

KUBERNETES_DIR = "/etc/kubernetes"
KUBEADM_INIT_CONFIG = f"{KUBERNETES_DIR}/kubeadm.yaml"
KUBEADM_JOIN_CONFIG = f"{KUBERNETES_DIR}/kubeadm-join.yaml"
ADMIN_CONF = f"{KUBERNETES_DIR}/admin.conf"
PKI_DIR = f"{KUBERNETES_DIR}/pki"
KUBECTL = f"kubectl --kubeconfig={ADMIN_CONF}"

INIT_MASTER = f"kubeadm init --config={KUBEADM_INIT_CONFIG} --upload-certs -v {{vlog}}"
JOIN_MASTER = f"kubeadm join --config={KUBEADM_JOIN_CONFIG} -v {{vlog}}"
JOIN_NODE = f"kubeadm join --config={KUBEADM_JOIN_CONFIG} -v {{vlog}}"
UPLOAD_CERTS = "kubeadm init phase upload-certs --upload-certs"
CREATE_JOIN_COMMAND = "kubeadm token create --print-join-command"
UPGRADE_APPLY = "kubeadm upgrade apply -y {version}"
UPGRADE_NODE = "kubeadm upgrade node"
COPY_ADMIN_KUBECONFIG = f"rm -rf $HOME/.kube/config && mkdir -p $HOME/.kube && cp {ADMIN_CONF} $HOME/.kube/config"
COPY_STATIC_FILES = f"mkdir -p {KUBERNETES_DIR} && if [ -d {{rootfs}}/statics ]; then cp -rf {{rootfs}}/statics/. {KUBERNETES_DIR}/; fi"

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")


@dataclass(frozen=True, order=True)
class KubeVersion:
    """A ``vMAJOR.MINOR.PATCH`` Kubernetes release."""
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, version: str) -> "KubeVersion":
        match = _VERSION_RE.match((version or "").strip())
        if not match:
            raise ConfigurationError(f"invalid kubernetes version {version!r}")
        return cls(*(int(part) for part in match.groups()))

    def __str__(self) -> str:
        return f"v{self.major}.{self.minor}.{self.patch}"


def _cri_socket(path: str) -> str:
    return path if "://" in path else f"unix://{path}"


def cert_sans(cluster: ClusterConfig, masters: List[str]) -> List[str]:
    """API server certificate SANs: loopback, the domain, the VIP, every master and any extras."""
    sans = ["127.0.0.1", "localhost", cluster.apiserver_domain, cluster.vip] + list(masters) + list(cluster.cert_sans)
    return list(dict.fromkeys(sans))


def kubelet_configuration(cluster: ClusterConfig) -> Dict[str, Any]:
    return {
        "apiVersion": KUBELET_API_VERSION,
        "kind": "KubeletConfiguration",
        "cgroupDriver": cluster.cgroup_driver,
    }


def init_configuration(cluster: ClusterConfig, master0: str, masters: List[str], image_repository: str,
                       kubernetes_version: Optional[str] = None) -> List[Dict[str, Any]]:
    """Documents fed to ``kubeadm init`` on master-zero."""
    init = {
        "apiVersion": KUBEADM_API_VERSION,
        "kind": "InitConfiguration",
        "localAPIEndpoint": {"advertiseAddress": master0, "bindPort": cluster.apiserver_port},
        "nodeRegistration": {"criSocket": _cri_socket(cluster.cri_socket)},
    }
    cluster_configuration = {
        "apiVersion": KUBEADM_API_VERSION,
        "kind": "ClusterConfiguration",
        "kubernetesVersion": kubernetes_version or cluster.kubernetes_version,
        "controlPlaneEndpoint": join_host_port(cluster.apiserver_domain, cluster.apiserver_port),
        "imageRepository": image_repository,
        "networking": {
            "dnsDomain": cluster.dns_domain,
            "podSubnet": cluster.pod_cidr,
            "serviceSubnet": cluster.service_cidr,
        },
        "apiServer": {"certSANs": cert_sans(cluster, masters)},
    }
    kube_proxy = {
        "apiVersion": KUBEPROXY_API_VERSION,
        "kind": "KubeProxyConfiguration",
        "mode": "ipvs",
        "ipvs": {"excludeCIDRs": [f"{cluster.vip}/{128 if ':' in cluster.vip else 32}"]},
    }
    return [init, cluster_configuration, kubelet_configuration(cluster), kube_proxy]


def join_configuration(cluster: ClusterConfig, token: BootstrapToken, api_server_endpoint: str,
                       control_plane_address: Optional[str] = None) -> List[Dict[str, Any]]:
    """Documents fed to ``kubeadm join``.

    Args:
        api_server_endpoint: ``host:port`` the joining host discovers the cluster through
        control_plane_address: Advertise address when joining as a master; None for workers
    """
    join: Dict[str, Any] = {
        "apiVersion": KUBEADM_API_VERSION,
        "kind": "JoinConfiguration",
        "discovery": {
            "bootstrapToken": {
                "apiServerEndpoint": api_server_endpoint,
                "token": token.token,
                "caCertHashes": list(token.ca_cert_hashes),
            },
        },
        "nodeRegistration": {"criSocket": _cri_socket(cluster.cri_socket)},
    }
    if control_plane_address:
        join["controlPlane"] = {
            "localAPIEndpoint": {"advertiseAddress": control_plane_address, "bindPort": cluster.apiserver_port},
            "certificateKey": token.certificate_key,
        }
    return [join, kubelet_configuration(cluster)]


def dump_documents(documents: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)


def join_token_from(token: BootstrapToken, certificate_key: str) -> BootstrapToken:
    """Attach a freshly uploaded certificate key to a token from ``kubeadm token create``."""
    return BootstrapToken(
        token=token.token,
        ca_cert_hashes=token.ca_cert_hashes,
        certificate_key=certificate_key,
        api_server_endpoint=token.api_server_endpoint,
    )


def node_label_commands(node_name: str, labels: Dict[str, str]) -> List[str]:
    if not labels:
        return []
    pairs = " ".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return [f"{KUBECTL} label node {node_name} {pairs} --overwrite"]


def node_taint_commands(node_name: str, taints: List[Any]) -> List[str]:
    if not taints:
        return []
    return [f"{KUBECTL} taint node {node_name} {' '.join(str(t) for t in taints)} --overwrite"]


def split_version_tiers(masters: List[str], workers: List[str]) -> Tuple[List[str], List[str], List[str]]:
    """Upgrade tiers: master-zero, the other masters, then workers that are not masters."""
    if not masters:
        raise ConfigurationError("cluster has no master")
    pure_workers = [w for w in workers if w not in masters]
    return masters[:1], masters[1:], pure_workers
