"""HA load balancer for workers.

Every worker runs lvscare as a static pod. It owns an IPVS virtual server on
the cluster VIP and health checks each master's API server, dropping
unhealthy masters from rotation on its own. The kubelet picks up manifest
changes from the static pod directory, so applying a new backend set is just
rewriting the manifest.
"""
import hashlib
import logging
import os
from typing import Iterable, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from sealctl.errors import ConfigurationError
from sealctl.modules.infradriver import InfraDriver
from sealctl.utils import shell
from .models import LoadBalancerBackends

logger = logging.getLogger("sealctl.kubernetes.lvscare")

STATIC_POD_DIR = "/etc/kubernetes/manifests"
LVSCARE_POD_FILE = "kube-lvscare.yaml"
TEMPLATE_NAME = "lvscare.yaml.j2"

ROUTE_OK = "ok"
REMOTE_CHECK_ROUTE = "seautil route check --host {host}"
REMOTE_ADD_ROUTE = "seautil route add --host {vip} --gateway {host}"


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def render_static_pod(backends: LoadBalancerBackends, image: str, health_path: str = "/healthz",
                      health_scheme: str = "https") -> str:
    """Render the lvscare static pod manifest for ``backends``.

    Raises:
        ConfigurationError: If there are no masters to balance or the template is broken
    """
    if not backends.masters:
        raise ConfigurationError("load balancer needs at least one master backend")
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )
    try:
        template = env.get_template(TEMPLATE_NAME)
        return template.render(
            virtual_server=backends.virtual_server,
            real_servers=backends.real_servers,
            health_path=health_path,
            health_scheme=health_scheme,
            image=image,
        )
    except TemplateNotFound as e:
        raise ConfigurationError(f"lvscare template not found: {e}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Missing required template variable: {e}") from e


def ipvs_command(backends: LoadBalancerBackends, health_path: str = "/healthz", health_scheme: str = "https") -> str:
    """One-shot IPVS setup so the VIP answers before the static pod is running."""
    rs = " ".join(f"--rs {r}" for r in backends.real_servers)
    return (
        f"seautil ipvs --vs {backends.virtual_server} {rs} "
        f"--health-path {health_path} --health-schem {health_scheme} --run-once"
    )


class LoadBalancerConfigurator:
    """Installs and updates the lvscare load balancer on worker hosts."""

    def __init__(self, driver: InfraDriver, image: str, health_path: str = "/healthz",
                 health_scheme: str = "https", static_pod_dir: str = STATIC_POD_DIR):
        self.driver = driver
        self.image = image
        self.health_path = health_path
        self.health_scheme = health_scheme
        self.manifest_path = f"{static_pod_dir}/{LVSCARE_POD_FILE}"

    def _manifest_command(self, manifest: str) -> str:
        """Write the manifest only when its content differs from what is on disk.

        An unchanged manifest leaves the running pod and its connections alone.
        """
        if not manifest.endswith("\n"):
            manifest += "\n"
        digest = hashlib.sha256(manifest.encode()).hexdigest()
        current = f"$(sha256sum {self.manifest_path} 2>/dev/null | cut -d' ' -f1)"
        return (
            f"if [ \"{current}\" != \"{digest}\" ]; then "
            f"{shell.write_file(self.manifest_path, manifest, mode='0600')}\n"
            f"fi"
        )

    def ensure_vip_route(self, host: str, vip: str) -> None:
        """Route VIP traffic through the host's own address on multi-NIC hosts."""
        result = self.driver.cmd_to_string(host, REMOTE_CHECK_ROUTE.format(host=host))
        if result == ROUTE_OK:
            return
        logger.info(f"[{host}] adding route for VIP {vip}")
        self.driver.cmd(host, REMOTE_ADD_ROUTE.format(vip=vip, host=host))

    def render(self, backends: LoadBalancerBackends) -> str:
        return render_static_pod(backends, self.image, self.health_path, self.health_scheme)

    def run_ipvs(self, host: str, backends: LoadBalancerBackends) -> None:
        self.driver.cmd(host, ipvs_command(backends, self.health_path, self.health_scheme))

    def write_manifest(self, host: str, manifest: str) -> None:
        self.driver.cmd(host, self._manifest_command(manifest))

    def apply_host(self, host: str, backends: LoadBalancerBackends, manifest: Optional[str] = None) -> None:
        self.run_ipvs(host, backends)
        self.write_manifest(host, manifest or self.render(backends))

    def apply(self, hosts: Iterable[str], backends: LoadBalancerBackends) -> None:
        """Point the load balancer of every host at ``backends``.

        Safe to repeat; hosts already serving the same backend set keep their
        manifest untouched.

        Raises:
            BatchExecutionError: Listing every host that could not be updated
        """
        hosts = list(hosts)
        if not hosts:
            return
        manifest = self.render(backends)
        logger.info(
            f"⚖️  Load balancer {backends.virtual_server} -> {', '.join(backends.real_servers)} "
            f"on {len(hosts)} worker(s)"
        )
        self.driver.execute(hosts, lambda h: self.apply_host(h, backends, manifest), step="apply load balancer")
