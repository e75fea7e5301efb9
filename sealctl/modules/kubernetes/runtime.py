"""Cluster lifecycle controller for kubeadm clusters.

Drives a cluster through install, scale up, scale down, upgrade and reset.
Every step that targets several hosts is one batch of the host execution
driver and finishes on every host before the next step starts. Tiers are
ordered: master-zero, then the other masters, then workers; teardown runs
the other way round.

The controller never changes its inventory until the remote side of an
operation has fully succeeded, and persists state only after success.
"""
import logging
import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import typer

from sealctl.config import Config
from sealctl.errors import (
    AlreadyInitializedError,
    ConfigurationError,
    ConfirmationAborted,
    RemoteExecutionError,
    TokenParseError,
    UnsupportedOperationError,
)
from sealctl.modules.infradriver import InfraDriver
from sealctl.modules.models import ClusterSpec, Inventory, Role
from sealctl.modules.rootfs import LocalRootfsProvider, RootfsDistributor
from sealctl.registry import ClusterState, StateStore
from sealctl.utils import redact_sensitive_data, shell
from sealctl.utils.net import join_host_port, remove_ips
from . import kubeadm
from .certs import CertificateGenerator, KubeadmCertGenerator
from .config import InstallerConfig
from .health import wait_for_control_plane_ready, wait_for_node_ready
from .lvscare import LoadBalancerConfigurator
from .models import BootstrapToken, ClusterPhase, LoadBalancerBackends
from .reset import HostTeardown
from .token import decode_bootstrap_output, decode_join_command, parse_certificate_key

logger = logging.getLogger("sealctl.kubernetes.runtime")

ConfirmFn = Callable[[str, List[str]], bool]

UNTAINT_MASTER = (
    f"{kubeadm.KUBECTL} taint node {{name}} node-role.kubernetes.io/master- "
    f"node-role.kubernetes.io/control-plane- || true"
)
STOP_KUBELET = "systemctl stop kubelet"
START_KUBELET = "systemctl start kubelet"
RESTART_KUBELET = "systemctl daemon-reload && systemctl restart kubelet"
REPLACE_BINARIES = "chmod +x {bin}/* && cp -f {bin}/* /usr/bin/"

# operation -> (phases it may start from, phase while running, phase on success)
TRANSITIONS: Dict[str, Tuple[Tuple[ClusterPhase, ...], ClusterPhase, ClusterPhase]] = {
    "install": ((ClusterPhase.UNINITIALIZED, ClusterPhase.RESET), ClusterPhase.BOOTSTRAPPING, ClusterPhase.READY),
    "scale up": ((ClusterPhase.READY,), ClusterPhase.SCALING, ClusterPhase.READY),
    "scale down": ((ClusterPhase.READY,), ClusterPhase.SCALING, ClusterPhase.READY),
    "upgrade": ((ClusterPhase.READY,), ClusterPhase.UPGRADING, ClusterPhase.READY),
    "reset": ((ClusterPhase.READY, ClusterPhase.UNINITIALIZED), ClusterPhase.RESETTING, ClusterPhase.RESET),
}


def prompt_confirmation(role: str, hosts: List[str]) -> bool:
    """Ask the operator on the terminal before hosts are destroyed."""
    return typer.confirm(
        f"⚠️  Are you sure to delete these {role} hosts: {', '.join(hosts)}?",
        default=False,
    )


class KubernetesRuntime:
    """Installs and evolves one kubeadm cluster."""

    def __init__(
        self,
        spec: ClusterSpec,
        driver: InfraDriver,
        inventory: Optional[Inventory] = None,
        config: Optional[InstallerConfig] = None,
        phase: ClusterPhase = ClusterPhase.UNINITIALIZED,
        kubernetes_version: Optional[str] = None,
        rootfs_provider: Optional[LocalRootfsProvider] = None,
        cert_generator: Optional[CertificateGenerator] = None,
        confirm: Optional[ConfirmFn] = None,
        state_store: Optional[StateStore] = None,
        local_dir: Optional[Path] = None,
        poll_interval: float = 5,
    ):
        """Initialize the runtime.

        Args:
            spec: Resolved cluster description
            driver: Host execution driver knowing every host of ``inventory``
                and any host about to join
            inventory: Current membership; built from ``spec.hosts`` if omitted
            config: Installer configuration; defaults apply if omitted
            phase: Lifecycle phase the cluster is currently in
            kubernetes_version: Version the cluster currently runs
            rootfs_provider: Resolves ``spec.image`` to a local rootfs directory
            cert_generator: Creates the cluster PKI before bootstrap
            confirm: Called with a role and host list before destructive steps
            state_store: Object with ``save(ClusterState)``; nothing is persisted if None
            local_dir: Local directory for PKI and the admin kubeconfig
            poll_interval: Seconds between readiness checks
        """
        self.spec = spec
        self.driver = driver
        self.inventory = inventory if inventory is not None else Inventory(spec.hosts)
        self.config = config or InstallerConfig()
        self.cluster = self.config.cluster
        self.phase = phase
        self.kubernetes_version = kubernetes_version or ""
        self.rootfs_provider = rootfs_provider or LocalRootfsProvider(spec.name)
        self.cert_generator = cert_generator or KubeadmCertGenerator()
        self.confirm = confirm or prompt_confirmation
        self.state_store = state_store
        self.local_dir = Path(local_dir) if local_dir else Config.cluster_dir(spec.name)
        self.poll_interval = poll_interval

        self.remote_rootfs = f"{self.cluster.data_dir}/{spec.name}/rootfs"
        self.rootfs = RootfsDistributor(driver, self.remote_rootfs)
        self.lb = LoadBalancerConfigurator(
            driver,
            image=f"{spec.registry.url}/{self.cluster.lvscare_image}",
            health_path=self.cluster.health_path,
            health_scheme=self.cluster.health_scheme,
        )
        self.teardown = HostTeardown(driver, self.rootfs)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def pki_dir(self) -> Path:
        return self.local_dir / "pki"

    @property
    def kubeconfig_path(self) -> Path:
        return self.local_dir / "admin.conf"

    @property
    def vlog(self) -> int:
        return 6 if logger.isEnabledFor(logging.DEBUG) else 0

    def _pure_workers(self, inventory: Inventory) -> List[str]:
        """Workers that are not masters; only these run the load balancer."""
        masters = set(inventory.masters)
        return [w for w in inventory.workers if w not in masters]

    def _backends(self, masters: Iterable[str]) -> LoadBalancerBackends:
        return LoadBalancerBackends(vip=self.cluster.vip, masters=tuple(masters), port=self.cluster.apiserver_port)

    def _run_on(self, host: str, step: str, task: Callable[[str], object]):
        """Run a task on a single host, reporting failures like any other batch."""
        return self.driver.execute([host], task, step=step)[host]

    def _confirm(self, role: str, hosts: List[str]) -> None:
        if not self.confirm(role, hosts):
            raise ConfirmationAborted(f"deletion of {role} hosts {', '.join(hosts)} was not confirmed")

    def _validate_credentials(self, ips: Iterable[str]) -> None:
        for ip in ips:
            self.driver.get_host(ip).ssh.validate(ip)

    @contextmanager
    def _operation(self, name: str):
        """Move through the phases of ``name``; revert the phase if it fails."""
        allowed, running, done = TRANSITIONS[name]
        if self.phase not in allowed:
            if name == "install" and self.phase is ClusterPhase.READY:
                raise AlreadyInitializedError(f"cluster {self.spec.name} is already installed")
            raise ConfigurationError(f"cannot {name} cluster {self.spec.name} in phase {self.phase.value}")

        previous = self.phase
        self.phase = running
        logger.info(f"🚀 Starting {name} of cluster {self.spec.name}")
        try:
            yield
        except Exception:
            self.phase = previous
            logger.error(f"❌ {name.capitalize()} of cluster {self.spec.name} failed")
            raise
        self.phase = done
        self.save()
        logger.info(f"✅ {name.capitalize()} of cluster {self.spec.name} finished")

    def state(self) -> ClusterState:
        spec = ClusterSpec(
            name=self.spec.name,
            image=self.spec.image,
            hosts=self.inventory.hosts,
            env=self.spec.env,
            registry=self.spec.registry,
        )
        return ClusterState(
            spec=spec,
            inventory=self.inventory,
            phase=self.phase,
            kubernetes_version=self.kubernetes_version,
            vip=self.cluster.vip,
            apiserver_domain=self.cluster.apiserver_domain,
        )

    def save(self) -> None:
        if self.state_store is not None:
            self.state_store.save(self.state())

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------
    def _generate_certs(self, master0: str, hostname: str, masters: List[str]) -> None:
        self.cert_generator.generate(
            str(self.pki_dir),
            str(self.pki_dir / "etcd"),
            hostname,
            master0,
            self.cluster.service_cidr,
            self.cluster.dns_domain,
            kubeadm.cert_sans(self.cluster, masters),
        )

    def _send_pki(self, host: str) -> None:
        if self.pki_dir.is_dir():
            self.driver.copy_to(host, str(self.pki_dir), kubeadm.PKI_DIR)

    def _init_master0(self, master0: str, masters: List[str]) -> BootstrapToken:
        documents = kubeadm.init_configuration(
            self.cluster, master0, masters, self.spec.registry.url, self.kubernetes_version
        )
        logger.debug(f"kubeadm init configuration: {documents}")

        def _init(host: str) -> str:
            hostname = self.driver.get_hostname(host)
            self.driver.cmd(host, shell.write_file(kubeadm.KUBEADM_INIT_CONFIG, kubeadm.dump_documents(documents)))
            self._generate_certs(host, hostname, masters)
            self._send_pki(host)
            self.driver.cmd(host, kubeadm.COPY_STATIC_FILES.format(rootfs=self.remote_rootfs))
            self.driver.cmd(host, shell.set_host_alias(self.cluster.apiserver_domain, host))
            output = self.driver.cmd(host, kubeadm.INIT_MASTER.format(vlog=self.vlog))
            self.driver.cmd(host, kubeadm.COPY_ADMIN_KUBECONFIG)
            return output

        output = self._run_on(master0, "init master0", _init)
        token = decode_bootstrap_output(output)
        if token.is_empty:
            raise TokenParseError("no join token found in bootstrap output")

        if not wait_for_control_plane_ready(self.driver, master0, self.cluster.ready_timeout, self.poll_interval):
            raise RemoteExecutionError(master0, f"control plane not ready after {self.cluster.ready_timeout}s")
        return token

    def _refresh_token(self, master0: str) -> BootstrapToken:
        """Issue a fresh join token and certificate key on master-zero."""
        def _issue(host: str) -> Tuple[str, str]:
            key_output = self.driver.cmd(host, kubeadm.UPLOAD_CERTS)
            join_output = self.driver.cmd(host, kubeadm.CREATE_JOIN_COMMAND)
            return key_output, join_output

        key_output, join_output = self._run_on(master0, "refresh join token", _issue)
        token = kubeadm.join_token_from(decode_join_command(join_output), parse_certificate_key(key_output))
        if token.is_empty:
            raise TokenParseError("no join token found in 'kubeadm token create' output")
        logger.info(f"Refreshed join token: {token}")
        return token

    def _join_masters(self, hosts: List[str], master0: str, token: BootstrapToken) -> None:
        """Join control-plane hosts concurrently; they only share the token."""
        if not hosts:
            return
        endpoint = join_host_port(master0, self.cluster.apiserver_port)
        domain = self.cluster.apiserver_domain

        def _join(host: str) -> None:
            documents = kubeadm.join_configuration(self.cluster, token, endpoint, control_plane_address=host)
            self.driver.cmd(host, shell.write_file(kubeadm.KUBEADM_JOIN_CONFIG, kubeadm.dump_documents(documents), "0600"))
            self._send_pki(host)
            self.driver.cmd(host, kubeadm.COPY_STATIC_FILES.format(rootfs=self.remote_rootfs))
            self.driver.cmd(host, shell.set_host_alias(domain, master0))
            self.driver.cmd(host, kubeadm.JOIN_MASTER.format(vlog=self.vlog))
            self.driver.cmd(host, shell.set_host_alias(domain, host))
            self.driver.cmd(host, kubeadm.COPY_ADMIN_KUBECONFIG)
            logger.info(f"[{host}] joined as master")

        logger.info(f"Joining {len(hosts)} master(s): {', '.join(hosts)}")
        self.driver.execute(hosts, _join, step="join masters")

    def _join_workers(self, hosts: List[str], masters: List[str], token: BootstrapToken) -> None:
        """Join workers concurrently through the VIP, balanced over ``masters``."""
        if not hosts:
            return
        backends = self._backends(masters)
        documents = kubeadm.join_configuration(self.cluster, token, backends.virtual_server)
        join_config = shell.write_file(kubeadm.KUBEADM_JOIN_CONFIG, kubeadm.dump_documents(documents), "0600")
        manifest = self.lb.render(backends)

        def _join(host: str) -> None:
            self.lb.ensure_vip_route(host, self.cluster.vip)
            self.lb.run_ipvs(host, backends)
            self.driver.cmd(host, join_config)
            self.driver.cmd(host, shell.set_host_alias(self.cluster.apiserver_domain, self.cluster.vip))
            self.driver.cmd(host, kubeadm.JOIN_NODE.format(vlog=self.vlog))
            # kubeadm join refuses a non-empty manifest dir, so lvscare goes in afterwards
            self.lb.write_manifest(host, manifest)
            logger.info(f"[{host}] joined as worker")

        logger.info(f"Joining {len(hosts)} worker(s): {', '.join(hosts)}")
        self.driver.execute(hosts, _join, step="join workers")

    def _apply_node_metadata(self, master0: str, hosts: Iterable[str], inventory: Inventory) -> None:
        """Apply declared labels and taints; masters that also work lose the control-plane taint."""
        def _needs_update(ip: str) -> bool:
            host = inventory.get(ip)
            return bool(host.labels or host.taints or len(host.roles) > 1)

        targets = [ip for ip in hosts if _needs_update(ip)]
        if not targets:
            return

        def _apply(ip: str) -> None:
            host = inventory.get(ip)
            name = self.driver.get_hostname(ip)
            commands = []
            if host.has_role(Role.MASTER) and host.has_role(Role.NODE):
                commands.append(UNTAINT_MASTER.format(name=name))
            commands += kubeadm.node_label_commands(name, host.labels)
            commands += kubeadm.node_taint_commands(name, host.taints)
            for command in commands:
                self.driver.cmd(master0, command)

        self.driver.execute(targets, _apply, step="apply node metadata")

    def _fetch_kubeconfig(self, master0: str) -> None:
        self.driver.fetch([master0], kubeadm.ADMIN_CONF, str(self.kubeconfig_path), step="fetch kubeconfig")
        logger.info(f"Admin kubeconfig saved to {self.kubeconfig_path}")

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    def install(self) -> None:
        """Bootstrap master-zero, then join the other masters, then workers.

        Raises:
            AlreadyInitializedError: If the cluster, or master-zero, is already bootstrapped
            ConfigurationError: If the inventory has no master or credentials are missing
            BatchExecutionError: If any host of a step failed
            TokenParseError: If kubeadm's output could not be parsed
        """
        with self._operation("install"):
            masters = self.inventory.masters
            if not masters:
                raise ConfigurationError("master list is empty")
            self._validate_credentials(self.inventory.ips)
            master0 = self.inventory.primary_master
            workers = self._pure_workers(self.inventory)
            local_rootfs = self.rootfs_provider.get_rootfs(self.spec.image)
            self.kubernetes_version = self.kubernetes_version or self.cluster.kubernetes_version
            logger.debug(f"Cluster env: {redact_sensitive_data(self.driver.cluster_env)}")

            if self._run_on(master0, "check master0", lambda h: self.driver.is_file_exist(h, kubeadm.ADMIN_CONF)):
                raise AlreadyInitializedError(
                    f"{master0} already has {kubeadm.ADMIN_CONF}; reset the cluster before installing again"
                )

            self.rootfs.distribute(self.inventory.ips, local_rootfs)
            token = self._init_master0(master0, masters)
            self._join_masters(masters[1:], master0, token)
            self._join_workers(workers, masters, token)
            self._apply_node_metadata(master0, self.inventory.ips, self.inventory)
            self._fetch_kubeconfig(master0)

    def scale_up(self, new_masters: Iterable[str], new_workers: Iterable[str]) -> None:
        """Join new masters, then new workers, and repoint every worker's load balancer.

        The join token is always issued fresh on master-zero. Only hosts that are
        not members yet can join; giving an existing member another role (for
        example promoting a worker to master) needs a scale down of that host
        first.

        Raises:
            ConfigurationError: If a host is already a member or has no credentials
            HostNotManagedError: If a host is unknown to the driver
            BatchExecutionError: If any host of a step failed
        """
        new_masters = list(dict.fromkeys(new_masters))
        new_workers = list(dict.fromkeys(new_workers))
        if not new_masters and not new_workers:
            logger.info("Nothing to scale up")
            return

        with self._operation("scale up"):
            for role, ips in ((Role.MASTER, new_masters), (Role.NODE, new_workers)):
                for ip in ips:
                    if ip in self.inventory.by_role(role):
                        raise ConfigurationError(f"host {ip} is already a {role.value}")
                    if ip in self.inventory:
                        raise ConfigurationError(f"host {ip} is already a member of the cluster")

            master_hosts = [self.driver.get_host(ip) for ip in new_masters]
            worker_hosts = [self.driver.get_host(ip) for ip in new_workers]
            joining = list(dict.fromkeys(new_masters + new_workers))
            self._validate_credentials(joining)
            updated = self.inventory.with_role_added(master_hosts, Role.MASTER).with_role_added(worker_hosts, Role.NODE)
            master0 = updated.primary_master
            local_rootfs = self.rootfs_provider.get_rootfs(self.spec.image)

            self.rootfs.distribute(joining, local_rootfs)
            token = self._refresh_token(master0)
            self._join_masters(new_masters, master0, token)
            new_pure_workers = [ip for ip in new_workers if ip not in updated.masters]
            self._join_workers(new_pure_workers, updated.masters, token)
            self.lb.apply(self._pure_workers(updated), self._backends(updated.masters))
            self._apply_node_metadata(master0, joining, updated)
            self.inventory = updated

    def scale_down(self, masters_to_remove: Iterable[str], workers_to_remove: Iterable[str]) -> None:
        """Remove workers, then masters, then repoint the remaining workers' load balancer.

        Every removed master is drained and reset. A master that also works
        keeps its worker role: once its control plane is gone it is joined
        again as a plain worker.

        Raises:
            ConfigurationError: If every master would be removed, a host does not hold
                the role, or only the worker role of a master is removed
            ConfirmationAborted: If the operator declines
            BatchExecutionError: If any host of a step failed
        """
        masters_to_remove = list(dict.fromkeys(masters_to_remove))
        workers_to_remove = list(dict.fromkeys(workers_to_remove))
        if not masters_to_remove and not workers_to_remove:
            logger.info("Nothing to scale down")
            return

        with self._operation("scale down"):
            remain_masters = remove_ips(self.inventory.masters, masters_to_remove)
            if not remain_masters:
                raise ConfigurationError(
                    "cleaning up all masters is illegal, reset the cluster to delete it entirely"
                )
            for role, ips in ((Role.MASTER, masters_to_remove), (Role.NODE, workers_to_remove)):
                for ip in ips:
                    if ip not in self.inventory.by_role(role):
                        raise ConfigurationError(f"host {ip} is not a {role.value} of cluster {self.spec.name}")
            for ip in workers_to_remove:
                if ip in self.inventory.masters and ip not in masters_to_remove:
                    raise ConfigurationError(
                        f"host {ip} is a master; remove its master role too to take it out of the worker pool"
                    )

            updated = self.inventory.with_role_removed(workers_to_remove, Role.NODE)
            updated = updated.with_role_removed(masters_to_remove, Role.MASTER)
            master0 = updated.primary_master
            leaving_workers = [ip for ip in workers_to_remove if ip not in self.inventory.masters]
            demoted = [ip for ip in masters_to_remove if ip in updated]
            local_rootfs = self.rootfs_provider.get_rootfs(self.spec.image) if demoted else None

            if workers_to_remove:
                self._confirm(Role.NODE.value, workers_to_remove)
            if masters_to_remove:
                self._confirm(Role.MASTER.value, masters_to_remove)

            self.teardown.remove_nodes(master0, leaving_workers)
            self.teardown.teardown(leaving_workers, step="reset workers")
            self.teardown.remove_nodes(master0, masters_to_remove)
            self.teardown.teardown(masters_to_remove, step="reset masters")

            if demoted:
                logger.info(f"Joining demoted master(s) back as workers: {', '.join(demoted)}")
                self.rootfs.distribute(demoted, local_rootfs)
                token = self._refresh_token(master0)
                self._join_workers(demoted, updated.masters, token)
                self._apply_node_metadata(master0, demoted, updated)

            if masters_to_remove:
                self.lb.apply(self._pure_workers(updated), self._backends(updated.masters))
            self.inventory = updated

    def upgrade(self, version: Optional[str] = None) -> None:
        """Replace the Kubernetes binaries host by host and upgrade with kubeadm.

        Order: master-zero, the remaining masters, then workers. Each host is
        Ready again before the next one is touched.

        Raises:
            UnsupportedOperationError: If the cluster image ships no ``bin`` directory
            ConfigurationError: If the version is invalid or older than the running one
            BatchExecutionError: If a host failed to upgrade
        """
        with self._operation("upgrade"):
            target = kubeadm.KubeVersion.parse(version or self.cluster.kubernetes_version)
            if self.kubernetes_version:
                current = kubeadm.KubeVersion.parse(self.kubernetes_version)
                if target < current:
                    raise ConfigurationError(f"downgrading from {current} to {target} is not supported")

            local_rootfs = self.rootfs_provider.get_rootfs(self.spec.image)
            local_bin = os.path.join(local_rootfs, "bin")
            if not os.path.isdir(local_bin):
                raise UnsupportedOperationError(f"image {self.spec.image} has no bin directory to upgrade from")

            master0 = self.inventory.primary_master
            remote_bin = f"{self.remote_rootfs}/bin"
            self.driver.copy(self.inventory.ips, local_bin, remote_bin, step="distribute binaries")

            first, other_masters, workers = kubeadm.split_version_tiers(self.inventory.masters, self.inventory.workers)
            for tier in (first, other_masters, workers):
                for host in tier:
                    self._upgrade_host(host, master0, remote_bin, target)
            self.kubernetes_version = str(target)

    def _upgrade_host(self, host: str, master0: str, remote_bin: str, version: kubeadm.KubeVersion) -> None:
        def _upgrade(ip: str) -> None:
            name = self.driver.get_hostname(ip)
            logger.info(f"[{ip}] upgrading {name} to {version}")
            self.driver.cmd(ip, STOP_KUBELET)
            self.driver.cmd(ip, REPLACE_BINARIES.format(bin=remote_bin))
            self.driver.cmd(ip, START_KUBELET)
            if ip == master0:
                self.driver.cmd(ip, kubeadm.UPGRADE_APPLY.format(version=version))
            else:
                self.driver.cmd(ip, kubeadm.UPGRADE_NODE)
            self.driver.cmd(ip, RESTART_KUBELET)
            if not wait_for_node_ready(self.driver, master0, name, self.cluster.ready_timeout, self.poll_interval):
                raise RemoteExecutionError(ip, f"node {name} not Ready after {self.cluster.ready_timeout}s")

        self._run_on(host, f"upgrade {host}", _upgrade)

    def reset(self) -> None:
        """Tear down workers, then masters. The inventory is kept for a later install.

        Raises:
            ConfirmationAborted: If the operator declines
            BatchExecutionError: If any host failed to reset
        """
        with self._operation("reset"):
            masters = self.inventory.masters
            workers = self._pure_workers(self.inventory)
            self._confirm(f"{Role.MASTER.value}/{Role.NODE.value}", masters + workers)

            self.teardown.teardown(workers, step="reset workers")
            self.teardown.teardown(masters, step="reset masters")

            shutil.rmtree(self.pki_dir, ignore_errors=True)
            if self.kubeconfig_path.exists():
                self.kubeconfig_path.unlink()
            self.kubernetes_version = ""
