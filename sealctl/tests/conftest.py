import logging
import os
import threading
import time

import pytest

from sealctl.errors import CommandTimeoutError, RemoteCommandError, TransferError
from sealctl.modules.infradriver import InfraDriver
from sealctl.modules.kubernetes.config import InstallerConfig
from sealctl.modules.kubernetes.runtime import KubernetesRuntime
from sealctl.modules.models import ClusterSpec, Host, Inventory, Role, SSHCredentials
from sealctl.modules.rootfs import LocalRootfsProvider
from sealctl.utils.shell import HEREDOC_DELIMITER

CERT_KEY = "f8902e114ef118304e561c3ecd4d0b543adc226b7a07f675f56564185ffe0c07"
CA_HASH = "sha256:7c2e69131a36ae2a042a339b33381c6d0d43887e2de83720eff5359e26aec866"

INIT_OUTPUT = f"""[init] Using Kubernetes version: v1.22.15
Your Kubernetes control-plane has initialized successfully!

You can now join any number of the control-plane node running the following command on each as root:

  kubeadm join apiserver.cluster.local:6443 --token 9vr73a.a8uxyaju799qwdjv \\
\t--discovery-token-ca-cert-hash {CA_HASH} \\
\t--control-plane --certificate-key {CERT_KEY}

Please note that the certificate-key gives access to cluster sensitive data, keep it secret!

Then you can join any number of worker nodes by running the following on each as root:

kubeadm join apiserver.cluster.local:6443 --token 9vr73a.a8uxyaju799qwdjv \\
\t--discovery-token-ca-cert-hash {CA_HASH}
"""

UPLOAD_CERTS_OUTPUT = (
    "[upload-certs] Storing the certificates in Secret \"kubeadm-certs\" in the \"kube-system\" Namespace\n"
    "[upload-certs] Using certificate key:\n"
    "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef\n"
)

JOIN_COMMAND_OUTPUT = (
    "kubeadm join apiserver.cluster.local:6443 --token fresh1.0123456789abcdef "
    f"--discovery-token-ca-cert-hash {CA_HASH} \n"
)


def hostname_of(ip):
    return "host-" + ip.replace(".", "-").replace(":", "-")


class FakeFleet:
    """In-memory stand-in for a set of SSH reachable hosts.

    Every command, copy and fetch is recorded per host and in one global
    ordered log. Responses are matched by substring (or predicate); rules
    added by a test win over the defaults.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.log = []
        self.copies = []
        self.fetches = []
        self.rules = []
        self.failures = []
        self.hangs = []
        self.default_rules = [
            (lambda c: c == "hostname", lambda ip, c: hostname_of(ip)),
            ("test -e", "no"),
            ("kubeadm init --config", INIT_OUTPUT),
            ("get --raw=/healthz", "ok"),
            ("get node", lambda ip, c: f"{c.split('get node ')[1].split()[0]}   Ready   <none>   1m   v1.22.15"),
            ("seautil route check", "ok"),
            ("upload-certs --upload-certs", UPLOAD_CERTS_OUTPUT),
            ("token create --print-join-command", JOIN_COMMAND_OUTPUT),
        ]

    # test helpers ------------------------------------------------------
    def respond(self, match, output):
        self.rules.insert(0, (match, output))

    def fail(self, ip, match="", error=None):
        self.failures.append((ip, match, error))

    def hang(self, ip, match="", seconds=10.0):
        self.hangs.append((ip, match, seconds))

    def commands(self, ip=None):
        return [c for h, c in self.log if ip is None or h == ip]

    def hosts_running(self, match):
        return [h for h, c in self.log if match in c]

    # client side -------------------------------------------------------
    @staticmethod
    def _matches(match, command):
        if callable(match):
            return match(command)
        return match in command

    def _check_failure(self, ip, action):
        for host, match, error in self.failures:
            if host == ip and self._matches(match, action):
                raise error or RemoteCommandError(ip, action, 1, "boom")

    def run(self, ip, command, timeout):
        with self.lock:
            self.log.append((ip, command))
        for host, match, seconds in self.hangs:
            if host == ip and self._matches(match, command):
                time.sleep(min(seconds, timeout))
                if seconds > timeout:
                    raise CommandTimeoutError(ip, command, timeout)
        self._check_failure(ip, command)
        for match, output in self.rules + self.default_rules:
            if self._matches(match, command):
                return output(ip, command) if callable(output) else output
        return ""

    def factory(self, host):
        return FakeSSHClient(self, host.ip)


class FakeSSHClient:
    def __init__(self, fleet, ip):
        self.fleet = fleet
        self.ip = ip

    def cmd(self, command, timeout):
        return self.fleet.run(self.ip, command, timeout)

    def copy(self, local_path, remote_path):
        with self.fleet.lock:
            self.fleet.copies.append((self.ip, local_path, remote_path))
        for host, match, error in self.fleet.failures:
            if host == self.ip and match == "copy":
                raise error or TransferError(self.ip, f"failed to copy {local_path}")

    def fetch(self, remote_path, local_path):
        with self.fleet.lock:
            self.fleet.fetches.append((self.ip, remote_path, local_path))
        os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
        with open(local_path, "w") as f:
            f.write(f"# {remote_path} from {self.ip}\n")


class FakeCertGenerator:
    def __init__(self):
        self.calls = []

    def generate(self, pki_dir, etcd_dir, hostname, advertise_address, service_cidr, dns_domain, sans):
        self.calls.append({
            "pki_dir": pki_dir,
            "hostname": hostname,
            "advertise_address": advertise_address,
            "service_cidr": service_cidr,
            "dns_domain": dns_domain,
            "sans": list(sans),
        })
        os.makedirs(etcd_dir, exist_ok=True)


class RecordingStore:
    def __init__(self):
        self.saved = []

    def save(self, state):
        self.saved.append(state)


def make_host(ip, *roles, **kwargs):
    kwargs.setdefault("ssh", SSHCredentials(user="root", password="secret"))
    return Host(ip=ip, roles=frozenset(roles), **kwargs)


def make_hosts(masters, workers):
    """One host per address; an address listed in both gets both roles."""
    roles = {}
    for ip in masters:
        roles.setdefault(ip, set()).add(Role.MASTER)
    for ip in workers:
        roles.setdefault(ip, set()).add(Role.NODE)
    return [make_host(ip, *sorted(r, key=lambda role: role.value)) for ip, r in roles.items()]


def heredoc_body(command):
    """Content written by a ``shell.write_file`` command."""
    opening = f"<<'{HEREDOC_DELIMITER}'\n"
    start = command.index(opening) + len(opening)
    end = command.index(f"\n{HEREDOC_DELIMITER}\n", start)
    return command[start:end] + "\n"


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def rootfs_dir(tmp_path):
    rootfs = tmp_path / "rootfs"
    (rootfs / "scripts").mkdir(parents=True)
    (rootfs / "scripts" / "init.sh").write_text("#!/bin/bash\n")
    (rootfs / "bin").mkdir()
    (rootfs / "bin" / "kubeadm").write_text("")
    return rootfs


@pytest.fixture
def make_runtime(fleet, rootfs_dir, tmp_path):
    """Build a runtime over the fake fleet.

    ``extra`` are hosts the driver knows without them being members yet.
    """
    def _make(masters, workers, phase=None, extra=(), confirm=lambda role, hosts: True,
              store=None, version="", config=None):
        hosts = make_hosts(masters, workers)
        spec = ClusterSpec(name="demo", image="kubernetes:v1.22.15", hosts=hosts)
        driver = InfraDriver(hosts + list(extra), cluster_env=spec.cluster_env(),
                             client_factory=fleet.factory, command_timeout=5)
        kwargs = {}
        if phase is not None:
            kwargs["phase"] = phase
        return KubernetesRuntime(
            spec,
            driver,
            inventory=Inventory(hosts),
            config=config or InstallerConfig(),
            kubernetes_version=version,
            rootfs_provider=LocalRootfsProvider("demo", str(rootfs_dir)),
            cert_generator=FakeCertGenerator(),
            confirm=confirm,
            state_store=store if store is not None else RecordingStore(),
            local_dir=tmp_path / "local",
            poll_interval=0,
            **kwargs,
        )
    return _make


@pytest.fixture(autouse=True)
def _reset_sealctl_logger():
    yield
    logger = logging.getLogger("sealctl")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
