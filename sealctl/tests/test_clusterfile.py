import textwrap

import pytest

from sealctl.errors import ConfigurationError
from sealctl.modules.clusterfile import load_clusterfile, parse_env
from sealctl.modules.models import Role

FLAT = """
name: demo
image: kubernetes:v1.22.15
ssh:
  user: ops
  passwd: secret
env:
  - Mirrors=a.example.com;b.example.com
  - PodCIDR=100.64.0.0/10
registry:
  domain: hub.local
  port: 5443
hosts:
  - ips: [10.0.0.1]
    roles: [master]
    ssh:
      port: "2222"
  - ips: [10.0.0.11, 10.0.0.12]
    roles: [node]
    env: [Disk=/dev/sdb]
    labels:
      zone: a
    taints: ["dedicated=db:NoSchedule"]
"""

KIND_CLUSTER = """
apiVersion: sealer.cloud/v2
kind: Cluster
metadata:
  name: prod
spec:
  image: kubernetes:v1.22.15
  ssh:
    passwd: secret
  hosts:
    - ips: [192.168.0.2, 192.168.0.3]
      roles: [master, node]
---
apiVersion: sealer.cloud/v2
kind: Plugin
metadata:
  name: ignored
"""


@pytest.fixture
def clusterfile(tmp_path):
    def _write(text):
        path = tmp_path / "Clusterfile"
        path.write_text(textwrap.dedent(text))
        return path
    return _write


@pytest.fixture(autouse=True)
def no_default_key(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))


def test_load_flat_clusterfile(clusterfile):
    spec = load_clusterfile(clusterfile(FLAT))

    assert spec.name == "demo"
    assert spec.image == "kubernetes:v1.22.15"
    assert [h.ip for h in spec.hosts] == ["10.0.0.1", "10.0.0.11", "10.0.0.12"]
    assert spec.env["Mirrors"] == ["a.example.com", "b.example.com"]
    assert spec.env["PodCIDR"] == "100.64.0.0/10"
    assert spec.registry.url == "hub.local:5443"

    master, worker, _ = spec.hosts
    assert master.roles == {Role.MASTER}
    assert (master.ssh.user, master.ssh.password, master.ssh.port) == ("ops", "secret", 2222)
    assert (worker.ssh.user, worker.ssh.port) == ("ops", 22)
    assert worker.env == {"Disk": "/dev/sdb"}
    assert worker.labels == {"zone": "a"}
    assert [str(t) for t in worker.taints] == ["dedicated=db:NoSchedule"]


def test_load_kind_cluster_document(clusterfile):
    spec = load_clusterfile(clusterfile(KIND_CLUSTER))

    assert spec.name == "prod"
    assert [h.ip for h in spec.hosts] == ["192.168.0.2", "192.168.0.3"]
    assert spec.hosts[0].roles == {Role.MASTER, Role.NODE}
    assert spec.hosts[0].ssh.user == "root"
    assert spec.registry.url == "sea.hub:5000"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_clusterfile(tmp_path / "nope")


@pytest.mark.parametrize("text", [
    "name: demo\nimage: x\n",
    "name: demo\nimage: x\nhosts: []\n",
    "name: demo\nimage: x\nhosts:\n  - ips: [10.0.0.1]\n    roles: [etcd]\n",
    "image: x\nhosts:\n  - ips: [10.0.0.1]\n    roles: [master]\n",
])
def test_schema_errors(clusterfile, text):
    with pytest.raises(ConfigurationError, match="invalid Clusterfile"):
        load_clusterfile(clusterfile(text))


def test_host_without_credentials(clusterfile):
    text = "name: demo\nimage: x\nhosts:\n  - ips: [10.0.0.1]\n    roles: [master]\n"
    with pytest.raises(ConfigurationError, match="password or a private key"):
        load_clusterfile(clusterfile(text))


def test_default_private_key(clusterfile, tmp_path):
    (tmp_path / ".ssh").mkdir()
    (tmp_path / ".ssh" / "id_rsa").write_text("key")
    text = "name: demo\nimage: x\nhosts:\n  - ips: [10.0.0.1]\n    roles: [master]\n"
    spec = load_clusterfile(clusterfile(text))
    assert spec.hosts[0].ssh.private_key == "~/.ssh/id_rsa"


def test_mixed_ip_family(clusterfile):
    text = (
        "name: demo\nimage: x\nssh: {passwd: pw}\nhosts:\n"
        "  - ips: [10.0.0.1]\n    roles: [master]\n"
        "  - ips: ['fd00::1']\n    roles: [node]\n"
    )
    with pytest.raises(ConfigurationError, match="same ip family"):
        load_clusterfile(clusterfile(text))


def test_invalid_ip(clusterfile):
    text = "name: demo\nimage: x\nssh: {passwd: pw}\nhosts:\n  - ips: [10.0.0.300]\n    roles: [master]\n"
    with pytest.raises(ConfigurationError, match="invalid IP"):
        load_clusterfile(clusterfile(text))


def test_no_cluster_document(clusterfile):
    with pytest.raises(ConfigurationError, match="no Cluster document"):
        load_clusterfile(clusterfile("kind: Plugin\nmetadata:\n  name: x\n"))


def test_parse_env():
    assert parse_env(["A=1", "B=x;y", "C="]) == {"A": "1", "B": ["x", "y"], "C": ""}
    with pytest.raises(ConfigurationError):
        parse_env(["NOVALUE"])
