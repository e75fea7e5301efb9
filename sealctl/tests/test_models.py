import pytest

from sealctl.errors import ConfigurationError
from sealctl.modules.models import ClusterSpec, Inventory, RegistryConfig, Role, SSHCredentials, Taint
from conftest import make_host, make_hosts


def test_inventory_role_index():
    inventory = Inventory(make_hosts(["10.0.0.1", "10.0.0.2"], ["10.0.0.3"]))
    assert inventory.masters == ["10.0.0.1", "10.0.0.2"]
    assert inventory.workers == ["10.0.0.3"]
    assert inventory.primary_master == "10.0.0.1"
    assert inventory.secondary_masters == ["10.0.0.2"]


def test_primary_master_is_explicit():
    inventory = Inventory(make_hosts(["10.0.0.1", "10.0.0.2"], []), primary_master="10.0.0.2")
    assert inventory.masters == ["10.0.0.2", "10.0.0.1"]


def test_host_with_both_roles():
    inventory = Inventory([make_host("10.0.0.1", Role.MASTER, Role.NODE)])
    assert inventory.masters == inventory.workers == ["10.0.0.1"]


def test_mixed_ip_family_rejected():
    with pytest.raises(ConfigurationError, match="same ip family"):
        Inventory(make_hosts(["10.0.0.1"], ["fd00::1"]))


def test_duplicate_host_rejected():
    with pytest.raises(ConfigurationError, match="duplicated"):
        Inventory([make_host("10.0.0.1", Role.MASTER), make_host("10.0.0.1", Role.NODE)])


def test_address_in_both_lists_holds_both_roles():
    inventory = Inventory(make_hosts(["10.0.0.1", "10.0.0.2"], ["10.0.0.2", "10.0.0.11"]))
    assert inventory.ips == ["10.0.0.1", "10.0.0.2", "10.0.0.11"]
    assert inventory.masters == ["10.0.0.1", "10.0.0.2"]
    assert inventory.workers == ["10.0.0.2", "10.0.0.11"]


def test_host_without_role_rejected():
    with pytest.raises(ConfigurationError):
        Inventory([make_host("10.0.0.1")])


def test_membership_changes_return_new_inventory():
    inventory = Inventory(make_hosts(["10.0.0.1"], ["10.0.0.3"]))
    grown = inventory.with_role_added([make_host("10.0.0.2")], Role.MASTER)
    assert grown.masters == ["10.0.0.1", "10.0.0.2"]
    assert inventory.masters == ["10.0.0.1"]

    shrunk = grown.with_role_removed(["10.0.0.1"], Role.MASTER)
    assert shrunk.primary_master == "10.0.0.2"
    assert "10.0.0.1" not in shrunk
    assert grown.primary_master == "10.0.0.1"


def test_removing_one_role_keeps_the_host():
    inventory = Inventory([make_host("10.0.0.1", Role.MASTER, Role.NODE)])
    updated = inventory.with_role_removed(["10.0.0.1"], Role.NODE)
    assert updated.workers == []
    assert updated.masters == ["10.0.0.1"]


def test_ssh_credentials_validation():
    with pytest.raises(ConfigurationError):
        SSHCredentials(user="root").validate("10.0.0.1")
    SSHCredentials(user="root", private_key="~/.ssh/id_rsa").validate("10.0.0.1")


def test_ssh_credentials_merge():
    merged = SSHCredentials(user="", password="pw", port=0).merged_over(SSHCredentials(user="ops", port=2222))
    assert (merged.user, merged.password, merged.port) == ("ops", "pw", 2222)


@pytest.mark.parametrize("text", ["dedicated=db:NoSchedule", "gpu:NoExecute"])
def test_taint_round_trip(text):
    assert str(Taint.parse(text)) == text


@pytest.mark.parametrize("text", ["nodelimiter", "key=value:Sometimes", "=v:NoSchedule"])
def test_taint_invalid(text):
    with pytest.raises(ConfigurationError):
        Taint.parse(text)


def test_cluster_env_defaults():
    spec = ClusterSpec(name="demo", image="img", hosts=make_hosts(["10.0.0.1"], []),
                       env={"RegistryPort": "5443"}, registry=RegistryConfig("hub.local", 5000))
    env = spec.cluster_env()
    assert env["RegistryDomain"] == "hub.local"
    assert env["RegistryPort"] == "5443"
    assert env["RegistryURL"] == "hub.local:5000"
    assert "HostIPFamily" not in env


def test_cluster_env_ipv6():
    spec = ClusterSpec(name="demo", image="img", hosts=make_hosts(["fd00::1"], []))
    assert spec.cluster_env()["HostIPFamily"] == "IPv6"
