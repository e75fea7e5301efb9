import pytest

from sealctl.errors import BatchExecutionError, ConfigurationError, TransferError
from sealctl.modules.infradriver import InfraDriver
from sealctl.modules.models import Role
from sealctl.modules.rootfs import LocalRootfsProvider, RootfsDistributor
from conftest import make_host

IPS = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
REMOTE = "/var/lib/sealer/data/demo/rootfs"


@pytest.fixture
def distributor(fleet):
    hosts = [make_host(ip, Role.NODE, env={"Arch": "amd64"}) for ip in IPS]
    driver = InfraDriver(hosts, cluster_env={"RegistryURL": "sea.hub:5000"}, client_factory=fleet.factory)
    return RootfsDistributor(driver, REMOTE)


def test_distribute_copies_then_inits(distributor, fleet, rootfs_dir):
    distributor.distribute(IPS, str(rootfs_dir))

    assert sorted(ip for ip, _, _ in fleet.copies) == IPS
    assert all(remote == REMOTE for _, _, remote in fleet.copies)
    for ip in IPS:
        [init] = fleet.commands(ip)
        assert init.endswith(f"cd {REMOTE} && chmod +x scripts/* && cd scripts && bash init.sh")
        assert f"export HostIP={ip}" in init
        assert "export RegistryURL=sea.hub:5000" in init
        assert "export Arch=amd64" in init


def test_failed_copy_skips_init_on_that_host(distributor, fleet, rootfs_dir):
    fleet.fail(IPS[1], "copy", TransferError(IPS[1], "disk full"))

    with pytest.raises(BatchExecutionError) as excinfo:
        distributor.distribute(IPS, str(rootfs_dir))

    assert excinfo.value.hosts == [IPS[1]]
    assert excinfo.value.step == "distribute rootfs"
    assert fleet.commands(IPS[1]) == []
    assert len(fleet.commands(IPS[0])) == 1


def test_copy_and_init_failures_are_reported_together(distributor, fleet, rootfs_dir):
    fleet.fail(IPS[0], "copy")
    fleet.fail(IPS[2], "init.sh")

    with pytest.raises(BatchExecutionError) as excinfo:
        distributor.distribute(IPS, str(rootfs_dir))

    assert excinfo.value.hosts == [IPS[0], IPS[2]]


def test_clean_runs_clean_script_and_removes_rootfs(distributor, fleet):
    distributor.clean(IPS[:1])
    [command] = fleet.commands(IPS[0])
    assert "bash clean.sh" in command
    assert command.endswith(f"rm -rf {REMOTE}")


def test_provider_requires_scripts_dir(tmp_path):
    (tmp_path / "empty").mkdir()
    with pytest.raises(ConfigurationError):
        LocalRootfsProvider("demo", str(tmp_path / "empty")).get_rootfs("kubernetes:v1.22.15")
    with pytest.raises(ConfigurationError):
        LocalRootfsProvider("demo", str(tmp_path / "missing")).get_rootfs("kubernetes:v1.22.15")


def test_provider_returns_absolute_path(rootfs_dir):
    assert LocalRootfsProvider("demo", str(rootfs_dir)).get_rootfs("img") == str(rootfs_dir)
