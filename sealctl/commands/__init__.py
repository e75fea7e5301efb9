"""Shared plumbing of the sealctl sub-commands."""
import logging
import traceback
from contextlib import contextmanager
from typing import Iterable, List, Optional

import typer

from sealctl.errors import SealctlError
from sealctl.modules.infradriver import InfraDriver
from sealctl.modules.kubernetes.config import InstallerConfig
from sealctl.modules.kubernetes.runtime import KubernetesRuntime
from sealctl.modules.models import Host
from sealctl.modules.rootfs import LocalRootfsProvider
from sealctl.registry import ClusterState, StateStore
from sealctl.utils.net import split_ip_list

logger = logging.getLogger("sealctl.commands")


def _obj(ctx: typer.Context) -> dict:
    if ctx.obj is None:
        ctx.obj = {}
    return ctx.obj


def installer_config(ctx: typer.Context) -> InstallerConfig:
    obj = _obj(ctx)
    if "config" not in obj:
        obj["config"] = InstallerConfig.load()
    return obj["config"]


def state_store(ctx: typer.Context) -> StateStore:
    obj = _obj(ctx)
    if "store" not in obj:
        obj["store"] = StateStore()
    return obj["store"]


def parse_ips(value: Optional[str]) -> List[str]:
    """Comma separated addresses from a CLI option, canonicalized."""
    return split_ip_list(value or "")


@contextmanager
def handle_errors(ctx: typer.Context):
    """Turn sealctl errors into a message on stderr and exit code 1."""
    try:
        yield
    except SealctlError as e:
        if _obj(ctx).get("debug"):
            logger.error(f"{e}\n{traceback.format_exc()}")
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)


def build_runtime(
    ctx: typer.Context,
    state: ClusterState,
    rootfs: Optional[str] = None,
    extra_hosts: Iterable[Host] = (),
    force: bool = False,
) -> KubernetesRuntime:
    """Wire a runtime for ``state`` with a driver that also knows ``extra_hosts``."""
    obj = _obj(ctx)
    config = installer_config(ctx)
    driver = InfraDriver(
        list(state.inventory.hosts) + list(extra_hosts),
        cluster_env=state.spec.cluster_env(),
        client_factory=obj.get("client_factory"),
        command_timeout=config.ssh.command_timeout,
        connect_timeout=config.ssh.connect_timeout,
        max_workers=config.ssh.max_workers,
    )
    kwargs = {}
    if obj.get("cert_generator") is not None:
        kwargs["cert_generator"] = obj["cert_generator"]
    if "poll_interval" in obj:
        kwargs["poll_interval"] = obj["poll_interval"]
    return KubernetesRuntime(
        state.spec,
        driver,
        inventory=state.inventory,
        config=config,
        phase=state.phase,
        kubernetes_version=state.kubernetes_version,
        rootfs_provider=LocalRootfsProvider(state.name, rootfs),
        confirm=(lambda role, hosts: True) if force else None,
        state_store=state_store(ctx),
        **kwargs,
    )
