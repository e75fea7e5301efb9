import typer

from sealctl.errors import ConfigurationError
from sealctl.modules.models import Host, SSHCredentials
from . import build_runtime, handle_errors, parse_ips, state_store

app = typer.Typer()


@app.command("cluster")
def join_cluster_cmd(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Cluster name"),
    masters: str = typer.Option(None, "--masters", "-m", help="Comma separated master IPs to add (hosts not yet in the cluster)"),
    workers: str = typer.Option(None, "--workers", "-w", help="Comma separated worker IPs to add (hosts not yet in the cluster)"),
    user: str = typer.Option(None, "--user", "-u", help="SSH user of the new hosts"),
    passwd: str = typer.Option(None, "--passwd", "-p", help="SSH password of the new hosts"),
    pk: str = typer.Option(None, "--pk", help="SSH private key of the new hosts"),
    pk_passwd: str = typer.Option(None, "--pk-passwd", help="Passphrase of the private key"),
    port: int = typer.Option(None, "--port", help="SSH port of the new hosts"),
    rootfs: str = typer.Option(None, "--rootfs", help="Local rootfs directory of the cluster image"),
):
    """Scale a cluster up with new masters and/or workers.

    New hosts reuse master-zero's SSH settings for anything not given on the
    command line. Only hosts that are not members yet can join; to give a
    member another role, delete it from the cluster first.
    """
    with handle_errors(ctx):
        new_masters = parse_ips(masters)
        new_workers = parse_ips(workers)
        if not new_masters and not new_workers:
            raise ConfigurationError("at least one of --masters or --workers is required")

        state = state_store(ctx).load(name)
        defaults = state.inventory.get(state.inventory.primary_master).ssh
        ssh = SSHCredentials(
            user=user or "",
            password=passwd,
            private_key=pk,
            passphrase=pk_passwd,
            port=port or 0,
        ).merged_over(defaults)
        new_hosts = [Host(ip=ip, ssh=ssh) for ip in dict.fromkeys(new_masters + new_workers)
                     if ip not in state.inventory]

        typer.echo(f"➕ Joining masters {new_masters or '-'} and workers {new_workers or '-'} to {name}")
        runtime = build_runtime(ctx, state, rootfs=rootfs, extra_hosts=new_hosts)
        try:
            runtime.scale_up(new_masters, new_workers)
        finally:
            runtime.driver.close()
        typer.echo(f"✅ Cluster {name} scaled up")
