import typer

from sealctl.errors import ConfigurationError
from . import build_runtime, handle_errors, parse_ips, state_store

app = typer.Typer()


@app.command("cluster")
def delete_cluster_cmd(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Cluster name"),
    masters: str = typer.Option(None, "--masters", "-m", help="Comma separated master IPs to remove"),
    workers: str = typer.Option(None, "--workers", "-w", help="Comma separated worker IPs to remove"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompt"),
):
    """Scale a cluster down by draining and resetting hosts."""
    with handle_errors(ctx):
        to_remove_masters = parse_ips(masters)
        to_remove_workers = parse_ips(workers)
        if not to_remove_masters and not to_remove_workers:
            raise ConfigurationError("at least one of --masters or --workers is required")

        state = state_store(ctx).load(name)
        runtime = build_runtime(ctx, state, force=force)
        try:
            runtime.scale_down(to_remove_masters, to_remove_workers)
        finally:
            runtime.driver.close()
        typer.echo(f"✅ Removed masters {to_remove_masters or '-'} and workers {to_remove_workers or '-'} from {name}")
