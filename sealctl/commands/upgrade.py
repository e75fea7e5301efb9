import typer

from . import build_runtime, handle_errors, state_store

app = typer.Typer()


@app.command("cluster")
def upgrade_cluster_cmd(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Cluster name"),
    rootfs: str = typer.Option(None, "--rootfs", help="Local rootfs directory holding the new binaries"),
    version: str = typer.Option(None, "--version", help="Target Kubernetes version, e.g. v1.23.4"),
):
    """Upgrade Kubernetes on every host, masters first."""
    with handle_errors(ctx):
        state = state_store(ctx).load(name)
        runtime = build_runtime(ctx, state, rootfs=rootfs)
        try:
            runtime.upgrade(version)
        finally:
            runtime.driver.close()
        typer.echo(f"✅ Cluster {name} upgraded to {runtime.kubernetes_version}")
