import typer

from . import build_runtime, handle_errors, state_store

app = typer.Typer()


@app.command("cluster")
def reset_cluster_cmd(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Cluster name"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
):
    """
    Reset a cluster by running kubeadm reset on every host.

    Workers are reset first, then masters. The host inventory is kept so the
    cluster can be deployed again.
    """
    with handle_errors(ctx):
        state = state_store(ctx).load(name)
        typer.echo(f"🔁 Resetting cluster: {name}")
        runtime = build_runtime(ctx, state, force=force)
        try:
            runtime.reset()
        finally:
            runtime.driver.close()
        typer.echo(f"✅ Cluster {name} has been reset")
