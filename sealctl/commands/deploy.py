import typer

from sealctl.modules.clusterfile import load_clusterfile
from sealctl.modules.kubernetes.models import ClusterPhase
from sealctl.modules.models import Inventory
from sealctl.registry import ClusterState
from . import build_runtime, handle_errors, state_store

app = typer.Typer()


@app.command("cluster")
def deploy_cluster_cmd(
    ctx: typer.Context,
    clusterfile: str = typer.Option(..., "--clusterfile", "-f", help="Path to the Clusterfile"),
    rootfs: str = typer.Option(None, "--rootfs", help="Local rootfs directory of the cluster image"),
):
    """Install a new cluster from a Clusterfile."""
    with handle_errors(ctx):
        spec = load_clusterfile(clusterfile)
        store = state_store(ctx)
        phase = store.load(spec.name).phase if store.exists(spec.name) else ClusterPhase.UNINITIALIZED
        state = ClusterState(spec=spec, inventory=Inventory(spec.hosts), phase=phase)

        typer.echo(f"🚀 Deploying cluster {spec.name} with image {spec.image}")
        runtime = build_runtime(ctx, state, rootfs=rootfs)
        try:
            runtime.install()
        finally:
            runtime.driver.close()
        typer.echo(f"✅ Cluster {spec.name} is ready, kubeconfig: {runtime.kubeconfig_path}")
