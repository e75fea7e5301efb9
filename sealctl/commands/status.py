import json
from typing import Optional

import typer

from sealctl.modules.models import Role
from sealctl.registry import state_to_dict
from sealctl.utils import redact_sensitive_data
from . import handle_errors, state_store

app = typer.Typer()


def _list_clusters(ctx: typer.Context, output: str) -> None:
    store = state_store(ctx)
    names = store.list()
    if output == "json":
        typer.echo(json.dumps([{"name": n, "phase": store.load(n).phase.value} for n in names], indent=2))
        return
    if not names:
        typer.echo("No clusters found")
        return
    typer.echo("📋 Clusters:")
    for cluster in names:
        typer.echo(f"  {cluster:<20} {store.load(cluster).phase.value}")


@app.command("cluster")
def status_cluster(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Cluster name; omit to list every cluster"),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json"),
):
    """Show the persisted state of a cluster, or list the known clusters."""
    with handle_errors(ctx):
        if name is None:
            _list_clusters(ctx, output)
            return

        state = state_store(ctx).load(name)
        if output == "json":
            typer.echo(json.dumps(redact_sensitive_data(state_to_dict(state)), indent=2))
            return

        inventory = state.inventory
        typer.echo(f"📡 Status for cluster: {name}")
        typer.echo(f"  phase:       {state.phase.value}")
        typer.echo(f"  image:       {state.spec.image}")
        typer.echo(f"  kubernetes:  {state.kubernetes_version or '-'}")
        typer.echo(f"  endpoint:    {state.apiserver_domain or '-'} (vip {state.vip or '-'})")
        typer.echo(f"  master0:     {inventory.primary_master or '-'}")
        for role in Role:
            typer.echo(f"  {role.value + 's:':<12} {', '.join(inventory.by_role(role)) or '-'}")
