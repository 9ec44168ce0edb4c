"""Typer-based CLI for ecograph cross-repository analysis."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, config_manager
from .analysis import CallGraphView, EcosystemAnalyzer
from .call_graph import (
    RISK_GLYPHS,
    render_call_graph_mermaid,
    render_impact_tree,
    render_sequence_mermaid,
    temporal_edges,
)
from .cli_groups import analyze_grp, config_grp, snapshot_grp
from .diff_engine import render_diff_mermaid, render_diff_text
from .models import NotFound
from .parser import extract_snapshot
from .relationships import render_class_diagram, summarize
from .storage import SnapshotStore, validate_repo_name
from .topology import export_ecosystem_dot, render_ecosystem_mermaid, render_impact_table
from .type_matcher import render_shared_types_table, render_type_flow_mermaid

console = Console()

app = typer.Typer(
    help="🕸️  ecograph — cross-repository knowledge graph and impact analysis.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.add_typer(snapshot_grp, name="snapshot")
app.add_typer(analyze_grp, name="analyze")
app.add_typer(config_grp, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"ecograph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log debug output to stderr."),
):
    """ecograph: find shared data contracts, blast radius and drift across repositories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _analyzer() -> EcosystemAnalyzer:
    return EcosystemAnalyzer(SnapshotStore())


def _repo_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        return validate_repo_name(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _check(result: Any) -> Any:
    """Exit with code 1 when *result* is a :class:`NotFound`."""
    if isinstance(result, NotFound):
        console.print(f"[red]❌ {result.message}[/red]")
        if result.alternatives:
            console.print(f"Did you mean: {', '.join(result.alternatives)}")
        raise typer.Exit(code=1)
    return result


# ===================================================================
# snapshot
# ===================================================================

@snapshot_grp.command("extract")
def snapshot_extract(
    source_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Working tree to scan."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository name (defaults to directory name)."),
    ref: str = typer.Option("main", "--ref", help="Branch or tag label for this capture."),
    tag: bool = typer.Option(False, "--tag", help="Record the ref as a tag rather than a branch."),
    sha: Optional[str] = typer.Option(None, "--sha", help="Commit id to record."),
):
    """Extract types, calls and services from a working tree and store them."""
    resolved = source_path.resolve()
    name = repo or resolved.name.replace(" ", "_")
    store = SnapshotStore()
    try:
        snapshot = extract_snapshot(resolved, name, ref, ref_type="tag" if tag else "branch", sha=sha)
        written = store.save(snapshot)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    facts = snapshot.type_facts()
    topology = snapshot.topology_facts()
    if not written:
        typer.echo(f"Kept existing newer snapshot for '{name}@{ref}'.")
        return
    typer.echo(f"Extracted '{resolved}' as '{name}@{ref}'.")
    typer.echo(
        f"Types: {len(facts.types)} | Calls: {len(facts.calls)} | "
        f"Services: {len(topology.services)} | Outbound calls: {len(topology.outbound_calls)}"
    )


@snapshot_grp.command("list")
def snapshot_list(repo: Optional[str] = typer.Argument(None, callback=_repo_name, help="Only list refs of this repository.")):
    """List stored snapshots."""
    store = SnapshotStore()
    repos = [repo] if repo else store.list_repos()
    if not repos:
        typer.echo("No snapshots found. Use 'ecograph snapshot extract <path>' first.")
        return

    table = Table(title="📸 Snapshots")
    table.add_column("Repo", style="cyan")
    table.add_column("Ref")
    table.add_column("Type")
    table.add_column("Captured", style="dim")
    for name in repos:
        for entry in store.list_snapshots(name):
            table.add_row(name, entry.ref, entry.ref_type, entry.captured_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@snapshot_grp.command("delete")
def snapshot_delete(
    repo: str = typer.Argument(..., callback=_repo_name, help="Repository name."),
    ref: Optional[str] = typer.Option(None, "--ref", help="Only delete this ref."),
):
    """Delete a repository's snapshots (or a single ref)."""
    if not SnapshotStore().delete(repo, ref):
        typer.echo(f"Nothing to delete for '{repo}'{f'@{ref}' if ref else ''}.")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted '{repo}'{f'@{ref}' if ref else ''}.")


@snapshot_grp.command("prune")
def snapshot_prune(
    repo: str = typer.Argument(..., callback=_repo_name, help="Repository name."),
    keep: int = typer.Option(5, "--keep", min=1, help="Number of most recent snapshots to keep."),
):
    """Remove all but the most recent snapshots of a repository."""
    removed = SnapshotStore().prune(repo, keep)
    typer.echo(f"Removed {len(removed)} snapshot(s)" + (f": {', '.join(removed)}" if removed else "."))


# ===================================================================
# analyze: types
# ===================================================================

@analyze_grp.command("types")
def analyze_types(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Restrict to one repository."),
    name: str = typer.Option("", "--name", "-n", help="Partial type name (case and separator insensitive)."),
    kind: str = typer.Option("", "--kind", "-k", help="struct, class, interface, enum, trait, type_alias, union, protocol."),
    limit: int = typer.Option(50, "--limit", help="Maximum results."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Search type definitions across repositories."""
    results = _check(_analyzer().query_types(repo=repo, name=name, kind=kind, limit=limit))
    if as_json:
        _emit_json([{"repo": r.repo, **r.type_def.to_dict()} for r in results])
        return
    if not results:
        typer.echo("No matching types.")
        return
    table = Table(title=f"🧩 Types ({len(results)})")
    table.add_column("Repo", style="cyan")
    table.add_column("Type", style="bold")
    table.add_column("Kind")
    table.add_column("Fields", justify="right")
    table.add_column("Location", style="dim")
    for r in results:
        t = r.type_def
        table.add_row(r.repo, t.name, t.kind, str(len(t.fields)), f"{t.file}:{t.line}")
    console.print(table)


@analyze_grp.command("shared-types")
def analyze_shared_types(
    ref: Optional[str] = typer.Option(None, "--ref", help="Compare this ref instead of each repo's latest."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """List types that appear in more than one repository."""
    matches = _analyzer().shared_types(ref=ref)
    if as_json:
        _emit_json([m.to_dict() for m in matches])
        return
    typer.echo(render_shared_types_table(matches))


@analyze_grp.command("type-flow")
def analyze_type_flow(
    focus: str = typer.Option("", "--focus", "-f", help="Only edges touching this repository."),
    min_similarity: Optional[int] = typer.Option(None, "--min-similarity", help="Override the configured floor."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Show inferred type contracts between repositories as a Mermaid flowchart."""
    edges = _analyzer().type_flow(min_similarity=min_similarity)
    if as_json:
        _emit_json([e.to_dict() for e in edges if not focus or focus in (e.from_repo, e.to_repo)])
        return
    typer.echo(render_type_flow_mermaid(edges, focus_repo=focus))


@analyze_grp.command("relationships")
def analyze_relationships(
    repo: str = typer.Argument(..., help="Repository name."),
    type_name: str = typer.Option("", "--type", "-t", help="Only relationships touching this type."),
    entities: bool = typer.Option(False, "--entities", help="Only multi-field domain entities."),
    ref: Optional[str] = typer.Option(None, "--ref", help="Snapshot ref (defaults to latest)."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Render type relationships of one repository as a Mermaid class diagram."""
    facts = _check(_analyzer().relationships(repo, focus=type_name, ref=ref))
    if as_json:
        _emit_json({
            "summary": summarize(facts),
            "relationships": [r.to_dict() for r in facts.relationships],
            "modules": [
                {
                    "path": m.path,
                    "types": len(m.types),
                    "internal": len(m.internal_relationships),
                    "external": len(m.external_relationships),
                }
                for m in facts.modules
            ],
        })
        return
    typer.echo(render_class_diagram(facts, focus=type_name, entities_only=entities))


# ===================================================================
# analyze: calls
# ===================================================================

@analyze_grp.command("calls")
def analyze_calls(
    repo: str = typer.Argument(..., help="Repository name."),
    function: Optional[str] = typer.Option(None, "--function", "-f", help="Start from this function (defaults to entry points)."),
    direction: str = typer.Option("callees", "--direction", "-d", help="callers, callees or both."),
    depth: Optional[int] = typer.Option(None, "--depth", help="Maximum hops (capped at 5)."),
    max_nodes: Optional[int] = typer.Option(None, "--max-nodes", help="Maximum functions to include."),
    temporal: bool = typer.Option(False, "--temporal", help="Render a sequence diagram in call order."),
    ref: Optional[str] = typer.Option(None, "--ref", help="Snapshot ref (defaults to latest)."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Render a bounded call graph (or its temporal trace) as Mermaid."""
    try:
        view: CallGraphView = _check(_analyzer().call_graph(
            repo, function=function, direction=direction, max_depth=depth, max_nodes=max_nodes, ref=ref,
        ))
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    traversal = view.traversal
    if as_json:
        payload = {
            "repo": view.repo,
            "ref": view.ref,
            "seeds": traversal.seeds,
            "nodes": traversal.nodes,
            "edges": [{"caller": a, "callee": b} for a, b in traversal.edges],
            "truncated_by": traversal.truncated_by,
        }
        if temporal:
            payload["sequence"] = [vars(c) for c in temporal_edges(view.graph, traversal)]
        _emit_json(payload)
        return

    if temporal:
        typer.echo(render_sequence_mermaid(view.graph, traversal))
    else:
        typer.echo(render_call_graph_mermaid(view.graph, traversal))
    if traversal.truncated_by:
        console.print(f"[yellow]⚠️  Truncated by {traversal.truncated_by} limit[/yellow]")


@analyze_grp.command("impact-tree")
def analyze_impact_tree(
    repo: str = typer.Argument(..., help="Repository name."),
    ref: Optional[str] = typer.Option(None, "--ref", help="Snapshot ref (defaults to latest)."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Show which UI surfaces each external dependency can break."""
    results = _check(_analyzer().impact_tree(repo, ref=ref))
    if as_json:
        _emit_json([
            {
                "dependency": r.dependency,
                "category": r.category,
                "risk": r.risk,
                "upstream_callers": r.upstream_callers,
                "surfaces": [vars(s) for s in r.affected_surfaces],
            }
            for r in results
        ])
        return
    typer.echo(render_impact_tree(results))
    if results:
        counts = {band: sum(1 for r in results if r.risk == band) for band in RISK_GLYPHS}
        typer.echo("")
        typer.echo("  ".join(f"{RISK_GLYPHS[b]} {b}: {n}" for b, n in counts.items()))


# ===================================================================
# analyze: ecosystem and diff
# ===================================================================

@analyze_grp.command("ecosystem")
def analyze_ecosystem(
    focus: Optional[str] = typer.Option(None, "--focus", "-f", help="Only this repository and its direct dependents."),
    ref: Optional[str] = typer.Option(None, "--ref", help="Use this ref instead of each repo's latest."),
    mermaid: bool = typer.Option(False, "--mermaid", help="Render a layered Mermaid diagram instead of a table."),
    dot: Optional[Path] = typer.Option(None, "--dot", help="Also write a Graphviz DOT file."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Rank repositories by how much of the ecosystem depends on them."""
    graph = _check(_analyzer().ecosystem(ref=ref, focus_repo=focus))
    if dot is not None:
        export_ecosystem_dot(graph, dot)
    if as_json:
        _emit_json(graph.to_dict())
        return
    if mermaid:
        typer.echo(render_ecosystem_mermaid(graph))
    else:
        typer.echo(render_impact_table(graph))
    if graph.missing_repos:
        console.print(f"[yellow]No data for: {', '.join(graph.missing_repos)}[/yellow]")


@analyze_grp.command("diff")
def analyze_diff(
    from_ref: str = typer.Argument(..., help="Older ref."),
    to_ref: str = typer.Argument(..., help="Newer ref."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Limit to one repository."),
    domain: Optional[str] = typer.Option(None, "--domain", help="Limit to one fact domain."),
    mermaid: bool = typer.Option(False, "--mermaid", help="Render a Mermaid summary."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON."),
):
    """Compare two refs across the ecosystem."""
    result = _check(_analyzer().diff(from_ref, to_ref, repo=repo, domain=domain))
    if as_json:
        _emit_json(result.to_dict())
        return
    typer.echo(render_diff_mermaid(result) if mermaid else render_diff_text(result))


# ===================================================================
# config
# ===================================================================

@config_grp.command("show")
def config_show():
    """Show effective settings (defaults merged with the config file)."""
    settings = config_manager.load_settings()
    for section, values in settings.items():
        table = Table(title=section, show_header=False)
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        if not values:
            table.add_row("(empty)", "")
        for key, value in values.items():
            table.add_row(key, str(value))
        console.print(table)


@config_grp.command("set")
def config_set(
    key: str = typer.Argument(..., help="section.key, e.g. scoring.contract_floor or ownership.billing-worker"),
    value: str = typer.Argument(..., help="New value."),
):
    """Set one configuration value."""
    section, _, name = key.partition(".")
    if not section or not name:
        raise typer.BadParameter("Key must look like 'section.key'.")
    parsed = config_manager.parse_value(value)
    defaults = config_manager.DEFAULT_SETTINGS.get(section, {})
    if name in defaults and isinstance(defaults[name], int) and not isinstance(parsed, int):
        raise typer.BadParameter(f"{key} must be an integer.")
    if not config_manager.save_setting(section, name, parsed):
        typer.echo("Could not write config file.")
        raise typer.Exit(code=1)
    typer.echo(f"Set {section}.{name} = {parsed!r}")


@config_grp.command("reset")
def config_reset():
    """Revert all settings to defaults."""
    config_manager.reset_settings()
    typer.echo("Settings reset to defaults.")



if __name__ == "__main__":
    app()
