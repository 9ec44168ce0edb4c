"""Service topology builder.

Merges edge, backend and internal service inventories into one provider
index, turns observed outbound calls and strong type contracts into
repository dependency edges, and ranks repositories by how much of the
ecosystem leans on them.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from .graph_export import export_dot, render_text_table, sanitize_label, unique_ids
from .models import (
    DependencyEdge,
    ExtractionSnapshot,
    NotFound,
    OutboundCall,
    RepositoryImpact,
    ServiceInfo,
    TopologyFacts,
    TypeFlowEdge,
)

logger = logging.getLogger(__name__)

DEPLOYMENT_SUFFIXES = ("-api", "-relay", "-worker", "-service", "-server", "-web", "-app")
GLOB_CHARS = set("*?[")

LAYER_TITLES = {
    "edge": "🌐 Edge",
    "backend": "⚙️ Backend",
    "internal": "🏠 Internal",
    "none": "📁 No services",
}

TopologySource = Union[ExtractionSnapshot, TopologyFacts, None]


@dataclass(frozen=True)
class ImpactWeights:
    services: int = 5
    dependents: int = 10
    shared_types: int = 1


DEFAULT_IMPACT_WEIGHTS = ImpactWeights()


@dataclass
class OwnershipRules:
    """Configured overrides for backend service ownership.

    ``explicit`` maps a deployment name to a repository; ``image_rewrites``
    maps a container image (full reference or short name) to a repository.
    """

    explicit: Dict[str, str] = field(default_factory=dict)
    image_rewrites: Dict[str, str] = field(default_factory=dict)


@dataclass
class Provider:
    key: str
    repo: str
    service: str
    layer: str


@dataclass
class EcosystemGraph:
    repos: List[str]
    impacts: List[RepositoryImpact]
    edges: List[DependencyEdge]
    services_by_repo: Dict[str, List[ServiceInfo]] = field(default_factory=dict)
    external_calls: List[Tuple[str, OutboundCall]] = field(default_factory=list)
    missing_repos: List[str] = field(default_factory=list)

    def impact_for(self, repo: str) -> Optional[RepositoryImpact]:
        for impact in self.impacts:
            if impact.repo == repo:
                return impact
        return None

    def primary_layer(self, repo: str) -> str:
        layers = {s.layer for s in self.services_by_repo.get(repo, [])}
        for layer in ("edge", "backend", "internal"):
            if layer in layers:
                return layer
        return "none"

    def to_dict(self) -> Dict[str, object]:
        return {
            "repos": self.repos,
            "impacts": [i.to_dict() for i in self.impacts],
            "edges": [e.to_dict() for e in self.edges],
            "services": {
                repo: [s.to_dict() for s in services]
                for repo, services in self.services_by_repo.items()
            },
            "external_calls": [
                {"repo": repo, **call.to_dict()} for repo, call in self.external_calls
            ],
            "missing_repos": self.missing_repos,
        }


# ------------------------------------------------------------------
# Ownership
# ------------------------------------------------------------------

def image_short_name(image: str) -> str:
    """``ghcr.io/acme/billing-api:1.2`` -> ``billing-api``."""
    last = image.rstrip("/").split("/")[-1]
    return last.split("@")[0].split(":")[0]


def strip_deployment_suffix(name: str) -> str:
    for suffix in DEPLOYMENT_SUFFIXES:
        if name.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)]
    return name


def resolve_backend_owner(
    service: ServiceInfo,
    declaring_repo: str,
    rules: OwnershipRules,
    known_repos: Iterable[str],
) -> str:
    """Decide which repository builds a cluster-deployed service.

    Priority: explicit mapping, image rewrite (full reference then short
    name), then the deployment name with a known suffix stripped. The
    stripped name only wins when it names a known repository.
    """
    if service.name in rules.explicit:
        return rules.explicit[service.name]
    if service.owner_repo and service.owner_repo != declaring_repo:
        return service.owner_repo

    image = service.container_image
    if image:
        if image in rules.image_rewrites:
            return rules.image_rewrites[image]
        short = image_short_name(image)
        if short in rules.image_rewrites:
            return rules.image_rewrites[short]

    known = set(known_repos)
    for candidate in (strip_deployment_suffix(service.name), service.name):
        if candidate in known:
            return candidate
    if image:
        short = image_short_name(image)
        for candidate in (strip_deployment_suffix(short), short):
            if candidate in known:
                return candidate
    return declaring_repo


def resolve_owner(
    service: ServiceInfo,
    declaring_repo: str,
    rules: OwnershipRules,
    known_repos: Iterable[str],
) -> str:
    if service.layer == "backend":
        return resolve_backend_owner(service, declaring_repo, rules, known_repos)
    if service.layer == "edge":
        return service.owner_repo or declaring_repo
    return declaring_repo


# ------------------------------------------------------------------
# Provider index and matching
# ------------------------------------------------------------------

def build_provider_index(services: Iterable[ServiceInfo]) -> Dict[str, Provider]:
    """Key each service by its route patterns (edge) or its name.

    Services must already carry their resolved ``owner_repo``. The first
    service to claim a key keeps it.
    """
    providers: Dict[str, Provider] = {}
    for service in services:
        keys = [service.name]
        if service.layer == "edge" and service.route_patterns:
            keys = list(service.route_patterns) + [service.name]
        for key in keys:
            if key in providers:
                if providers[key].repo != service.owner_repo:
                    logger.debug("Provider key %s already owned by %s", key, providers[key].repo)
                continue
            providers[key] = Provider(key, service.owner_repo, service.name, service.layer)
    return providers


def _split_target(target: str) -> Tuple[str, str]:
    if target.startswith("/"):
        return "", target
    if "://" in target:
        parts = urlsplit(target)
        return parts.hostname or "", parts.path
    if "/" in target or "." in target:
        parts = urlsplit("//" + target)
        return parts.hostname or "", parts.path
    return "", ""


def match_provider(target: str, providers: Mapping[str, Provider]) -> Optional[Provider]:
    """Find the service an outbound call target resolves to.

    Tried in order: exact key, glob route pattern, first host label as a
    service name, then path prefix. Within each step the longest key wins.
    """
    host, path = _split_target(target)

    for candidate in (target, host + path, path, host):
        if candidate and candidate in providers:
            return providers[candidate]

    by_length = sorted(providers, key=len, reverse=True)

    for key in by_length:
        if GLOB_CHARS & set(key):
            for candidate in (target, host + path, path):
                if candidate and fnmatchcase(candidate, key):
                    return providers[key]

    if host:
        label = host.split(".")[0]
        if label in providers:
            return providers[label]

    if path:
        for key in by_length:
            prefix = key.rstrip("*").rstrip("/")
            if not prefix.startswith("/"):
                continue
            if path == prefix or path.startswith(prefix + "/"):
                return providers[key]
    return None


# ------------------------------------------------------------------
# Graph construction
# ------------------------------------------------------------------

def _topology_of(source: TopologySource) -> Optional[TopologyFacts]:
    if source is None:
        return None
    if isinstance(source, ExtractionSnapshot):
        return source.topology_facts() or TopologyFacts()
    return source


def build_ecosystem_graph(
    snapshots_by_repo: Mapping[str, TopologySource],
    type_flow_edges: Iterable[TypeFlowEdge] = (),
    rules: Optional[OwnershipRules] = None,
    contract_floor: int = 60,
    weights: ImpactWeights = DEFAULT_IMPACT_WEIGHTS,
) -> EcosystemGraph:
    """Infer repository dependencies and rank repositories by impact.

    Args:
        snapshots_by_repo: Repository mapped to its snapshot, its topology
            facts, or ``None`` when no snapshot exists.
        type_flow_edges: Cross-repository type contracts.
        rules: Backend ownership overrides.
        contract_floor: Minimum contract confidence to count as a
            dependency.
        weights: Impact score coefficients.

    Returns:
        The ranked ecosystem graph. Repositories without data are kept with
        ``has_data=False`` rather than aborting the build.
    """
    rules = rules or OwnershipRules()
    known = set(snapshots_by_repo)
    missing: List[str] = []
    facts_by_repo: Dict[str, TopologyFacts] = {}

    for repo, source in snapshots_by_repo.items():
        facts = _topology_of(source)
        if facts is None:
            logger.info("No snapshot for %s; treated as no data", repo)
            missing.append(repo)
            continue
        facts_by_repo[repo] = facts

    services_by_repo: Dict[str, List[ServiceInfo]] = {}
    resolved: List[ServiceInfo] = []
    for repo, facts in facts_by_repo.items():
        for service in facts.services:
            owner = resolve_owner(service, repo, rules, known)
            owned = replace(service, owner_repo=owner)
            services_by_repo.setdefault(owner, []).append(owned)
            resolved.append(owned)

    providers = build_provider_index(resolved)
    edges: Dict[Tuple[str, str, str], DependencyEdge] = {}
    external: List[Tuple[str, OutboundCall]] = []

    def _add_edge(source: str, target: str, kind: str, evidence: str) -> None:
        if source == target:
            return
        edge = edges.setdefault((source, target, kind), DependencyEdge(source, target, kind))
        if evidence not in edge.evidence:
            edge.evidence.append(evidence)

    for repo, facts in facts_by_repo.items():
        for call in facts.outbound_calls:
            provider = match_provider(call.target, providers)
            if provider is None:
                external.append((repo, call))
                continue
            _add_edge(repo, provider.repo, "call", call.target)

    shared: Dict[str, Set[str]] = {}
    for flow in type_flow_edges:
        if flow.confidence < contract_floor or flow.from_repo == flow.to_repo:
            continue
        _add_edge(flow.from_repo, flow.to_repo, "type_contract", flow.from_type)
        shared.setdefault(flow.from_repo, set()).add(flow.from_type)
        shared.setdefault(flow.to_repo, set()).add(flow.to_type)

    edge_list = sorted(edges.values(), key=lambda e: (e.source, e.target, e.kind))
    repos = sorted(known | set(services_by_repo) | {e.source for e in edge_list} | {e.target for e in edge_list})

    impacts = []
    for repo in repos:
        depended_on_by = sorted({e.source for e in edge_list if e.target == repo})
        depends_on = sorted({e.target for e in edge_list if e.source == repo})
        shared_names = sorted(shared.get(repo, set()))
        provided = len(services_by_repo.get(repo, []))
        impact = RepositoryImpact(
            repo=repo,
            provided_services=provided,
            depended_on_by=depended_on_by,
            depends_on=depends_on,
            shared_type_names=shared_names,
            has_data=repo not in missing,
        )
        impact.impact_score = impact_score(impact, weights)
        impacts.append(impact)

    impacts.sort(key=lambda i: (-i.impact_score, i.repo))
    return EcosystemGraph(
        repos=repos,
        impacts=impacts,
        edges=edge_list,
        services_by_repo=services_by_repo,
        external_calls=external,
        missing_repos=sorted(missing),
    )


def impact_score(impact: RepositoryImpact, weights: ImpactWeights = DEFAULT_IMPACT_WEIGHTS) -> int:
    return (
        weights.services * impact.provided_services
        + weights.dependents * len(impact.depended_on_by)
        + weights.shared_types * len(impact.shared_type_names)
    )


def focus(graph: EcosystemGraph, repo: str) -> Union[EcosystemGraph, NotFound]:
    """Restrict the graph to *repo* and the repositories that call into it."""
    target = graph.impact_for(repo)
    if target is None:
        candidates = difflib.get_close_matches(repo, graph.repos, n=5, cutoff=0.3)
        return NotFound("repository", repo, candidates or graph.repos[:5])

    keep = {repo} | set(target.depended_on_by)
    return EcosystemGraph(
        repos=sorted(keep),
        impacts=[i for i in graph.impacts if i.repo in keep],
        edges=[e for e in graph.edges if e.target == repo and e.source in keep],
        services_by_repo={r: s for r, s in graph.services_by_repo.items() if r in keep},
        external_calls=[(r, c) for r, c in graph.external_calls if r == repo],
        missing_repos=[r for r in graph.missing_repos if r in keep],
    )


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------

def render_ecosystem_mermaid(graph: EcosystemGraph) -> str:
    lines = ["flowchart TB"]
    endpoints = [n for e in graph.edges for n in (e.source, e.target)]
    ids = unique_ids(
        list(graph.repos) + endpoints,
        reserved=[f"{layer}_layer" for layer in LAYER_TITLES] + ["note"],
    )
    by_layer: Dict[str, List[str]] = {}
    for repo in graph.repos:
        by_layer.setdefault(graph.primary_layer(repo), []).append(repo)

    for layer in ("edge", "backend", "internal", "none"):
        members = by_layer.get(layer)
        if not members:
            continue
        lines.append(f'    subgraph {layer}_layer["{LAYER_TITLES[layer]}"]')
        for repo in members:
            impact = graph.impact_for(repo)
            score = impact.impact_score if impact else 0
            suffix = "" if impact is None or impact.has_data else " no data"
            lines.append(f'        {ids[repo]}["📦 {sanitize_label(repo)} ({score}){suffix}"]')
        lines.append("    end")

    for edge in graph.edges:
        src, dst = ids[edge.source], ids[edge.target]
        if edge.kind == "type_contract":
            label = sanitize_label(", ".join(edge.evidence[:3]), 60)
            lines.append(f'    {src} -.->|"{label}"| {dst}')
        else:
            count = len(edge.evidence)
            label = f'|"{count} calls"|' if count > 1 else ""
            lines.append(f"    {src} -->{label} {dst}")

    if not graph.repos:
        lines.append('    note["No repositories with snapshots"]')
    return "\n".join(lines)


def render_impact_table(graph: EcosystemGraph, limit: int = 30) -> str:
    rows = []
    for rank, impact in enumerate(graph.impacts[:limit], start=1):
        rows.append((
            rank,
            impact.repo,
            impact.impact_score,
            impact.provided_services,
            len(impact.depended_on_by),
            len(impact.depends_on),
            len(impact.shared_type_names),
            "" if impact.has_data else "no data",
        ))
    if not rows:
        return "No repositories to rank."
    return render_text_table(
        ("#", "Repo", "Score", "Services", "Dependents", "Depends on", "Shared types", ""),
        rows,
    )


def export_ecosystem_dot(graph: EcosystemGraph, output_file: Optional[Path] = None, focus_repo: str = "") -> str:
    nodes = {}
    for repo in graph.repos:
        impact = graph.impact_for(repo)
        nodes[repo] = f"{repo}\\nscore {impact.impact_score if impact else 0}"
    edges = [{"src": e.source, "dst": e.target, "edge_type": e.kind} for e in graph.edges]
    return export_dot(nodes, edges, output_file=output_file, focus=focus_repo)
