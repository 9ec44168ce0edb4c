"""Orchestrator answering architecture questions over stored snapshots.

Every query loads the snapshots it needs through a :class:`SnapshotSource`
and recomputes derived views from them. Unknown repositories, refs or
functions come back as :class:`~ecograph.models.NotFound` with nearby
alternatives instead of raising.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from . import diff_engine, topology, type_matcher
from .call_graph import (
    CallGraph,
    DependencyImpact,
    RiskBands,
    Traversal,
    bounded_traverse,
    build_graph,
    classify_node,
    find_functions,
)
from .call_graph import impact_tree as trace_impact
from .relationships import build_type_facts, filter_relationships
from .config_manager import load_settings
from .diff_engine import EcosystemDiff
from .models import (
    CrossRepoMatch,
    ExtractionSnapshot,
    NotFound,
    SnapshotRef,
    TypeFacts,
    TypeFlowEdge,
    TypeInstance,
)
from .topology import EcosystemGraph, ImpactWeights, OwnershipRules
from .type_matcher import SimilarityWeights

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    def get_snapshot(self, repo: str, ref: str) -> Optional[ExtractionSnapshot]: ...

    def list_snapshots(self, repo: str) -> List[SnapshotRef]: ...

    def list_repos(self) -> List[str]: ...

    def latest(self, repo: str) -> Optional[ExtractionSnapshot]: ...


@dataclass
class CallGraphView:
    repo: str
    ref: str
    graph: CallGraph
    traversal: Traversal


def _close(word: str, candidates: Sequence[str]) -> List[str]:
    return difflib.get_close_matches(word, list(candidates), n=5, cutoff=0.4)


class EcosystemAnalyzer:
    """Runs the matcher, call-graph analyzer, topology builder and differ."""

    def __init__(self, source: SnapshotSource, settings: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.source = source
        self.settings = settings if settings is not None else load_settings()
        scoring = self.settings["scoring"]
        impact = self.settings["impact"]
        self.similarity_weights = SimilarityWeights(
            name=scoring["name_weight"], kind=scoring["kind_weight"], fields=scoring["field_weight"],
        )
        self.impact_weights = ImpactWeights(
            services=impact["service_weight"],
            dependents=impact["dependent_weight"],
            shared_types=impact["shared_type_weight"],
        )
        self.risk_bands = RiskBands(medium_at=impact["medium_risk_at"], high_at=impact["high_risk_at"])
        self.ownership = OwnershipRules(
            explicit=dict(self.settings.get("ownership", {})),
            image_rewrites=dict(self.settings.get("image_rewrites", {})),
        )

    # ------------------------------------------------------------------
    # Snapshot loading
    # ------------------------------------------------------------------

    def snapshots(self, repos: Optional[Sequence[str]] = None, ref: Optional[str] = None) -> Dict[str, Optional[ExtractionSnapshot]]:
        """Load one snapshot per repository; absent ones map to ``None``."""
        result: Dict[str, Optional[ExtractionSnapshot]] = {}
        for repo in repos or self.source.list_repos():
            snapshot = self.source.get_snapshot(repo, ref) if ref else self.source.latest(repo)
            if snapshot is None:
                logger.info("No snapshot for %s%s", repo, f"@{ref}" if ref else "")
            result[repo] = snapshot
        return result

    def resolve_snapshot(self, repo: str, ref: Optional[str] = None) -> Union[ExtractionSnapshot, NotFound]:
        known = self.source.list_repos()
        if repo not in known:
            return NotFound("repository", repo, _close(repo, known) or known[:5])
        snapshot = self.source.get_snapshot(repo, ref) if ref else self.source.latest(repo)
        if snapshot is None:
            refs = [r.ref for r in self.source.list_snapshots(repo)]
            requested = f"{repo}@{ref}" if ref else repo
            return NotFound("snapshot", requested, refs, message=f"No snapshot for '{requested}'.")
        return snapshot

    def _type_facts(self, repo: str, ref: Optional[str]) -> Union[TypeFacts, NotFound]:
        snapshot = self.resolve_snapshot(repo, ref)
        if isinstance(snapshot, NotFound):
            return snapshot
        facts = snapshot.type_facts() or TypeFacts()
        # relationships and modules are always rederived from the definitions
        return build_type_facts(facts.types, facts.calls)

    # ------------------------------------------------------------------
    # Types
    # ------------------------------------------------------------------

    def shared_types(self, repos: Optional[Sequence[str]] = None, ref: Optional[str] = None) -> List[CrossRepoMatch]:
        return type_matcher.match_across_repos(self.snapshots(repos, ref), self.similarity_weights)

    def type_flow(
        self,
        repos: Optional[Sequence[str]] = None,
        ref: Optional[str] = None,
        min_similarity: Optional[int] = None,
    ) -> List[TypeFlowEdge]:
        floor = self.settings["scoring"]["min_similarity"] if min_similarity is None else min_similarity
        return type_matcher.build_type_flow_edges(self.shared_types(repos, ref), floor)

    def query_types(
        self,
        repo: Optional[str] = None,
        name: str = "",
        kind: str = "",
        limit: int = 50,
    ) -> Union[List[TypeInstance], NotFound]:
        if repo:
            facts = self._type_facts(repo, None)
            if isinstance(facts, NotFound):
                return facts
            types_by_repo = {repo: facts.types}
        else:
            types_by_repo = type_matcher.collect_types(self.snapshots())
        return type_matcher.query_types(types_by_repo, name=name, kind=kind, limit=limit)

    def relationships(self, repo: str, focus: str = "", ref: Optional[str] = None) -> Union[TypeFacts, NotFound]:
        facts = self._type_facts(repo, ref)
        if isinstance(facts, NotFound) or not focus:
            return facts
        facts.relationships = filter_relationships(facts.relationships, focus)
        return facts

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def call_graph(
        self,
        repo: str,
        function: Optional[str] = None,
        direction: str = "callees",
        max_depth: Optional[int] = None,
        max_nodes: Optional[int] = None,
        ref: Optional[str] = None,
    ) -> Union[CallGraphView, NotFound]:
        """Traverse the call graph of *repo* from *function* or its entry points."""
        facts = self._type_facts(repo, ref)
        if isinstance(facts, NotFound):
            return facts
        graph = build_graph(facts.calls)
        impact = self.settings["impact"]

        if function:
            seeds = find_functions(graph, function)
            if not seeds:
                return NotFound("function", function, _close(function, graph.nodes))
        else:
            seeds = [
                n for n in graph.nodes
                if classify_node(graph, n, impact["hotspot_degree"]) == "entry"
            ] or graph.nodes

        traversal = bounded_traverse(
            graph,
            seeds,
            direction=direction,
            max_depth=impact["max_depth"] if max_depth is None else max_depth,
            max_nodes=impact["max_nodes"] if max_nodes is None else max_nodes,
        )
        snapshot_ref = ref or self._latest_ref(repo)
        return CallGraphView(repo, snapshot_ref, graph, traversal)

    def impact_tree(self, repo: str, ref: Optional[str] = None) -> Union[List[DependencyImpact], NotFound]:
        facts = self._type_facts(repo, ref)
        if isinstance(facts, NotFound):
            return facts
        impact = self.settings["impact"]
        return trace_impact(
            build_graph(facts.calls),
            max_depth=impact["upstream_depth"],
            max_surfaces=impact["max_surfaces"],
            bands=self.risk_bands,
        )

    def _latest_ref(self, repo: str) -> str:
        refs = self.source.list_snapshots(repo)
        return refs[0].ref if refs else ""

    # ------------------------------------------------------------------
    # Ecosystem
    # ------------------------------------------------------------------

    def ecosystem(
        self,
        repos: Optional[Sequence[str]] = None,
        ref: Optional[str] = None,
        focus_repo: Optional[str] = None,
    ) -> Union[EcosystemGraph, NotFound]:
        snapshots = self.snapshots(repos, ref)
        matches = type_matcher.match_across_repos(snapshots, self.similarity_weights)
        flows = type_matcher.build_type_flow_edges(matches, self.settings["scoring"]["min_similarity"])
        graph = topology.build_ecosystem_graph(
            snapshots,
            flows,
            rules=self.ownership,
            contract_floor=self.settings["scoring"]["contract_floor"],
            weights=self.impact_weights,
        )
        if focus_repo:
            return topology.focus(graph, focus_repo)
        return graph

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    def diff(
        self,
        from_ref: str,
        to_ref: str,
        repo: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> Union[EcosystemDiff, NotFound]:
        known = self.source.list_repos()
        if repo and repo not in known:
            return NotFound("repository", repo, _close(repo, known) or known[:5])
        repos = [repo] if repo else known

        before = {r: self.source.get_snapshot(r, from_ref) for r in repos}
        after = {r: self.source.get_snapshot(r, to_ref) for r in repos}

        for ref, found in ((from_ref, before), (to_ref, after)):
            if not any(s is not None for s in found.values()):
                refs = sorted({s.ref for r in repos for s in self.source.list_snapshots(r)})
                return NotFound("snapshot", ref, _close(ref, refs) or refs[:5], message=f"No snapshot for ref '{ref}'.")

        return diff_engine.diff_ecosystem(before, after, from_ref, to_ref, domain)
