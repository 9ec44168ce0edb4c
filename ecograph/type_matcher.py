"""Cross-repository type matching.

Types declared under the same normalized name in several repositories are
treated as candidate data contracts. Each candidate group is scored by how
similar its members are, and strong groups become directed type-flow edges
that the topology builder folds in as implicit dependencies.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .graph_export import render_text_table, sanitize_label, unique_ids
from .models import (
    CrossRepoMatch,
    ExtractionSnapshot,
    TypeDefinition,
    TypeFacts,
    TypeFlowEdge,
    TypeInstance,
)
from .relationships import type_importance

logger = logging.getLogger(__name__)

# Two kinds are equivalent when they share at least one class.
KIND_CLASSES: Tuple[frozenset, ...] = (
    frozenset({"struct", "class", "interface"}),
    frozenset({"trait", "interface", "protocol"}),
    frozenset({"enum"}),
    frozenset({"type_alias"}),
)

STRONG_CONTRACT = 80

SnapshotLike = Union[ExtractionSnapshot, TypeFacts, None]


@dataclass(frozen=True)
class SimilarityWeights:
    name: int = 50
    kind: int = 20
    fields: int = 30


DEFAULT_WEIGHTS = SimilarityWeights()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_type_name(name: str) -> str:
    """Lowercase and drop ``_``/``-`` so naming conventions compare equal."""
    return name.replace("_", "").replace("-", "").lower()


def kinds_equivalent(a: str, b: str) -> bool:
    return any(a in group and b in group for group in KIND_CLASSES)


def _field_names(type_def: TypeDefinition) -> set:
    return {normalize_type_name(f.name) for f in type_def.fields}


def similarity(a: TypeDefinition, b: TypeDefinition, weights: SimilarityWeights = DEFAULT_WEIGHTS) -> int:
    """Score how alike two definitions are, from 0 to 100.

    Args:
        a: First definition.
        b: Second definition.
        weights: Points for name match, kind equivalence and full field
            overlap.

    Returns:
        Integer score; symmetric in ``a`` and ``b``.
    """
    score = 0
    if normalize_type_name(a.name) == normalize_type_name(b.name):
        score += weights.name
    if kinds_equivalent(a.kind, b.kind):
        score += weights.kind

    a_fields = _field_names(a)
    b_fields = _field_names(b)
    if a_fields and b_fields:
        overlap = len(a_fields & b_fields) / max(len(a_fields), len(b_fields))
        score += round_half_up(weights.fields * overlap)

    return max(0, min(100, score))


def _types_of(source: SnapshotLike) -> Optional[List[TypeDefinition]]:
    if source is None:
        return None
    facts = source.type_facts() if isinstance(source, ExtractionSnapshot) else source
    if facts is None:
        return None
    return facts.types


def collect_types(snapshots_by_repo: Mapping[str, SnapshotLike]) -> Dict[str, List[TypeDefinition]]:
    """Pull type lists out of snapshots, skipping repositories with no data."""
    types_by_repo: Dict[str, List[TypeDefinition]] = {}
    for repo, source in snapshots_by_repo.items():
        types = _types_of(source)
        if types is None:
            logger.info("No type data for %s; excluded from matching", repo)
            continue
        types_by_repo[repo] = types
    return types_by_repo


def match_across_repos(
    snapshots_by_repo: Mapping[str, SnapshotLike],
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> List[CrossRepoMatch]:
    """Group types by normalized name and score the multi-repo groups.

    Group score is the average similarity over cross-repository pairs only;
    same-repository duplicates never count toward it.
    """
    groups: Dict[str, List[TypeInstance]] = {}
    for repo, types in collect_types(snapshots_by_repo).items():
        for type_def in types:
            groups.setdefault(normalize_type_name(type_def.name), []).append(TypeInstance(repo, type_def))

    matches: List[CrossRepoMatch] = []
    for normalized, instances in groups.items():
        if len({i.repo for i in instances}) < 2:
            continue
        total = 0
        comparisons = 0
        for i, left in enumerate(instances):
            for right in instances[i + 1:]:
                if left.repo == right.repo:
                    continue
                total += similarity(left.type_def, right.type_def, weights)
                comparisons += 1
        score = round_half_up(total / comparisons) if comparisons else 0
        matches.append(CrossRepoMatch(normalized, instances, score))

    matches.sort(key=lambda m: (-m.similarity_score, m.normalized_name))
    return matches


def build_type_flow_edges(matches: Iterable[CrossRepoMatch], min_similarity: int = 50) -> List[TypeFlowEdge]:
    """Emit one edge per cross-repository instance pair of each strong group."""
    edges: List[TypeFlowEdge] = []
    for match in matches:
        if match.similarity_score < min_similarity:
            continue
        for i, left in enumerate(match.instances):
            for right in match.instances[i + 1:]:
                if left.repo == right.repo:
                    continue
                right_fields = _field_names(right.type_def)
                shared = sorted(f for f in _field_names(left.type_def) if f in right_fields)
                edges.append(
                    TypeFlowEdge(
                        from_repo=left.repo,
                        from_type=left.type_def.name,
                        to_repo=right.repo,
                        to_type=right.type_def.name,
                        confidence=match.similarity_score,
                        shared_fields=shared,
                    )
                )
    return edges


def query_types(
    types_by_repo: Mapping[str, List[TypeDefinition]],
    name: str = "",
    kind: str = "",
    limit: int = 50,
) -> List[TypeInstance]:
    """Search definitions by partial normalized name and exact kind.

    Public types with more fields rank first.
    """
    wanted = normalize_type_name(name) if name else ""
    results = []
    for repo, types in types_by_repo.items():
        for type_def in types:
            if kind and type_def.kind != kind:
                continue
            if wanted and wanted not in normalize_type_name(type_def.name):
                continue
            results.append(TypeInstance(repo, type_def))

    results.sort(
        key=lambda i: (
            -((100 if i.type_def.visibility == "public" else 0) + len(i.type_def.fields)),
            -type_importance(i.type_def),
            i.repo,
            i.type_def.name,
        )
    )
    return results[:limit]


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------

def render_type_flow_mermaid(edges: List[TypeFlowEdge], focus_repo: str = "") -> str:
    """Render repositories as nodes and shared types as labelled edges.

    Edges are merged per repository pair; pairs averaging at least
    ``STRONG_CONTRACT`` confidence are drawn thick.
    """
    if focus_repo:
        edges = [e for e in edges if focus_repo in (e.from_repo, e.to_repo)]

    by_pair: Dict[Tuple[str, str], List[TypeFlowEdge]] = {}
    for edge in edges:
        by_pair.setdefault((edge.from_repo, edge.to_repo), []).append(edge)

    repos = sorted({e.from_repo for e in edges} | {e.to_repo for e in edges})
    lines = ["flowchart LR"]
    ids = unique_ids(repos, reserved=["note"])
    for repo in repos:
        lines.append(f'    {ids[repo]}["📦 {sanitize_label(repo)}"]')

    for (src, dst), pair_edges in by_pair.items():
        names = list(dict.fromkeys(e.from_type for e in pair_edges))
        label = ", ".join(names[:3]) + ("..." if len(pair_edges) > 3 else "")
        avg = round_half_up(sum(e.confidence for e in pair_edges) / len(pair_edges))
        arrow = "==>" if avg >= STRONG_CONTRACT else "-->"
        lines.append(f'    {ids[src]} {arrow}|"{sanitize_label(label)}"| {ids[dst]}')

    if not edges:
        lines.append('    note["No shared types found above similarity threshold"]')
    return "\n".join(lines)


def render_shared_types_table(matches: List[CrossRepoMatch], limit: int = 30) -> str:
    rows = [
        (
            m.instances[0].type_def.name,
            m.similarity_score,
            len(m.repos),
            ", ".join(m.repos),
        )
        for m in matches[:limit]
    ]
    if not rows:
        return "No types are shared across repositories."
    return render_text_table(("Type", "Score", "Repos", "Found in"), rows)
