"""Call-graph construction, bounded traversal and blast-radius analysis.

Callee labels are syntactic (``receiver.method``), not symbol-resolved, so
two different functions with the same label share a node.
"""

from __future__ import annotations

import re
from collections import Counter, deque
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .graph_export import sanitize_id, sanitize_label, unique_ids
from .models import CallEdge

DIRECTIONS = ("callers", "callees", "both")
MAX_TRAVERSAL_DEPTH = 5
HOTSPOT_DEGREE = 10


@dataclass
class CallGraph:
    callees: Dict[str, List[str]] = field(default_factory=dict)
    callers: Dict[str, List[str]] = field(default_factory=dict)
    call_counts: Counter = field(default_factory=Counter)
    edge_counts: Counter = field(default_factory=Counter)
    # first call site (file, line) per (caller, callee)
    sites: Dict[Tuple[str, str], Tuple[str, int]] = field(default_factory=dict)
    function_files: Dict[str, str] = field(default_factory=dict)

    @property
    def nodes(self) -> List[str]:
        return sorted(set(self.callees) | set(self.callers))

    def out_degree(self, node: str) -> int:
        return len(self.callees.get(node, []))

    def in_degree(self, node: str) -> int:
        return len(self.callers.get(node, []))


@dataclass
class Traversal:
    seeds: List[str]
    direction: str
    nodes: List[str]
    depth_of: Dict[str, int]
    edges: List[Tuple[str, str]]
    truncated_by: Optional[str] = None

    @property
    def depth_reached(self) -> int:
        return max(self.depth_of.values(), default=0)


def build_graph(call_edges: Iterable[CallEdge]) -> CallGraph:
    """Index call edges in both directions, counting repeated calls."""
    graph = CallGraph()
    for edge in call_edges:
        out = graph.callees.setdefault(edge.caller, [])
        if edge.callee not in out:
            out.append(edge.callee)
        back = graph.callers.setdefault(edge.callee, [])
        if edge.caller not in back:
            back.append(edge.caller)

        graph.call_counts[edge.callee] += 1
        graph.edge_counts[(edge.caller, edge.callee)] += 1
        site = (edge.file, edge.line)
        key = (edge.caller, edge.callee)
        if key not in graph.sites or site < graph.sites[key]:
            graph.sites[key] = site
        if edge.file:
            graph.function_files.setdefault(edge.caller, edge.file)
    return graph


def _neighbours(graph: CallGraph, node: str, direction: str) -> List[str]:
    if direction == "callees":
        return graph.callees.get(node, [])
    if direction == "callers":
        return graph.callers.get(node, [])
    return graph.callees.get(node, []) + graph.callers.get(node, [])


def bounded_traverse(
    graph: CallGraph,
    seeds: Sequence[str],
    direction: str = "callees",
    max_depth: int = 3,
    max_nodes: int = 50,
) -> Traversal:
    """Breadth-first walk from *seeds*, frontier by frontier.

    Stops at ``max_depth`` (capped at ``MAX_TRAVERSAL_DEPTH``) or once
    ``max_nodes`` nodes are admitted, whichever comes first. Visited nodes
    are never expanded twice, which keeps cyclic graphs finite.

    Args:
        graph: Graph produced by :func:`build_graph`.
        seeds: Starting functions; admitted first, in order.
        direction: ``callers``, ``callees`` or ``both``.
        max_depth: Maximum hop count from any seed.
        max_nodes: Maximum number of admitted nodes, seeds included.

    Returns:
        Admitted nodes, their depths, the edges between admitted nodes and
        which bound (if any) cut the walk short.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {', '.join(DIRECTIONS)}, got '{direction}'")
    if max_depth < 0:
        raise ValueError("max_depth must be >= 0")
    if max_nodes < 1:
        raise ValueError("max_nodes must be >= 1")
    max_depth = min(max_depth, MAX_TRAVERSAL_DEPTH)

    order: List[str] = []
    depth_of: Dict[str, int] = {}
    truncated_by: Optional[str] = None

    for seed in dict.fromkeys(seeds):
        if len(order) >= max_nodes:
            truncated_by = "nodes"
            break
        order.append(seed)
        depth_of[seed] = 0

    frontier = list(order)
    depth = 0
    while frontier and depth < max_depth and truncated_by is None:
        next_frontier: List[str] = []
        for node in frontier:
            for neighbour in _neighbours(graph, node, direction):
                if neighbour in depth_of:
                    continue
                if len(order) >= max_nodes:
                    truncated_by = "nodes"
                    break
                order.append(neighbour)
                depth_of[neighbour] = depth + 1
                next_frontier.append(neighbour)
            if truncated_by:
                break
        frontier = next_frontier
        depth += 1

    if truncated_by is None and frontier:
        if any(n not in depth_of for node in frontier for n in _neighbours(graph, node, direction)):
            truncated_by = "depth"

    admitted = set(order)
    edges = [
        (caller, callee)
        for caller in order
        for callee in graph.callees.get(caller, [])
        if callee in admitted
    ]
    return Traversal(
        seeds=[s for s in order if depth_of[s] == 0],
        direction=direction,
        nodes=order,
        depth_of=depth_of,
        edges=edges,
        truncated_by=truncated_by,
    )


def classify_node(graph: CallGraph, node: str, hotspot_degree: int = HOTSPOT_DEGREE) -> str:
    """Return ``entry``, ``hotspot`` or ``plain`` for rendering."""
    callers = graph.in_degree(node)
    callees = graph.out_degree(node)
    if callers == 0 and callees >= 1:
        return "entry"
    if callers + callees > hotspot_degree:
        return "hotspot"
    return "plain"


def find_functions(graph: CallGraph, query: str) -> List[str]:
    """Resolve a user-supplied name to graph nodes.

    Exact label first, then a match on the last dotted segment, then a
    case-insensitive substring.
    """
    nodes = graph.nodes
    if query in graph.callees or query in graph.callers:
        return [query]
    by_tail = [n for n in nodes if n.rsplit(".", 1)[-1] == query]
    if by_tail:
        return by_tail
    lowered = query.lower()
    return [n for n in nodes if lowered in n.lower()]


def render_call_graph_mermaid(
    graph: CallGraph,
    traversal: Traversal,
    hotspot_degree: int = HOTSPOT_DEGREE,
) -> str:
    aliases = unique_ids(traversal.nodes)
    lines = [
        "flowchart TD",
        "    classDef entry fill:#d4edda,stroke:#28a745",
        "    classDef hotspot fill:#f8d7da,stroke:#dc3545",
    ]
    for node in traversal.nodes:
        lines.append(f'    {aliases[node]}["{sanitize_label(node)}"]')
    for caller, callee in traversal.edges:
        count = graph.edge_counts[(caller, callee)]
        label = f'|"{count}x"|' if count > 1 else ""
        lines.append(f"    {aliases[caller]} -->{label} {aliases[callee]}")
    for node in traversal.nodes:
        node_class = classify_node(graph, node, hotspot_degree)
        if node_class != "plain":
            lines.append(f"    class {aliases[node]} {node_class}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Temporal (sequence) view
# ------------------------------------------------------------------

_PLUMBING_PATTERNS = [
    # logging
    re.compile(r"^(console|logger|logging|log|_logger|LOGGER|LOG)\.\w+$"),
    re.compile(r"^print$"),
    # collection and string methods
    re.compile(
        r"\.(append|extend|insert|pop|push|shift|unshift|splice|slice|map|filter|reduce|forEach|"
        r"keys|values|items|entries|get|set|has|add|remove|discard|update|setdefault|copy|clear|"
        r"sort|reverse|join|split|strip|lstrip|rstrip|trim|replace|lower|upper|toLowerCase|"
        r"toUpperCase|startswith|endswith|startsWith|endsWith|includes|indexOf|format|"
        r"toString|substring|concat)$"
    ),
    re.compile(
        r"^(len|range|enumerate|zip|sorted|reversed|isinstance|hasattr|getattr|setattr|"
        r"min|max|sum|any|all|iter|next|list|dict|set|tuple|super)$"
    ),
    # JSON encode/decode
    re.compile(r"^(json|JSON)\.(dumps|loads|dump|load|stringify|parse)$"),
    # promise chaining
    re.compile(r"\.(then|catch|finally)$"),
    re.compile(r"^Promise\.\w+$"),
    # boxed-primitive constructors
    re.compile(r"^(String|Number|Boolean|Object|Array|BigInt|Symbol|str|int|float|bool|bytes)$"),
]


def is_plumbing(callee: str) -> bool:
    return any(p.search(callee) for p in _PLUMBING_PATTERNS)


@dataclass
class TemporalCall:
    caller: str
    callee: str
    file: str
    line: int


def temporal_edges(graph: CallGraph, traversal: Traversal) -> List[TemporalCall]:
    """Admitted edges in approximate execution order, plumbing removed."""
    calls = []
    for caller, callee in traversal.edges:
        if is_plumbing(callee):
            continue
        file, line = graph.sites.get((caller, callee), ("", 0))
        calls.append(TemporalCall(caller, callee, file, line))
    calls.sort(key=lambda c: (c.file, c.line, c.caller, c.callee))
    return calls


def render_sequence_mermaid(graph: CallGraph, traversal: Traversal) -> str:
    calls = temporal_edges(graph, traversal)
    participants = list(dict.fromkeys(n for c in calls for n in (c.caller, c.callee)))
    aliases = unique_ids(participants)
    has_calls = {c.caller for c in calls}

    lines = ["sequenceDiagram"]
    for name in participants:
        lines.append(f"    participant {aliases[name]} as {sanitize_label(name, 60)}")
    for call in calls:
        method = sanitize_label(call.callee.rsplit(".", 1)[-1], 60)
        lines.append(f"    {aliases[call.caller]}->>{aliases[call.callee]}: {method}()")
        if call.callee not in has_calls:
            lines.append(f"    {aliases[call.callee]}-->>{aliases[call.caller]}: return")
    if not calls and traversal.seeds:
        seed = traversal.seeds[0]
        seed_id = sanitize_id(seed)
        lines.append(f"    participant {seed_id} as {sanitize_label(seed, 60)}")
        lines.append(f"    Note over {seed_id}: No business-logic calls in range")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Blast radius
# ------------------------------------------------------------------

EXTERNAL_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("datastore", re.compile(
        r"^\w*(db|Db|DB|database|Database|cache|Cache|redis|Redis|relay|Relay|"
        r"repository|Repository|cursor|prisma|pool)\.\w+$"
    )),
    ("network", re.compile(
        r"(^|\.)(fetch|urlopen)$"
        r"|^(requests|httpx|aiohttp|axios|urllib|urllib\.request|http)\.\w+$"
        r"|(^|\.)(fetch|request)[A-Z_]\w*$"
    )),
    ("facade", re.compile(r"^\w*(client|Client|service|Service|api|Api|API)\.\w+$")),
]

UI_SEGMENT = re.compile(r"(^|/)(pages|screens|views|routes)/")
UI_STEM = re.compile(r"(Page|Screen|View)$|_(page|screen|view)$")

RISK_GLYPHS = {"high": "🔴", "medium": "🟡", "low": "🟢"}


@dataclass(frozen=True)
class RiskBands:
    """Surface counts at which risk becomes medium and high."""

    medium_at: int = 1
    high_at: int = 3


DEFAULT_BANDS = RiskBands()


@dataclass
class AffectedSurface:
    function: str
    file: str
    chain: List[str]


@dataclass
class DependencyImpact:
    dependency: str
    category: str
    affected_surfaces: List[AffectedSurface] = field(default_factory=list)
    upstream_callers: int = 0
    risk: str = "low"
    truncated: bool = False


def external_dependency_category(callee: str) -> Optional[str]:
    for category, pattern in EXTERNAL_PATTERNS:
        if pattern.search(callee):
            return category
    return None


def is_ui_surface(path: str) -> bool:
    if not path:
        return False
    normalized = path.replace("\\", "/")
    if UI_SEGMENT.search(normalized):
        return True
    return bool(UI_STEM.search(PurePosixPath(normalized).stem))


def risk_band(surface_count: int, bands: RiskBands = DEFAULT_BANDS) -> str:
    if surface_count < bands.medium_at:
        return "low"
    if surface_count < bands.high_at:
        return "medium"
    return "high"


def _chain(parent: Dict[str, Optional[str]], node: str) -> List[str]:
    chain = [node]
    while parent.get(chain[-1]) is not None:
        chain.append(parent[chain[-1]])
    return chain


def _upstream(
    graph: CallGraph,
    dependency: str,
    category: str,
    max_depth: int,
    max_surfaces: int,
    bands: RiskBands,
) -> DependencyImpact:
    parent: Dict[str, Optional[str]] = {dependency: None}
    queue = deque([(dependency, 0)])
    impact = DependencyImpact(dependency=dependency, category=category)
    seen_files = set()

    while queue:
        node, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for caller in graph.callers.get(node, []):
            if caller in parent:
                continue
            parent[caller] = node
            impact.upstream_callers += 1
            file = graph.function_files.get(caller, "")
            if is_ui_surface(file) and file not in seen_files:
                seen_files.add(file)
                impact.affected_surfaces.append(AffectedSurface(caller, file, _chain(parent, caller)))
                if len(impact.affected_surfaces) >= max_surfaces:
                    impact.truncated = True
                    queue.clear()
                    break
            queue.append((caller, depth + 1))

    impact.risk = risk_band(len(impact.affected_surfaces), bands)
    return impact


def impact_tree(
    graph: CallGraph,
    max_depth: int = 6,
    max_surfaces: int = 10,
    bands: RiskBands = DEFAULT_BANDS,
) -> List[DependencyImpact]:
    """Trace every external dependency upward to the UI surfaces it reaches.

    Returns one entry per flagged callee, most widely used first.
    """
    results = []
    for callee in graph.callers:
        category = external_dependency_category(callee)
        if category is None:
            continue
        results.append(_upstream(graph, callee, category, max_depth, max_surfaces, bands))
    results.sort(key=lambda r: (-r.upstream_callers, r.dependency))
    return results


def render_impact_tree(results: List[DependencyImpact]) -> str:
    if not results:
        return "No external dependencies detected."
    lines = []
    for result in results:
        glyph = RISK_GLYPHS[result.risk]
        lines.append(
            f"{glyph} {result.dependency} [{result.category}] "
            f"risk={result.risk} upstream={result.upstream_callers} "
            f"surfaces={len(result.affected_surfaces)}"
        )
        for i, surface in enumerate(result.affected_surfaces):
            branch = "└─" if i == len(result.affected_surfaces) - 1 else "├─"
            lines.append(f"   {branch} {surface.file}")
            lines.append(f"      {' → '.join(surface.chain)}")
        if result.truncated:
            lines.append("   … surface limit reached")
    return "\n".join(lines)
