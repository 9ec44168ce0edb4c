"""Rendering helpers shared by every diagram and report.

Identifiers and labels are sanitized by two different functions on purpose:
an identifier must be a bare token, a label only has to survive quoting.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9_]")
_ID_LEADING = re.compile(r"^[0-9_]+")
_WHITESPACE = re.compile(r"\s+")

MAX_LABEL_LENGTH = 100


def sanitize_id(value: str) -> str:
    """Reduce *value* to letters, digits and underscores, never digit-leading."""
    cleaned = _ID_LEADING.sub("", _ID_UNSAFE.sub("_", value))
    return cleaned or "node"


def sanitize_label(value: str, max_length: int = MAX_LABEL_LENGTH) -> str:
    """Make *value* safe inside a double-quoted Mermaid label."""
    cleaned = value.replace('"', "'").replace("<", "").replace(">", "")
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length]


def unique_ids(names: Iterable[str], reserved: Iterable[str] = ()) -> Dict[str, str]:
    """Map each name to a sanitized identifier no other name shares.

    Names that sanitize to the same token get ``_1``, ``_2`` ... suffixes in
    first-seen order. Identifiers in *reserved* are never handed out.
    """
    aliases: Dict[str, str] = {}
    taken = set(reserved)
    for name in names:
        if name in aliases:
            continue
        base = sanitize_id(name)
        candidate, count = base, 0
        while candidate in taken:
            count += 1
            candidate = f"{base}_{count}"
        taken.add(candidate)
        aliases[name] = candidate
    return aliases


def _esc(value: str) -> str:
    return value.replace('"', '\\"')


def export_dot(
    nodes: Dict[str, str],
    edges: Iterable[Dict[str, str]],
    output_file: Optional[Path] = None,
    focus: str = "",
    name: str = "Ecosystem",
) -> str:
    """Render a directed graph as Graphviz DOT.

    Args:
        nodes: Node id mapped to its display label.
        edges: Dicts with ``src``, ``dst`` and ``edge_type`` keys.
        output_file: When given, the DOT text is also written there.
        focus: Restrict output to nodes containing this substring and
            their direct neighbours.
        name: Graph name.

    Returns:
        The DOT document.
    """
    selected = _focused_subgraph(nodes, list(edges), focus)

    lines = [f"digraph {sanitize_id(name)} {{"]
    lines.append("  rankdir=LR;")
    for node_id in selected["nodes"]:
        lines.append(f'  "{_esc(node_id)}" [label="{_esc(nodes[node_id])}"];')
    for edge in selected["edges"]:
        lines.append(
            f'  "{_esc(edge["src"])}" -> "{_esc(edge["dst"])}" [label="{_esc(edge["edge_type"])}"];'
        )
    lines.append("}")

    doc = "\n".join(lines)
    if output_file is not None:
        output_file.write_text(doc, encoding="utf-8")
    return doc


def _focused_subgraph(nodes: Dict[str, str], edges: List[Dict[str, str]], focus: str) -> Dict[str, List]:
    edges = [e for e in edges if e["src"] in nodes and e["dst"] in nodes]
    if not focus:
        return {"nodes": sorted(nodes), "edges": edges}

    focus_ids = {node_id for node_id, label in nodes.items() if focus in node_id or focus in label}
    if not focus_ids:
        return {"nodes": sorted(nodes), "edges": edges}

    edge_subset = [e for e in edges if e["src"] in focus_ids or e["dst"] in focus_ids]
    node_subset = set(focus_ids)
    for e in edge_subset:
        node_subset.add(e["src"])
        node_subset.add(e["dst"])
    return {"nodes": sorted(node_subset), "edges": edge_subset}


def render_text_table(headers: Sequence[str], rows: Sequence[Sequence[object]]) -> str:
    """Format rows as a fixed-width plain-text table."""
    cells = [[str(c) for c in headers]] + [[str(c) for c in row] for row in rows]
    widths = [max(len(row[i]) for row in cells) for i in range(len(headers))]

    def _line(row: List[str]) -> str:
        return "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip()

    out = [_line(cells[0]), _line(["-" * w for w in widths])]
    out.extend(_line(row) for row in cells[1:])
    return "\n".join(out)
