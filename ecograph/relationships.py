"""Derived views over one repository's type definitions.

Relationships and modules are always recomputed from the definitions so
they cannot drift from the facts they summarize.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Dict, Iterable, List, Optional

from .graph_export import sanitize_id, sanitize_label, unique_ids
from .models import CallEdge, TypeDefinition, TypeFacts, TypeModule, TypeRelationship

_WRAPPER_PATTERNS = [re.compile(p) for p in (r"^Option", r"^Result", r"^Vec", r"^Box", r"Error$")]


def derive_relationships(types: List[TypeDefinition]) -> List[TypeRelationship]:
    """Build inheritance and field-reference edges between known types.

    Field references only count when the referenced type is declared in the
    same set; generic arguments count too, as ``collection`` when the field
    itself is a collection.
    """
    known = {t.name for t in types}
    relationships: List[TypeRelationship] = []

    for type_def in types:
        for parent in type_def.extends:
            relationships.append(
                TypeRelationship("extends", type_def.name, parent.name, file=type_def.file)
            )
        for iface in type_def.implements:
            relationships.append(
                TypeRelationship("implements", type_def.name, iface.name, file=type_def.file)
            )
        for fld in type_def.fields:
            ref = fld.type_ref
            kind = "collection" if ref.is_collection else "contains"
            if ref.name in known:
                relationships.append(
                    TypeRelationship(kind, type_def.name, ref.name, file=type_def.file, via_field=fld.name)
                )
            for generic in ref.generics:
                if generic.name in known and generic.name != ref.name:
                    relationships.append(
                        TypeRelationship(kind, type_def.name, generic.name, file=type_def.file, via_field=fld.name)
                    )
    return relationships


def group_modules(types: List[TypeDefinition], relationships: List[TypeRelationship]) -> List[TypeModule]:
    """Group types by directory and split relationships at module boundaries."""
    by_dir: Dict[str, List[TypeDefinition]] = {}
    for type_def in types:
        directory = "/".join(type_def.file.split("/")[:-1]) or "/"
        by_dir.setdefault(directory, []).append(type_def)

    modules: List[TypeModule] = []
    for path, module_types in by_dir.items():
        names = {t.name for t in module_types}
        module = TypeModule(path=path, types=[t.name for t in module_types])
        for rel in relationships:
            if rel.from_type not in names:
                continue
            if rel.to_type in names:
                module.internal_relationships.append(rel)
            else:
                module.external_relationships.append(rel)
        modules.append(module)

    return sorted(modules, key=lambda m: m.path)


def build_type_facts(types: List[TypeDefinition], calls: Optional[List[CallEdge]] = None) -> TypeFacts:
    """Assemble the ``type_definitions`` domain payload for a snapshot."""
    relationships = derive_relationships(types)
    return TypeFacts(
        types=list(types),
        relationships=relationships,
        modules=group_modules(types, relationships),
        calls=list(calls or []),
    )


def summarize(facts: TypeFacts) -> Dict[str, object]:
    return {
        "by_kind": dict(Counter(t.kind for t in facts.types)),
        "by_language": dict(Counter(t.language for t in facts.types)),
        "by_module": {m.path: len(m.types) for m in facts.modules},
        "total_types": len(facts.types),
        "total_relationships": len(facts.relationships),
        "total_calls": len(facts.calls),
    }


def type_importance(type_def: TypeDefinition) -> int:
    """Heuristic weight used to keep the most telling types in diagrams."""
    score = 0
    if type_def.visibility == "public":
        score += 2
    score += len(type_def.fields)
    if type_def.doc:
        score += 1
    if type_def.kind in ("trait", "interface", "protocol"):
        score += 3
    if type_def.extends:
        score += 2
    if type_def.implements:
        score += 2
    return score


def is_domain_entity(type_def: TypeDefinition) -> bool:
    """True for multi-field records that are not wrappers or errors."""
    if type_def.kind in ("enum", "type_alias"):
        return False
    if len(type_def.fields) < 2:
        return False
    return not any(p.search(type_def.name) for p in _WRAPPER_PATTERNS)


def filter_relationships(relationships: Iterable[TypeRelationship], focus: str = "") -> List[TypeRelationship]:
    """Keep relationships touching *focus* (case and separator insensitive)."""
    from .type_matcher import normalize_type_name

    rels = list(relationships)
    if not focus:
        return rels
    wanted = normalize_type_name(focus)
    return [
        r for r in rels
        if wanted in normalize_type_name(r.from_type) or wanted in normalize_type_name(r.to_type)
    ]


_ARROWS = {
    "extends": "<|--",
    "implements": "<|..",
    "contains": "*--",
    "collection": "o--",
}


def render_class_diagram(
    facts: TypeFacts,
    focus: str = "",
    max_types: int = 40,
    entities_only: bool = False,
) -> str:
    """Render types and relationships as a Mermaid ``classDiagram``.

    With *entities_only* the diagram keeps domain entities and drops enums,
    aliases, wrappers and single-field records.
    """
    relationships = filter_relationships(facts.relationships, focus)
    involved = {r.from_type for r in relationships} | {r.to_type for r in relationships}

    types = [t for t in facts.types if not focus or t.name in involved]
    if entities_only:
        types = [t for t in types if is_domain_entity(t)]
    types = sorted(types, key=type_importance, reverse=True)[:max_types]
    shown = {t.name for t in types}
    ids = unique_ids(t.name for t in types)

    lines = ["classDiagram"]
    for type_def in types:
        cid = ids[type_def.name]
        lines.append(f"    class {cid} {{")
        if type_def.kind in ("interface", "trait", "protocol", "enum"):
            lines.append(f"        <<{type_def.kind}>>")
        for fld in type_def.fields[:8]:
            lines.append(f"        {sanitize_label(fld.type_ref.name, 40)} {sanitize_id(fld.name)}")
        lines.append("    }")

    for rel in relationships:
        if rel.from_type not in shown or rel.to_type not in shown:
            continue
        arrow = _ARROWS[rel.kind]
        label = f" : {sanitize_label(rel.via_field, 40)}" if rel.via_field else ""
        lines.append(f"    {ids[rel.to_type]} {arrow} {ids[rel.from_type]}{label}")

    return "\n".join(lines)
