"""Snapshot differ: what was added or removed between two revisions.

Every fact domain reduces to a list of string keys; the diff of two
snapshots is the set difference of those keys in both directions. Nothing
here mutates its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .graph_export import sanitize_label, unique_ids
from .models import SERVICE_TOPOLOGY, TYPE_DEFINITIONS, DomainDiff, ExtractionSnapshot

KUBERNETES = "kubernetes"
TERRAFORM = "terraform"
USER_FLOWS = "user_flows"
DATA_FLOW = "data_flow"

_CATALOG_LIST_KEYS = ("items", "resources", "services", "screens", "types", "entries")


def diff_sets(from_keys: Iterable[str], to_keys: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Return ``(added, removed)`` keeping first-seen order, without duplicates."""
    before = list(dict.fromkeys(from_keys))
    after = list(dict.fromkeys(to_keys))
    before_set, after_set = set(before), set(after)
    return [k for k in after if k not in before_set], [k for k in before if k not in after_set]


def _payload(facts: Any) -> Any:
    if facts is not None and hasattr(facts, "to_dict"):
        return facts.to_dict()
    return facts


def _item_key(item: Any) -> str:
    if isinstance(item, dict):
        for attr in ("name", "id", "key", "path"):
            if attr in item:
                return str(item[attr])
    return str(item)


def _names(items: Optional[Sequence[Any]]) -> List[str]:
    return [_item_key(i) for i in items or []]


# ------------------------------------------------------------------
# Key extraction per domain
# ------------------------------------------------------------------

def _type_definition_keys(payload: Dict[str, Any]) -> List[str]:
    return _names(payload.get("types"))


def _service_topology_keys(payload: Dict[str, Any]) -> List[str]:
    return [f"{s.get('layer', 'unknown')}/{s['name']}" for s in payload.get("services", [])]


def _kubernetes_keys(payload: Any) -> List[str]:
    resources = payload.get("resources", []) if isinstance(payload, dict) else payload
    return [f"{r.get('kind', 'Unknown')}/{r.get('name', '?')}" for r in resources or []]


def _user_flow_keys(payload: Dict[str, Any]) -> List[str]:
    return _names(payload.get("screens"))


def _data_flow_keys(payload: Dict[str, Any]) -> List[str]:
    return _names(payload.get("services"))


def _terraform_keys(payload: Dict[str, Any]) -> List[str]:
    return [str(p) for p in payload.get("providers", [])]


def _catalog_keys(payload: Any) -> List[str]:
    if isinstance(payload, list):
        return _names(payload)
    if isinstance(payload, dict):
        for list_key in _CATALOG_LIST_KEYS:
            value = payload.get(list_key)
            if isinstance(value, list):
                return _names(value)
            if isinstance(value, dict):
                return [str(k) for k in value]
        # {"nips": {"NIP-01": {...}}}: one collection keyed by identifier
        if len(payload) == 1:
            (value,) = payload.values()
            if isinstance(value, dict):
                return [str(k) for k in value]
        return [str(k) for k in payload]
    return []


KEY_EXTRACTORS: Dict[str, Callable[[Any], List[str]]] = {
    TYPE_DEFINITIONS: _type_definition_keys,
    SERVICE_TOPOLOGY: _service_topology_keys,
    KUBERNETES: _kubernetes_keys,
    TERRAFORM: _terraform_keys,
    USER_FLOWS: _user_flow_keys,
    DATA_FLOW: _data_flow_keys,
}


def domain_keys(domain: str, facts: Any) -> List[str]:
    return KEY_EXTRACTORS.get(domain, _catalog_keys)(_payload(facts))


# ------------------------------------------------------------------
# Detail per domain
# ------------------------------------------------------------------

def _set_detail(before: Iterable[str], after: Iterable[str]) -> Dict[str, List[str]]:
    added, removed = diff_sets(before, after)
    return {"added": added, "removed": removed}


def _field_changes(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, List[str]]]:
    old_types = {t["name"]: t for t in before.get("types", [])}
    changes = {}
    for new in after.get("types", []):
        old = old_types.get(new["name"])
        if old is None:
            continue
        fields = _set_detail(_names(old.get("fields")), _names(new.get("fields")))
        if fields["added"] or fields["removed"]:
            changes[new["name"]] = fields
    return changes


def _type_definition_detail(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    def _calls(payload):
        return [f"{c['caller']}->{c['callee']}" for c in payload.get("calls", [])]

    def _relationships(payload):
        return [f"{r['from_type']} -{r['kind']}-> {r['to_type']}" for r in payload.get("relationships", [])]

    return {
        "calls": _set_detail(_calls(before), _calls(after)),
        "relationships": _set_detail(_relationships(before), _relationships(after)),
        "fields": _field_changes(before, after),
    }


def _service_topology_detail(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    def _targets(payload):
        return [c["target"] for c in payload.get("outbound_calls", [])]

    return {"outbound_calls": _set_detail(_targets(before), _targets(after))}


def _resource_count(payload: Dict[str, Any]) -> int:
    resources = payload.get("resources", 0)
    if isinstance(resources, int):
        return resources
    return len(resources)


def _terraform_detail(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    old, new = _resource_count(before), _resource_count(after)
    return {"resources": {"from": old, "to": new, "delta": new - old}}


DETAIL_BUILDERS: Dict[str, Callable[[Any, Any], Dict[str, Any]]] = {
    TYPE_DEFINITIONS: _type_definition_detail,
    SERVICE_TOPOLOGY: _service_topology_detail,
    TERRAFORM: _terraform_detail,
}


def _detail_has_changes(detail: Any) -> bool:
    if isinstance(detail, dict):
        if detail.get("delta"):
            return True
        if detail.get("added") or detail.get("removed"):
            return True
        return any(_detail_has_changes(v) for v in detail.values() if isinstance(v, dict))
    return False


def diff_domain(domain: str, from_facts: Any, to_facts: Any) -> DomainDiff:
    """Compare one fact domain across two snapshots.

    When only one side has the domain at all, the whole domain is reported
    as ``new`` or ``removed`` with its payload in ``detail`` and no key
    lists are computed.
    """
    before, after = _payload(from_facts), _payload(to_facts)
    if before is None and after is None:
        return DomainDiff(domain, "unchanged")
    if before is None:
        return DomainDiff(domain, "new", detail={"facts": after})
    if after is None:
        return DomainDiff(domain, "removed", detail={"facts": before})

    added, removed = diff_sets(domain_keys(domain, before), domain_keys(domain, after))
    builder = DETAIL_BUILDERS.get(domain)
    detail = builder(before, after) if builder and isinstance(before, dict) and isinstance(after, dict) else {}
    changed = bool(added or removed) or _detail_has_changes(detail)
    return DomainDiff(domain, "changed" if changed else "unchanged", added, removed, detail)


def diff_snapshots(
    from_snapshot: Optional[ExtractionSnapshot],
    to_snapshot: Optional[ExtractionSnapshot],
    domain: Optional[str] = None,
) -> List[DomainDiff]:
    before = from_snapshot.facts_by_domain if from_snapshot else {}
    after = to_snapshot.facts_by_domain if to_snapshot else {}
    domains = [domain] if domain else sorted(set(before) | set(after))
    return [diff_domain(d, before.get(d), after.get(d)) for d in domains]


# ------------------------------------------------------------------
# Ecosystem aggregation
# ------------------------------------------------------------------

@dataclass
class RepoDiff:
    repo: str
    from_found: bool
    to_found: bool
    domains: List[DomainDiff] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(d.status != "unchanged" for d in self.domains)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "from_found": self.from_found,
            "to_found": self.to_found,
            "has_changes": self.has_changes,
            "domains": [d.to_dict() for d in self.domains if d.status != "unchanged"],
        }


@dataclass
class EcosystemDiff:
    from_ref: str
    to_ref: str
    repos: List[RepoDiff] = field(default_factory=list)
    # domain -> {"added": [repo/key], "removed": [repo/key]}
    aggregated: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)

    @property
    def repos_with_changes(self) -> List[str]:
        return [r.repo for r in self.repos if r.has_changes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_ref": self.from_ref,
            "to_ref": self.to_ref,
            "summary": {
                "repos_compared": len(self.repos),
                "repos_with_changes": len(self.repos_with_changes),
            },
            "repos": [r.to_dict() for r in self.repos],
            "aggregated": self.aggregated,
        }


def diff_ecosystem(
    from_by_repo: Mapping[str, Optional[ExtractionSnapshot]],
    to_by_repo: Mapping[str, Optional[ExtractionSnapshot]],
    from_ref: str = "",
    to_ref: str = "",
    domain: Optional[str] = None,
) -> EcosystemDiff:
    """Diff every repository and aggregate keys as ``repo/itemKey``.

    Repositories missing either side are listed with their found flags but
    contribute no domain diffs.
    """
    result = EcosystemDiff(from_ref, to_ref)
    for repo in sorted(set(from_by_repo) | set(to_by_repo)):
        before = from_by_repo.get(repo)
        after = to_by_repo.get(repo)
        repo_diff = RepoDiff(repo, before is not None, after is not None)
        if before is not None and after is not None:
            repo_diff.domains = diff_snapshots(before, after, domain)
        result.repos.append(repo_diff)

        for domain_diff in repo_diff.domains:
            bucket = result.aggregated.setdefault(domain_diff.domain, {"added": [], "removed": []})
            bucket["added"].extend(f"{repo}/{k}" for k in domain_diff.added)
            bucket["removed"].extend(f"{repo}/{k}" for k in domain_diff.removed)
    return result


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------

def _preview(keys: List[str], limit: int = 3) -> str:
    more = f" (+{len(keys) - limit})" if len(keys) > limit else ""
    return ", ".join(keys[:limit]) + more


def render_diff_mermaid(diff: EcosystemDiff) -> str:
    lines = ["flowchart LR"]
    title = sanitize_label(f"📊 Changes {diff.from_ref} → {diff.to_ref}")
    lines.append(f'    subgraph Changes["{title}"]')
    names = [f"{d}_{k}" for d in sorted(diff.aggregated) for k in ("added", "removed")]
    ids = unique_ids(names, reserved=["Changes", "no_changes"])
    nodes = 0
    for domain, bucket in sorted(diff.aggregated.items()):
        for kind, glyph, sign in (("added", "✅", "+"), ("removed", "❌", "-")):
            keys = bucket[kind]
            if not keys:
                continue
            label = sanitize_label(f"{glyph} {domain} {sign}{len(keys)}: {_preview(keys)}")
            lines.append(f'        {ids[f"{domain}_{kind}"]}["{label}"]')
            nodes += 1
    if not nodes:
        lines.append('        no_changes["No changes"]')
    lines.append("    end")
    return "\n".join(lines)


def render_diff_text(diff: EcosystemDiff) -> str:
    lines = [f"Diff {diff.from_ref} → {diff.to_ref}: {len(diff.repos_with_changes)}/{len(diff.repos)} repos changed"]
    for repo_diff in diff.repos:
        if not (repo_diff.from_found and repo_diff.to_found):
            missing = diff.from_ref if not repo_diff.from_found else diff.to_ref
            lines.append(f"  {repo_diff.repo}: no snapshot for '{missing}'")
            continue
        if not repo_diff.has_changes:
            continue
        lines.append(f"  {repo_diff.repo}:")
        for domain_diff in repo_diff.domains:
            if domain_diff.status == "unchanged":
                continue
            if domain_diff.status in ("new", "removed"):
                lines.append(f"    {domain_diff.domain}: domain {domain_diff.status}")
                continue
            lines.append(
                f"    {domain_diff.domain}: +{len(domain_diff.added)} -{len(domain_diff.removed)}"
            )
            for key in domain_diff.added:
                lines.append(f"      + {key}")
            for key in domain_diff.removed:
                lines.append(f"      - {key}")
    return "\n".join(lines)
