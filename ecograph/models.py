"""Canonical data models shared by extraction, analysis, and rendering layers.

Source records (types, call edges, services) are produced by the front ends
and persisted inside :class:`ExtractionSnapshot`. Everything below the
``Derived views`` banner is recomputed on demand and never persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

TYPE_DEFINITIONS = "type_definitions"
SERVICE_TOPOLOGY = "service_topology"

TYPE_KINDS = ("struct", "class", "interface", "enum", "trait", "type_alias", "union", "protocol")
RELATIONSHIP_KINDS = ("extends", "implements", "contains", "collection")
SERVICE_LAYERS = ("edge", "backend", "internal")
REF_TYPES = ("branch", "tag")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_choice(value: str, choices: Tuple[str, ...], what: str) -> None:
    if value not in choices:
        raise ValueError(f"Unknown {what} '{value}'. Expected one of: {', '.join(choices)}")


# ===================================================================
# Type definitions
# ===================================================================

@dataclass
class TypeRef:
    name: str
    raw: str = ""
    optional: bool = False
    is_collection: bool = False
    generics: List["TypeRef"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeRef":
        return cls(
            name=data["name"],
            raw=data.get("raw", data["name"]),
            optional=bool(data.get("optional", False)),
            is_collection=bool(data.get("is_collection", False)),
            generics=[cls.from_dict(g) for g in data.get("generics", [])],
        )


@dataclass
class FieldDefinition:
    name: str
    type_ref: TypeRef
    optional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        type_ref = data.get("type_ref") or {"name": "unknown"}
        return cls(
            name=data["name"],
            type_ref=TypeRef.from_dict(type_ref),
            optional=bool(data.get("optional", False)),
        )


@dataclass
class VariantDefinition:
    name: str
    value: Optional[Union[str, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariantDefinition":
        return cls(name=data["name"], value=data.get("value"))


@dataclass
class TypeDefinition:
    """A data structure declared somewhere in a repository.

    ``key`` identifies the definition within one snapshot; two definitions
    with the same name may coexist in different files.
    """

    name: str
    kind: str
    file: str
    line: int
    language: str = "unknown"
    visibility: str = "public"
    fields: List[FieldDefinition] = field(default_factory=list)
    variants: List[VariantDefinition] = field(default_factory=list)
    extends: List[TypeRef] = field(default_factory=list)
    implements: List[TypeRef] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    doc: str = ""

    def __post_init__(self) -> None:
        _check_choice(self.kind, TYPE_KINDS, "type kind")

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.name, self.file, self.line)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeDefinition":
        return cls(
            name=data["name"],
            kind=data["kind"],
            file=data.get("file", ""),
            line=int(data.get("line", 0)),
            language=data.get("language", "unknown"),
            visibility=data.get("visibility", "public"),
            fields=[FieldDefinition.from_dict(f) for f in data.get("fields", [])],
            variants=[VariantDefinition.from_dict(v) for v in data.get("variants", [])],
            extends=[TypeRef.from_dict(r) for r in data.get("extends", [])],
            implements=[TypeRef.from_dict(r) for r in data.get("implements", [])],
            tags=list(data.get("tags", [])),
            doc=data.get("doc", ""),
        )


@dataclass
class TypeRelationship:
    kind: str
    from_type: str
    to_type: str
    file: str = ""
    via_field: Optional[str] = None

    def __post_init__(self) -> None:
        _check_choice(self.kind, RELATIONSHIP_KINDS, "relationship kind")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeRelationship":
        return cls(
            kind=data["kind"],
            from_type=data["from_type"],
            to_type=data["to_type"],
            file=data.get("file", ""),
            via_field=data.get("via_field"),
        )


@dataclass
class TypeModule:
    """Types that share a directory, with relationships split by boundary."""

    path: str
    types: List[str] = field(default_factory=list)
    internal_relationships: List[TypeRelationship] = field(default_factory=list)
    external_relationships: List[TypeRelationship] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeModule":
        return cls(
            path=data["path"],
            types=list(data.get("types", [])),
            internal_relationships=[
                TypeRelationship.from_dict(r) for r in data.get("internal_relationships", [])
            ],
            external_relationships=[
                TypeRelationship.from_dict(r) for r in data.get("external_relationships", [])
            ],
        )


# ===================================================================
# Calls and services
# ===================================================================

@dataclass
class CallEdge:
    caller: str
    callee: str
    file: str = ""
    line: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallEdge":
        return cls(
            caller=data["caller"],
            callee=data["callee"],
            file=data.get("file", ""),
            line=int(data.get("line", 0)),
        )


@dataclass
class ServiceInfo:
    name: str
    layer: str
    owner_repo: str = ""
    route_patterns: List[str] = field(default_factory=list)
    container_image: Optional[str] = None

    def __post_init__(self) -> None:
        _check_choice(self.layer, SERVICE_LAYERS, "service layer")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceInfo":
        return cls(
            name=data["name"],
            layer=data["layer"],
            owner_repo=data.get("owner_repo", ""),
            route_patterns=list(data.get("route_patterns", [])),
            container_image=data.get("container_image"),
        )


@dataclass
class OutboundCall:
    """A request a repository makes to something it does not own."""

    target: str
    file: str = ""
    line: int = 0
    caller: Optional[str] = None
    method: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutboundCall":
        return cls(
            target=data["target"],
            file=data.get("file", ""),
            line=int(data.get("line", 0)),
            caller=data.get("caller"),
            method=data.get("method"),
        )


# ===================================================================
# Fact domains and snapshots
# ===================================================================

@dataclass
class TypeFacts:
    types: List[TypeDefinition] = field(default_factory=list)
    relationships: List[TypeRelationship] = field(default_factory=list)
    modules: List[TypeModule] = field(default_factory=list)
    calls: List[CallEdge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": [t.to_dict() for t in self.types],
            "relationships": [r.to_dict() for r in self.relationships],
            "modules": [m.to_dict() for m in self.modules],
            "calls": [c.to_dict() for c in self.calls],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeFacts":
        return cls(
            types=[TypeDefinition.from_dict(t) for t in data.get("types", [])],
            relationships=[TypeRelationship.from_dict(r) for r in data.get("relationships", [])],
            modules=[TypeModule.from_dict(m) for m in data.get("modules", [])],
            calls=[CallEdge.from_dict(c) for c in data.get("calls", [])],
        )


@dataclass
class TopologyFacts:
    services: List[ServiceInfo] = field(default_factory=list)
    outbound_calls: List[OutboundCall] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "services": [s.to_dict() for s in self.services],
            "outbound_calls": [c.to_dict() for c in self.outbound_calls],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopologyFacts":
        return cls(
            services=[ServiceInfo.from_dict(s) for s in data.get("services", [])],
            outbound_calls=[OutboundCall.from_dict(c) for c in data.get("outbound_calls", [])],
        )


_DOMAIN_PARSERS = {
    TYPE_DEFINITIONS: TypeFacts.from_dict,
    SERVICE_TOPOLOGY: TopologyFacts.from_dict,
}


@dataclass(frozen=True)
class ExtractionSnapshot:
    """Immutable facts captured for one (repo, ref).

    ``facts_by_domain`` holds plain JSON-compatible payloads keyed by domain
    name. Typed views are parsed lazily by :meth:`type_facts` and
    :meth:`topology_facts`.
    """

    repo: str
    ref: str
    captured_at: datetime
    facts_by_domain: Dict[str, Any] = field(default_factory=dict)
    ref_type: str = "branch"
    sha: Optional[str] = None

    def __post_init__(self) -> None:
        _check_choice(self.ref_type, REF_TYPES, "ref type")

    @property
    def domains(self) -> List[str]:
        return sorted(self.facts_by_domain)

    def domain(self, name: str) -> Any:
        payload = self.facts_by_domain.get(name)
        if payload is None:
            return None
        parser = _DOMAIN_PARSERS.get(name)
        if parser is None or not isinstance(payload, dict):
            return payload
        return parser(payload)

    def type_facts(self) -> Optional[TypeFacts]:
        return self.domain(TYPE_DEFINITIONS)

    def topology_facts(self) -> Optional[TopologyFacts]:
        return self.domain(SERVICE_TOPOLOGY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "ref": self.ref,
            "ref_type": self.ref_type,
            "sha": self.sha,
            "captured_at": self.captured_at.isoformat(),
            "facts_by_domain": {
                name: payload.to_dict() if hasattr(payload, "to_dict") else payload
                for name, payload in self.facts_by_domain.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractionSnapshot":
        return cls(
            repo=data["repo"],
            ref=data["ref"],
            captured_at=parse_timestamp(data["captured_at"]),
            facts_by_domain=dict(data.get("facts_by_domain", {})),
            ref_type=data.get("ref_type", "branch"),
            sha=data.get("sha"),
        )


@dataclass
class SnapshotRef:
    ref: str
    ref_type: str
    captured_at: datetime
    sha: Optional[str] = None


# ===================================================================
# Derived views
# ===================================================================

@dataclass
class TypeInstance:
    repo: str
    type_def: TypeDefinition


@dataclass
class CrossRepoMatch:
    normalized_name: str
    instances: List[TypeInstance]
    similarity_score: int

    @property
    def repos(self) -> List[str]:
        return sorted({i.repo for i in self.instances})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalized_name": self.normalized_name,
            "similarity_score": self.similarity_score,
            "repos": self.repos,
            "instances": [
                {
                    "repo": i.repo,
                    "name": i.type_def.name,
                    "kind": i.type_def.kind,
                    "file": i.type_def.file,
                    "line": i.type_def.line,
                    "fields": [f.name for f in i.type_def.fields],
                }
                for i in self.instances
            ],
        }


@dataclass
class TypeFlowEdge:
    from_repo: str
    from_type: str
    to_repo: str
    to_type: str
    confidence: int
    shared_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DependencyEdge:
    """Directed repository dependency; ``kind`` is ``call`` or ``type_contract``."""

    source: str
    target: str
    kind: str
    evidence: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RepositoryImpact:
    repo: str
    provided_services: int = 0
    depended_on_by: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    shared_type_names: List[str] = field(default_factory=list)
    impact_score: int = 0
    has_data: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DomainDiff:
    """Added and removed keys for one fact domain between two snapshots.

    ``status`` is ``changed``, ``unchanged``, ``new`` (only the newer side
    has the domain) or ``removed`` (only the older side has it).
    """

    domain: str
    status: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed and self.status == "unchanged"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotFound:
    """Structured miss returned instead of raising for unknown inputs."""

    kind: str
    requested: str
    alternatives: List[str] = field(default_factory=list)
    message: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"No {self.kind} named '{self.requested}'."

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
