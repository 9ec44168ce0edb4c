"""Front ends that turn raw files into canonical records.

Front ends are plain functions registered with an applicability predicate;
:func:`extract_snapshot` walks a working tree, runs every front end that
applies to each file, and isolates failures per file.
"""

from __future__ import annotations

import ast
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from .config import SERVICE_INVENTORY_FILE, SKIP_DIRS, SUPPORTED_EXTENSIONS
from .models import (
    SERVICE_TOPOLOGY,
    TYPE_DEFINITIONS,
    CallEdge,
    ExtractionSnapshot,
    FieldDefinition,
    OutboundCall,
    ServiceInfo,
    TopologyFacts,
    TypeDefinition,
    TypeRef,
    VariantDefinition,
)
from .relationships import build_type_facts

logger = logging.getLogger(__name__)

KUBERNETES = "kubernetes"


@dataclass
class FileFacts:
    types: List[TypeDefinition] = field(default_factory=list)
    calls: List[CallEdge] = field(default_factory=list)
    services: List[ServiceInfo] = field(default_factory=list)
    outbound_calls: List[OutboundCall] = field(default_factory=list)
    resources: List[Dict[str, str]] = field(default_factory=list)

    def merge(self, other: "FileFacts") -> None:
        self.types.extend(other.types)
        self.calls.extend(other.calls)
        self.services.extend(other.services)
        self.outbound_calls.extend(other.outbound_calls)
        self.resources.extend(other.resources)


@dataclass
class FrontEnd:
    name: str
    applies: Callable[[str], bool]
    parse: Callable[[str, str], FileFacts]


FRONT_ENDS: List[FrontEnd] = []


def register(name: str, applies: Callable[[str], bool]):
    """Decorator adding a ``parse(content, path)`` function to the registry."""

    def decorator(func: Callable[[str, str], FileFacts]) -> Callable[[str, str], FileFacts]:
        FRONT_ENDS.append(FrontEnd(name, applies, func))
        return func

    return decorator


def front_ends_for(path: str) -> List[FrontEnd]:
    return [fe for fe in FRONT_ENDS if fe.applies(path)]


# ===================================================================
# Python
# ===================================================================

ENUM_BASES = {"Enum", "IntEnum", "StrEnum", "Flag", "IntFlag"}
PROTOCOL_BASES = {"Protocol"}
INTERFACE_BASES = {"ABC", "ABCMeta"}
STRUCT_BASES = {"BaseModel", "TypedDict", "NamedTuple", "Struct"}
STRUCT_DECORATORS = {"dataclass", "attrs", "define", "frozen"}
MARKER_BASES = ENUM_BASES | PROTOCOL_BASES | INTERFACE_BASES | STRUCT_BASES | {"object", "Generic"}

COLLECTION_TYPES = {
    "list", "List", "set", "Set", "frozenset", "FrozenSet", "tuple", "Tuple",
    "Sequence", "Iterable", "Iterator", "Collection", "dict", "Dict", "Mapping",
    "MutableMapping", "deque", "Deque",
}
HTTP_CLIENTS = {"requests", "httpx", "session", "client", "http", "aiohttp"}
HTTP_VERBS = {"get", "post", "put", "patch", "delete", "head", "request", "fetch", "urlopen"}


def _dotted_name(expr: ast.AST) -> Optional[str]:
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        parts: List[str] = []
        current: ast.AST = expr
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        if isinstance(current, ast.Name):
            parts.append(current.id)
        elif isinstance(current, ast.Call):
            inner = _dotted_name(current.func)
            if inner:
                parts.append(inner)
        return ".".join(reversed(parts)) if parts else None
    if isinstance(expr, ast.Call):
        return _dotted_name(expr.func)
    return None


def _short(name: Optional[str]) -> str:
    return (name or "").rsplit(".", 1)[-1]


def type_ref_from_annotation(node: Optional[ast.AST]) -> TypeRef:
    """Convert an annotation expression into a :class:`TypeRef`."""
    if node is None:
        return TypeRef(name="Any", raw="")
    raw = ast.unparse(node)

    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        try:
            parsed = ast.parse(node.value, mode="eval").body
        except SyntaxError:
            return TypeRef(name=node.value, raw=node.value)
        return type_ref_from_annotation(parsed)

    # X | None
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        members = [m for m in (node.left, node.right) if not _is_none(m)]
        if len(members) == 1:
            ref = type_ref_from_annotation(members[0])
            ref.optional = True
            ref.raw = raw
            return ref
        return TypeRef(name="Union", raw=raw, generics=[type_ref_from_annotation(m) for m in members])

    if isinstance(node, ast.Subscript):
        base = _short(_dotted_name(node.value))
        args = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
        generics = [type_ref_from_annotation(a) for a in args if not _is_none(a)]
        if base == "Optional" and generics:
            ref = generics[0]
            ref.optional = True
            ref.raw = raw
            return ref
        if base == "Union":
            optional = any(_is_none(a) for a in args)
            if len(generics) == 1:
                ref = generics[0]
                ref.optional = optional
                ref.raw = raw
                return ref
            return TypeRef(name="Union", raw=raw, optional=optional, generics=generics)
        if base in COLLECTION_TYPES:
            # element type is the last argument (value type for mappings)
            element = generics[-1].name if generics else "Any"
            return TypeRef(name=element, raw=raw, is_collection=True, generics=generics)
        return TypeRef(name=base or raw, raw=raw, generics=generics)

    name = _short(_dotted_name(node)) or raw
    return TypeRef(name=name, raw=raw)


def _is_none(node: ast.AST) -> bool:
    return isinstance(node, ast.Constant) and node.value is None


def _class_kind(node: ast.ClassDef, base_names: List[str], decorators: List[str]) -> str:
    bases = set(base_names)
    if bases & ENUM_BASES:
        return "enum"
    if bases & PROTOCOL_BASES:
        return "protocol"
    if bases & INTERFACE_BASES or any(
        isinstance(k.value, ast.Name) and k.value.id == "ABCMeta" for k in node.keywords
    ):
        return "interface"
    if bases & STRUCT_BASES or set(decorators) & STRUCT_DECORATORS:
        return "struct"
    return "class"


def _literal(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (str, int)) and not isinstance(node.value, bool):
        return node.value
    return None


def _class_fields(node: ast.ClassDef) -> List[FieldDefinition]:
    fields: List[FieldDefinition] = []
    seen = set()
    for stmt in node.body:
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            ref = type_ref_from_annotation(stmt.annotation)
            if "ClassVar" in ref.raw:
                continue
            fields.append(FieldDefinition(stmt.target.id, ref, optional=ref.optional))
            seen.add(stmt.target.id)

    for stmt in node.body:
        if isinstance(stmt, ast.FunctionDef) and stmt.name == "__init__":
            for sub in ast.walk(stmt):
                target = None
                annotation = None
                if isinstance(sub, ast.AnnAssign):
                    target, annotation = sub.target, sub.annotation
                elif isinstance(sub, ast.Assign) and len(sub.targets) == 1:
                    target = sub.targets[0]
                if (
                    isinstance(target, ast.Attribute)
                    and isinstance(target.value, ast.Name)
                    and target.value.id == "self"
                    and target.attr not in seen
                ):
                    fields.append(FieldDefinition(target.attr, type_ref_from_annotation(annotation)))
                    seen.add(target.attr)
    return fields


def _enum_variants(node: ast.ClassDef) -> List[VariantDefinition]:
    variants = []
    for stmt in node.body:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name) and not target.id.startswith("_"):
                    variants.append(VariantDefinition(target.id, _literal(stmt.value)))
    return variants


class _CallCollector(ast.NodeVisitor):
    """Collect calls made directly by one function, not by nested definitions."""

    def __init__(self) -> None:
        self.calls: List[ast.Call] = []

    def visit_Call(self, node: ast.Call) -> None:
        self.calls.append(node)
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        return

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        return

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        return

    def visit_Lambda(self, node: ast.Lambda) -> None:
        return


def _url_literal(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        value = node.value
    elif isinstance(node, ast.JoinedStr):
        parts = []
        for piece in node.values:
            if isinstance(piece, ast.Constant):
                parts.append(str(piece.value))
            else:
                parts.append("*")
        value = "".join(parts)
    else:
        return None
    if value.startswith(("http://", "https://", "/")):
        return value
    return None


def _outbound_target(callee: str, call: ast.Call) -> Optional[str]:
    parts = callee.split(".")
    verb = parts[-1]
    if verb not in HTTP_VERBS:
        return None
    if len(parts) == 1:
        if verb not in ("fetch", "urlopen"):
            return None
    else:
        receiver = parts[-2].lower().lstrip("_")
        if receiver not in HTTP_CLIENTS and not receiver.endswith(("client", "session")):
            return None
    args = list(call.args)
    if verb == "request" and len(args) >= 2:
        args = args[1:]
    for keyword in call.keywords:
        if keyword.arg == "url":
            args.insert(0, keyword.value)
    return _url_literal(args[0]) if args else None


class _PythonVisitor(ast.NodeVisitor):
    def __init__(self, path: str) -> None:
        self.path = path
        self.scope: List[str] = []
        self.facts = FileFacts()

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        base_names = [_short(_dotted_name(b)) for b in node.bases]
        decorators = [_short(_dotted_name(d)) for d in node.decorator_list]
        kind = _class_kind(node, base_names, decorators)
        doc = ast.get_docstring(node) or ""

        self.facts.types.append(TypeDefinition(
            name=node.name,
            kind=kind,
            file=self.path,
            line=node.lineno,
            language="python",
            visibility="private" if node.name.startswith("_") else "public",
            fields=[] if kind == "enum" else _class_fields(node),
            variants=_enum_variants(node) if kind == "enum" else [],
            extends=[TypeRef(b, b) for b in base_names if b and b not in MARKER_BASES],
            tags=[d for d in decorators if d],
            doc=doc.splitlines()[0] if doc else "",
        ))

        self.scope.append(node.name)
        self.generic_visit(node)
        self.scope.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node)

    def _visit_function(self, node: Union[ast.FunctionDef, ast.AsyncFunctionDef]) -> None:
        caller = ".".join(self.scope + [node.name])
        collector = _CallCollector()
        for stmt in node.body:
            collector.visit(stmt)

        for call in collector.calls:
            callee = _dotted_name(call.func)
            if not callee:
                continue
            self.facts.calls.append(CallEdge(caller, callee, self.path, call.lineno))
            target = _outbound_target(callee, call)
            if target:
                verb = _short(callee)
                method = verb.upper() if verb in ("get", "post", "put", "patch", "delete", "head") else None
                self.facts.outbound_calls.append(
                    OutboundCall(target, self.path, call.lineno, caller=caller, method=method)
                )

        self.scope.append(node.name)
        self.generic_visit(node)
        self.scope.pop()

    def visit_Assign(self, node: ast.Assign) -> None:
        if self.scope or len(node.targets) != 1 or not isinstance(node.targets[0], ast.Name):
            return
        value = node.value
        if isinstance(value, ast.Subscript) and _short(_dotted_name(value.value)) == "Union":
            name = node.targets[0].id
            self.facts.types.append(TypeDefinition(
                name=name, kind="union", file=self.path, line=node.lineno, language="python",
                visibility="private" if name.startswith("_") else "public",
            ))

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if self.scope or not isinstance(node.target, ast.Name):
            return
        if _short(_dotted_name(node.annotation)) == "TypeAlias":
            name = node.target.id
            self.facts.types.append(TypeDefinition(
                name=name, kind="type_alias", file=self.path, line=node.lineno, language="python",
                visibility="private" if name.startswith("_") else "public",
            ))


@register("python", lambda path: path.endswith(".py"))
def parse_python(content: str, path: str) -> FileFacts:
    """Extract classes, module-level aliases, call edges and literal HTTP calls."""
    tree = ast.parse(content, filename=path)
    visitor = _PythonVisitor(path)
    visitor.visit(tree)
    return visitor.facts


# ===================================================================
# Kubernetes manifests
# ===================================================================

WORKLOAD_KINDS = {"Deployment", "StatefulSet", "DaemonSet", "CronJob", "Job"}


def _is_manifest(path: str) -> bool:
    name = PurePosixPath(path).name
    return name.endswith((".yaml", ".yml")) and name != SERVICE_INVENTORY_FILE


def _first_image(spec: Dict[str, Any]) -> Optional[str]:
    template = spec.get("template") or {}
    if "jobTemplate" in spec:
        template = ((spec.get("jobTemplate") or {}).get("spec") or {}).get("template") or {}
    containers = (template.get("spec") or {}).get("containers") or []
    for container in containers:
        if isinstance(container, dict) and container.get("image"):
            return container["image"]
    return None


@register(KUBERNETES, _is_manifest)
def parse_kubernetes(content: str, path: str) -> FileFacts:
    """Read workloads as backend services and ingresses as edge routes."""
    facts = FileFacts()
    for doc in yaml.safe_load_all(content):
        if not isinstance(doc, dict) or "kind" not in doc or "apiVersion" not in doc:
            continue
        kind = str(doc["kind"])
        metadata = doc.get("metadata") or {}
        name = str(metadata.get("name", "unnamed"))
        facts.resources.append({
            "kind": kind,
            "name": name,
            "namespace": str(metadata.get("namespace", "")),
            "file": path,
        })
        spec = doc.get("spec") or {}

        if kind in WORKLOAD_KINDS:
            facts.services.append(ServiceInfo(
                name=name, layer="backend", container_image=_first_image(spec),
            ))
        elif kind == "Ingress":
            routes = []
            for rule in spec.get("rules") or []:
                host = rule.get("host", "")
                for http_path in ((rule.get("http") or {}).get("paths") or []):
                    routes.append(f"{host}{http_path.get('path', '/')}")
                if host and not (rule.get("http") or {}).get("paths"):
                    routes.append(f"{host}/*")
            facts.services.append(ServiceInfo(name=name, layer="edge", route_patterns=routes))
    return facts


# ===================================================================
# Declared service inventory
# ===================================================================

@register("service_inventory", lambda path: PurePosixPath(path).name == SERVICE_INVENTORY_FILE)
def parse_service_inventory(content: str, path: str) -> FileFacts:
    """Read an ``ecograph.services.yaml`` file.

    Example::

        services:
          - name: billing-api
            layer: edge
            routes: ["api.example.com/billing/*"]
          - name: billing-worker
            layer: backend
            image: ghcr.io/acme/billing:1.4
        calls:
          - target: https://ledger.internal/entries
            caller: post_invoice
    """
    data = yaml.safe_load(content) or {}
    facts = FileFacts()
    for entry in data.get("services") or []:
        facts.services.append(ServiceInfo(
            name=str(entry["name"]),
            layer=str(entry.get("layer") or "internal"),
            owner_repo=str(entry.get("owner") or ""),
            route_patterns=[str(r) for r in entry.get("routes") or []],
            container_image=entry.get("image"),
        ))
    for entry in data.get("calls") or []:
        facts.outbound_calls.append(OutboundCall(
            target=str(entry["target"]),
            file=path,
            line=0,
            caller=entry.get("caller"),
            method=entry.get("method"),
        ))
    return facts


# ===================================================================
# Snapshot extraction
# ===================================================================

def iter_source_files(root: Path) -> List[Path]:
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.endswith(".egg-info"))
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.suffix in SUPPORTED_EXTENSIONS:
                files.append(path)
    return files


def extract_file(content: str, rel_path: str) -> FileFacts:
    """Run every applicable front end on one file, isolating failures."""
    facts = FileFacts()
    for front_end in front_ends_for(rel_path):
        try:
            facts.merge(front_end.parse(content, rel_path))
        except Exception as exc:
            logger.warning("%s front end skipped %s: %s", front_end.name, rel_path, exc)
    return facts


def extract_snapshot(
    root: Path,
    repo: str,
    ref: str = "local",
    ref_type: str = "branch",
    sha: Optional[str] = None,
    captured_at: Optional[datetime] = None,
) -> ExtractionSnapshot:
    """Parse a working tree into an :class:`ExtractionSnapshot`.

    Args:
        root: Directory to scan.
        repo: Repository name recorded in the snapshot.
        ref: Branch or tag label for this capture.
        ref_type: ``branch`` or ``tag``.
        sha: Optional commit id.
        captured_at: Capture time; defaults to now (UTC).

    Returns:
        Snapshot with ``type_definitions`` and ``service_topology`` domains,
        plus ``kubernetes`` when manifests were found.
    """
    facts = FileFacts()
    for path in iter_source_files(root):
        rel_path = path.relative_to(root).as_posix()
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read %s: %s", rel_path, exc)
            continue
        facts.merge(extract_file(content, rel_path))

    for service in facts.services:
        if not service.owner_repo:
            service.owner_repo = repo

    facts_by_domain: Dict[str, Any] = {
        TYPE_DEFINITIONS: build_type_facts(facts.types, facts.calls).to_dict(),
        SERVICE_TOPOLOGY: TopologyFacts(facts.services, facts.outbound_calls).to_dict(),
    }
    if facts.resources:
        facts_by_domain[KUBERNETES] = {"resources": facts.resources}

    logger.info(
        "Extracted %s@%s: %d types, %d calls, %d services",
        repo, ref, len(facts.types), len(facts.calls), len(facts.services),
    )
    return ExtractionSnapshot(
        repo=repo,
        ref=ref,
        captured_at=captured_at or datetime.now(timezone.utc),
        facts_by_domain=facts_by_domain,
        ref_type=ref_type,
        sha=sha,
    )
