"""Tests for the file front ends and snapshot extraction."""

import ast
from datetime import datetime, timezone
from pathlib import Path

from ecograph.models import SERVICE_TOPOLOGY, TYPE_DEFINITIONS
from ecograph.parser import (
    extract_file,
    extract_snapshot,
    front_ends_for,
    parse_kubernetes,
    parse_python,
    parse_service_inventory,
    type_ref_from_annotation,
)


def _annotation(source: str):
    return type_ref_from_annotation(ast.parse(source, mode="eval").body)


class TestAnnotations:
    """Annotation to TypeRef conversion."""

    def test_plain(self):
        ref = _annotation("Address")
        assert (ref.name, ref.optional, ref.is_collection) == ("Address", False, False)

    def test_optional_forms(self):
        assert _annotation("Optional[Address]").optional
        assert _annotation("Address | None").optional
        assert _annotation("Union[Address, None]").name == "Address"

    def test_collections(self):
        ref = _annotation("List[OrderLine]")
        assert ref.name == "OrderLine"
        assert ref.is_collection
        assert ref.raw == "List[OrderLine]"

        mapping = _annotation("Dict[str, Order]")
        assert mapping.name == "Order"
        assert [g.name for g in mapping.generics] == ["str", "Order"]

    def test_forward_reference(self):
        assert _annotation("'Order'").name == "Order"
        assert _annotation("List['Order']").name == "Order"

    def test_union(self):
        ref = _annotation("Union[Card, Cash]")
        assert ref.name == "Union"
        assert [g.name for g in ref.generics] == ["Card", "Cash"]


class TestPythonFrontEnd:
    """Classes, calls and outbound requests from Python source."""

    def test_class_kinds(self):
        source = (
            "from abc import ABC\n"
            "from dataclasses import dataclass\n"
            "from enum import Enum\n"
            "from typing import Protocol, TypedDict\n"
            "\n"
            "class Color(Enum):\n"
            "    RED = 1\n"
            "    GREEN = 2\n"
            "\n"
            "class Repo(Protocol):\n"
            "    def save(self): ...\n"
            "\n"
            "class Base(ABC):\n"
            "    pass\n"
            "\n"
            "@dataclass\n"
            "class Point:\n"
            "    x: int\n"
            "    y: int\n"
            "\n"
            "class Payload(TypedDict):\n"
            "    id: str\n"
            "\n"
            "class Plain(Base):\n"
            "    pass\n"
        )
        facts = parse_python(source, "pkg/models.py")
        kinds = {t.name: t.kind for t in facts.types}

        assert kinds == {
            "Color": "enum",
            "Repo": "protocol",
            "Base": "interface",
            "Point": "struct",
            "Payload": "struct",
            "Plain": "class",
        }
        color = next(t for t in facts.types if t.name == "Color")
        assert [(v.name, v.value) for v in color.variants] == [("RED", 1), ("GREEN", 2)]
        plain = next(t for t in facts.types if t.name == "Plain")
        assert [e.name for e in plain.extends] == ["Base"]
        assert all(t.language == "python" for t in facts.types)

    def test_fields(self):
        source = (
            "from typing import ClassVar, Optional\n"
            "\n"
            "class User:\n"
            "    registry: ClassVar[dict] = {}\n"
            "    id: str\n"
            "    nickname: Optional[str] = None\n"
            "\n"
            "    def __init__(self, email):\n"
            "        self.email = email\n"
            "        self.id = 'x'\n"
        )
        user = parse_python(source, "user.py").types[0]

        assert [f.name for f in user.fields] == ["id", "nickname", "email"]
        assert user.fields[1].optional

    def test_module_level_aliases(self):
        source = (
            "from typing import TypeAlias, Union\n"
            "Payment = Union[str, int]\n"
            "UserId: TypeAlias = str\n"
        )
        kinds = {t.name: t.kind for t in parse_python(source, "types.py").types}
        assert kinds == {"Payment": "union", "UserId": "type_alias"}

    def test_calls_scoped_to_function(self):
        source = (
            "class Service:\n"
            "    def run(self):\n"
            "        self.load()\n"
            "        def inner():\n"
            "            helper()\n"
            "        return inner\n"
        )
        calls = {(c.caller, c.callee) for c in parse_python(source, "svc.py").calls}
        assert calls == {("Service.run", "self.load"), ("Service.run.inner", "helper")}

    def test_async_function_calls(self):
        source = (
            "async def sync_orders(client):\n"
            "    await client.fetch_orders()\n"
        )
        calls = {(c.caller, c.callee) for c in parse_python(source, "jobs.py").calls}
        assert calls == {("sync_orders", "client.fetch_orders")}

    def test_outbound_http(self):
        source = (
            "import requests\n"
            "\n"
            "def sync(user_id, session):\n"
            "    requests.post('https://ledger.internal/entries', json={})\n"
            "    session.get(f'/api/users/{user_id}')\n"
            "    requests.get(build_url())\n"
            "    cache.get('key')\n"
        )
        calls = parse_python(source, "sync.py").outbound_calls

        assert [(c.target, c.method) for c in calls] == [
            ("https://ledger.internal/entries", "POST"),
            ("/api/users/*", "GET"),
        ]
        assert calls[0].caller == "sync"


class TestYamlFrontEnds:
    """Kubernetes manifests and service inventories."""

    def test_kubernetes(self):
        content = (
            "apiVersion: apps/v1\n"
            "kind: Deployment\n"
            "metadata:\n"
            "  name: billing-worker\n"
            "spec:\n"
            "  template:\n"
            "    spec:\n"
            "      containers:\n"
            "        - name: worker\n"
            "          image: ghcr.io/acme/billing:1.4\n"
            "---\n"
            "apiVersion: networking.k8s.io/v1\n"
            "kind: Ingress\n"
            "metadata:\n"
            "  name: public\n"
            "spec:\n"
            "  rules:\n"
            "    - host: shop.example.com\n"
            "      http:\n"
            "        paths:\n"
            "          - path: /api\n"
            "---\n"
            "not: a manifest\n"
        )
        facts = parse_kubernetes(content, "deploy/app.yaml")
        services = {s.name: s for s in facts.services}

        assert services["billing-worker"].layer == "backend"
        assert services["billing-worker"].container_image == "ghcr.io/acme/billing:1.4"
        assert services["public"].layer == "edge"
        assert services["public"].route_patterns == ["shop.example.com/api"]
        assert [r["kind"] for r in facts.resources] == ["Deployment", "Ingress"]

    def test_service_inventory(self):
        content = (
            "services:\n"
            "  - name: billing-api\n"
            "    layer: edge\n"
            "    routes: ['api.example.com/billing/*']\n"
            "  - name: cron\n"
            "calls:\n"
            "  - target: https://ledger.internal/entries\n"
            "    caller: post_invoice\n"
        )
        facts = parse_service_inventory(content, "ecograph.services.yaml")

        assert [(s.name, s.layer) for s in facts.services] == [("billing-api", "edge"), ("cron", "internal")]
        assert facts.outbound_calls[0].caller == "post_invoice"

    def test_service_inventory_null_fields(self):
        content = (
            "services:\n"
            "  - name: worker\n"
            "    owner: null\n"
            "    layer: null\n"
        )
        service = parse_service_inventory(content, "ecograph.services.yaml").services[0]
        assert service.owner_repo == ""
        assert service.layer == "internal"

    def test_front_end_selection(self):
        assert [fe.name for fe in front_ends_for("src/app.py")] == ["python"]
        assert [fe.name for fe in front_ends_for("deploy/app.yaml")] == ["kubernetes"]
        assert [fe.name for fe in front_ends_for("ecograph.services.yaml")] == ["service_inventory"]
        assert front_ends_for("README.md") == []


class TestExtraction:
    """Walking a working tree into a snapshot."""

    def test_syntax_error_isolated(self):
        facts = extract_file("def broken(:\n", "bad.py")
        assert facts.types == [] and facts.calls == []

    def test_extract_sample_repo(self, storefront_path: Path):
        captured = datetime(2024, 5, 1, tzinfo=timezone.utc)
        snapshot = extract_snapshot(storefront_path, "storefront", "main", sha="abc123", captured_at=captured)

        assert snapshot.repo == "storefront"
        assert snapshot.sha == "abc123"
        assert snapshot.captured_at == captured
        assert set(snapshot.domains) == {TYPE_DEFINITIONS, SERVICE_TOPOLOGY, "kubernetes"}

        facts = snapshot.type_facts()
        names = {t.name for t in facts.types}
        assert {"UserProfile", "Order", "OrderLine", "OrderStatus", "PaymentMethod", "ApiClient"} <= names

        rels = {(r.kind, r.from_type, r.to_type) for r in facts.relationships}
        assert ("collection", "Order", "OrderLine") in rels
        assert ("contains", "UserProfile", "Address") in rels

        topology = snapshot.topology_facts()
        services = {s.name: s for s in topology.services}
        assert services["storefront-web"].layer == "edge"
        assert services["storefront-api"].owner_repo == "storefront"
        assert [c.target for c in topology.outbound_calls] == ["https://accounts.example.com/users/*"]

    def test_skip_dirs(self, temp_dir: Path):
        (temp_dir / "node_modules").mkdir()
        (temp_dir / "node_modules" / "vendored.py").write_text("class Vendored:\n    pass\n", encoding="utf-8")
        (temp_dir / "app.py").write_text("class App:\n    pass\n", encoding="utf-8")

        snapshot = extract_snapshot(temp_dir, "demo")
        assert [t.name for t in snapshot.type_facts().types] == ["App"]
