"""Tests for service ownership, provider matching and ecosystem ranking."""

from ecograph.models import NotFound, TopologyFacts, TypeFlowEdge
from ecograph.topology import (
    ImpactWeights,
    OwnershipRules,
    Provider,
    build_ecosystem_graph,
    build_provider_index,
    export_ecosystem_dot,
    focus,
    image_short_name,
    match_provider,
    render_ecosystem_mermaid,
    render_impact_table,
    resolve_backend_owner,
    resolve_owner,
    strip_deployment_suffix,
)


class TestOwnership:
    """Which repository owns a deployed service."""

    def test_image_short_name(self):
        assert image_short_name("ghcr.io/acme/billing-api:1.2") == "billing-api"
        assert image_short_name("billing@sha256:abc") == "billing"
        assert image_short_name("redis") == "redis"

    def test_strip_suffix(self):
        assert strip_deployment_suffix("billing-worker") == "billing"
        assert strip_deployment_suffix("billing") == "billing"
        assert strip_deployment_suffix("-api") == "-api"

    def test_explicit_mapping_wins(self, service):
        svc = service("billing-worker", image="ghcr.io/acme/ledger:1")
        rules = OwnershipRules(explicit={"billing-worker": "payments"}, image_rewrites={"ledger": "ledger"})
        assert resolve_backend_owner(svc, "infra", rules, ["billing", "ledger", "payments"]) == "payments"

    def test_image_rewrite_full_then_short(self, service):
        svc = service("worker", image="ghcr.io/acme/ledger:1")
        full = OwnershipRules(image_rewrites={"ghcr.io/acme/ledger:1": "books", "ledger": "ledger"})
        short = OwnershipRules(image_rewrites={"ledger": "ledger"})

        assert resolve_backend_owner(svc, "infra", full, []) == "books"
        assert resolve_backend_owner(svc, "infra", short, []) == "ledger"

    def test_stripped_name_must_be_known(self, service):
        svc = service("billing-worker")
        assert resolve_backend_owner(svc, "infra", OwnershipRules(), ["billing"]) == "billing"
        assert resolve_backend_owner(svc, "infra", OwnershipRules(), ["other"]) == "infra"

    def test_image_name_fallback(self, service):
        svc = service("worker", image="ghcr.io/acme/ledger-api:2")
        assert resolve_backend_owner(svc, "infra", OwnershipRules(), ["ledger"]) == "ledger"

    def test_declared_owner(self, service):
        svc = service("jobs", owner_repo="scheduler")
        assert resolve_backend_owner(svc, "infra", OwnershipRules(), []) == "scheduler"

    def test_edge_and_internal(self, service):
        rules = OwnershipRules()
        assert resolve_owner(service("gw", layer="edge", owner_repo="web"), "infra", rules, []) == "web"
        assert resolve_owner(service("gw", layer="edge"), "infra", rules, []) == "infra"
        assert resolve_owner(service("cron", layer="internal", owner_repo="x"), "infra", rules, []) == "infra"


class TestProviderMatching:
    """Resolving outbound call targets to providers."""

    def _providers(self, service):
        services = [
            service("accounts-api", layer="edge", owner_repo="accounts", routes=["accounts.example.com/*"]),
            service("billing", layer="backend", owner_repo="billing"),
            service("gateway", layer="edge", owner_repo="gateway", routes=["/api/orders", "/api/*"]),
        ]
        return build_provider_index(services)

    def test_index_keys(self, service):
        providers = self._providers(service)
        assert set(providers) == {
            "accounts.example.com/*", "accounts-api", "billing", "/api/orders", "/api/*", "gateway",
        }

    def test_first_claim_wins(self, service):
        providers = build_provider_index([
            service("api", owner_repo="one"),
            service("api", owner_repo="two"),
        ])
        assert providers["api"].repo == "one"

    def test_exact_route(self, service):
        assert match_provider("/api/orders", self._providers(service)).service == "gateway"

    def test_glob_route(self, service):
        providers = self._providers(service)
        assert match_provider("https://accounts.example.com/users/42", providers).repo == "accounts"
        assert match_provider("/api/payments", providers).repo == "gateway"

    def test_host_label(self, service):
        providers = self._providers(service)
        assert match_provider("http://billing.svc.cluster.local/charge", providers).repo == "billing"

    def test_path_prefix_boundary(self):
        providers = {"/orders": Provider("/orders", "shop", "orders", "edge")}
        assert match_provider("/orders/7", providers).repo == "shop"
        assert match_provider("/ordersearch", providers) is None

    def test_no_match(self, service):
        assert match_provider("https://api.stripe.com/v1/charges", self._providers(service)) is None


class TestEcosystemGraph:
    """Dependency edges and impact ranking."""

    def test_shared_backend_ranks_first(self, make_snapshot, service, outbound):
        snapshots = {
            "payments": make_snapshot("payments", services=[service("payments-api", owner_repo="payments")]),
            "web": make_snapshot("web", outbound=[outbound("http://payments-api/charge")]),
            "mobile": make_snapshot("mobile", outbound=[outbound("http://payments-api/refund")]),
        }
        graph = build_ecosystem_graph(snapshots)

        top = graph.impacts[0]
        assert top.repo == "payments"
        assert top.depended_on_by == ["mobile", "web"]
        assert top.impact_score == 5 * 1 + 10 * 2
        assert graph.impact_for("web").depends_on == ["payments"]

    def test_new_dependent_raises_score(self, make_snapshot, service, outbound):
        snapshots = {
            "payments": make_snapshot("payments", services=[service("payments-api", owner_repo="payments")]),
            "web": make_snapshot("web", outbound=[outbound("http://payments-api/charge")]),
        }
        before = build_ecosystem_graph(snapshots).impact_for("payments").impact_score

        snapshots["admin"] = make_snapshot("admin", outbound=[outbound("http://payments-api/refund")])
        after = build_ecosystem_graph(snapshots).impact_for("payments").impact_score

        assert after > before

    def test_unmatched_calls_are_external(self, make_snapshot, outbound):
        graph = build_ecosystem_graph({"web": make_snapshot("web", outbound=[outbound("https://api.stripe.com/v1")])})
        assert graph.edges == []
        assert graph.external_calls[0][0] == "web"

    def test_self_calls_dropped(self, make_snapshot, service, outbound):
        snapshot = make_snapshot(
            "web", services=[service("web-api", owner_repo="web")], outbound=[outbound("http://web-api/x")],
        )
        assert build_ecosystem_graph({"web": snapshot}).edges == []

    def test_missing_snapshot(self, make_snapshot):
        graph = build_ecosystem_graph({"web": make_snapshot("web"), "ghost": None})
        assert graph.missing_repos == ["ghost"]
        assert graph.impact_for("ghost").has_data is False
        assert graph.impact_for("web").has_data is True

    def test_infra_repo_declares_backend_for_other_repo(self, make_snapshot, service, outbound):
        snapshots = {
            "infra": make_snapshot("infra", services=[service("ledger-worker", owner_repo="infra")]),
            "ledger": make_snapshot("ledger"),
            "web": make_snapshot("web", outbound=[outbound("http://ledger-worker/entries")]),
        }
        graph = build_ecosystem_graph(snapshots)

        assert [s.name for s in graph.services_by_repo["ledger"]] == ["ledger-worker"]
        assert "infra" not in graph.services_by_repo
        assert graph.impact_for("ledger").depended_on_by == ["web"]

    def test_type_contracts(self, make_snapshot):
        flows = [
            TypeFlowEdge("accounts", "UserProfile", "web", "user_profile", 90, ["email", "id"]),
            TypeFlowEdge("accounts", "Session", "web", "session", 55),
        ]
        graph = build_ecosystem_graph(
            {"accounts": make_snapshot("accounts"), "web": make_snapshot("web")}, flows,
        )

        assert [(e.source, e.target, e.kind) for e in graph.edges] == [("accounts", "web", "type_contract")]
        assert graph.edges[0].evidence == ["UserProfile"]
        assert graph.impact_for("web").shared_type_names == ["user_profile"]
        assert graph.impact_for("web").depended_on_by == ["accounts"]

    def test_contract_floor_configurable(self, make_snapshot):
        flows = [TypeFlowEdge("a", "T", "b", "t", 55)]
        snapshots = {"a": make_snapshot("a"), "b": make_snapshot("b")}
        assert build_ecosystem_graph(snapshots, flows).edges == []
        assert len(build_ecosystem_graph(snapshots, flows, contract_floor=50).edges) == 1

    def test_custom_weights(self, make_snapshot, service):
        snapshots = {"a": make_snapshot("a", services=[service("a1"), service("a2")])}
        graph = build_ecosystem_graph(snapshots, weights=ImpactWeights(services=7))
        assert graph.impact_for("a").impact_score == 14

    def test_accepts_topology_facts(self, service):
        graph = build_ecosystem_graph({"a": TopologyFacts(services=[service("a-api", owner_repo="a")])})
        assert graph.impact_for("a").provided_services == 1


class TestFocus:
    """Single-repository views."""

    def _graph(self, make_snapshot, service, outbound):
        return build_ecosystem_graph({
            "payments": make_snapshot("payments", services=[service("payments-api", owner_repo="payments")]),
            "web": make_snapshot("web", outbound=[outbound("http://payments-api/charge")]),
            "docs": make_snapshot("docs"),
        })

    def test_focus_keeps_dependents(self, make_snapshot, service, outbound):
        view = focus(self._graph(make_snapshot, service, outbound), "payments")
        assert view.repos == ["payments", "web"]
        assert len(view.edges) == 1

    def test_focus_unknown_repo(self, make_snapshot, service, outbound):
        result = focus(self._graph(make_snapshot, service, outbound), "payment")
        assert isinstance(result, NotFound)
        assert "payments" in result.alternatives


class TestRendering:
    """Mermaid, table and DOT output."""

    def test_layers_and_edges(self, make_snapshot, service, outbound):
        graph = build_ecosystem_graph({
            "gateway": make_snapshot("gateway", services=[service("gw", layer="edge", routes=["/api/*"])]),
            "payments": make_snapshot("payments", services=[service("payments-api", owner_repo="payments")]),
            "web": make_snapshot("web", outbound=[outbound("http://payments-api/charge")]),
        })
        out = render_ecosystem_mermaid(graph)

        assert out.startswith("flowchart TB")
        assert "subgraph edge_layer" in out
        assert "subgraph backend_layer" in out
        assert "subgraph none_layer" in out
        assert out.index("edge_layer") < out.index("backend_layer")
        assert "web --> payments" in out

    def test_colliding_repo_names_stay_distinct(self, make_snapshot, service, outbound):
        graph = build_ecosystem_graph({
            "billing-api": make_snapshot("billing-api", services=[service("billing-api", owner_repo="billing-api")]),
            "billing_api": make_snapshot("billing_api", outbound=[outbound("http://billing-api/invoices")]),
        })
        out = render_ecosystem_mermaid(graph)

        assert 'billing_api["📦 billing-api' in out
        assert 'billing_api_1["📦 billing_api' in out
        assert "billing_api_1 --> billing_api" in out
        assert "    billing_api --> billing_api" not in out.splitlines()

    def test_contract_edges_dotted(self, make_snapshot):
        flows = [TypeFlowEdge("a", "Cart", "b", "cart", 90)]
        graph = build_ecosystem_graph({"a": make_snapshot("a"), "b": make_snapshot("b")}, flows)
        assert 'a -.->|"Cart"| b' in render_ecosystem_mermaid(graph)

    def test_empty(self):
        graph = build_ecosystem_graph({})
        assert "No repositories" in render_ecosystem_mermaid(graph)
        assert render_impact_table(graph) == "No repositories to rank."

    def test_table_and_dot(self, make_snapshot, service, outbound, temp_dir):
        graph = build_ecosystem_graph({
            "payments": make_snapshot("payments", services=[service("payments-api", owner_repo="payments")]),
            "web": make_snapshot("web", outbound=[outbound("http://payments-api/charge")]),
        })
        table = render_impact_table(graph)
        assert table.splitlines()[2].split()[:3] == ["1", "payments", "15"]

        target = temp_dir / "eco.dot"
        dot = export_ecosystem_dot(graph, target)
        assert dot.startswith("digraph Ecosystem {")
        assert '"web" -> "payments" [label="call"];' in dot
        assert target.read_text(encoding="utf-8") == dot
