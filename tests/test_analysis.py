"""Tests for the EcosystemAnalyzer orchestration layer."""

import copy

import pytest

from ecograph.analysis import CallGraphView, EcosystemAnalyzer
from ecograph.config_manager import DEFAULT_SETTINGS
from ecograph.models import NotFound, TYPE_DEFINITIONS


def _defaults():
    return copy.deepcopy(DEFAULT_SETTINGS)


@pytest.fixture
def analyzer(store, make_snapshot, make_type, edge, service, outbound) -> EcosystemAnalyzer:
    store.save(make_snapshot(
        "accounts",
        "v1",
        types=[make_type("UserProfile", fields=["id", "email"])],
        services=[service("accounts-api", layer="edge", owner_repo="accounts", routes=["accounts.example.com/*"])],
        minutes=1,
    ))
    store.save(make_snapshot(
        "accounts",
        "v2",
        types=[make_type("UserProfile", fields=["id", "email"]), make_type("Session", fields=["token"])],
        services=[service("accounts-api", layer="edge", owner_repo="accounts", routes=["accounts.example.com/*"])],
        minutes=2,
    ))
    store.save(make_snapshot(
        "web",
        "v1",
        types=[make_type("user_profile", fields=["id", "email", "createdAt"])],
        calls=[
            edge("ProfileScreen.render", "loadProfile", file="src/screens/profile.py"),
            edge("loadProfile", "apiClient.fetchUser", file="src/data/profile.py"),
        ],
        outbound=[outbound("https://accounts.example.com/users/1")],
        minutes=1,
    ))
    return EcosystemAnalyzer(store, settings=_defaults())


class TestSnapshots:
    """Snapshot resolution."""

    def test_latest_by_default(self, analyzer):
        snapshots = analyzer.snapshots()
        assert snapshots["accounts"].ref == "v2"
        assert snapshots["web"].ref == "v1"

    def test_unknown_repo(self, analyzer):
        result = analyzer.resolve_snapshot("acounts")
        assert isinstance(result, NotFound)
        assert result.kind == "repository"
        assert "accounts" in result.alternatives

    def test_unknown_ref(self, analyzer):
        result = analyzer.resolve_snapshot("web", "v9")
        assert isinstance(result, NotFound)
        assert result.kind == "snapshot"
        assert result.alternatives == ["v1"]


class TestTypes:
    """Shared types and queries."""

    def test_shared_types(self, analyzer):
        matches = analyzer.shared_types()
        assert [(m.normalized_name, m.similarity_score) for m in matches] == [("userprofile", 90)]

    def test_type_flow(self, analyzer):
        edges = analyzer.type_flow()
        assert [(e.from_repo, e.to_repo) for e in edges] == [("accounts", "web")]
        assert analyzer.type_flow(min_similarity=95) == []

    def test_query_types(self, analyzer):
        names = [r.type_def.name for r in analyzer.query_types(name="session")]
        assert names == ["Session"]

        scoped = analyzer.query_types(repo="web")
        assert [r.repo for r in scoped] == ["web"]

        assert isinstance(analyzer.query_types(repo="nope"), NotFound)

    def test_relationships_focus(self, store, make_snapshot, make_type):
        store.save(make_snapshot("shop", types=[
            make_type("Cart", fields=[("owner", "User")]),
            make_type("User"),
            make_type("Coupon", fields=[("cart", "Cart")]),
        ]))
        facts = EcosystemAnalyzer(store, settings=_defaults()).relationships("shop", focus="user")
        assert [(r.from_type, r.to_type) for r in facts.relationships] == [("Cart", "User")]


class TestCalls:
    """Call graphs and impact trees."""

    def test_call_graph_from_entry_points(self, analyzer):
        view = analyzer.call_graph("web")
        assert isinstance(view, CallGraphView)
        assert view.ref == "v1"
        assert view.traversal.seeds == ["ProfileScreen.render"]
        assert "apiClient.fetchUser" in view.traversal.nodes

    def test_call_graph_unknown_function(self, analyzer):
        result = analyzer.call_graph("web", function="zzz_nothing")
        assert isinstance(result, NotFound)
        assert result.kind == "function"

    def test_call_graph_callers(self, analyzer):
        view = analyzer.call_graph("web", function="fetchUser", direction="callers")
        assert view.traversal.nodes == ["apiClient.fetchUser", "loadProfile", "ProfileScreen.render"]

    def test_impact_tree(self, analyzer):
        results = analyzer.impact_tree("web")
        assert len(results) == 1
        assert results[0].risk == "medium"
        assert results[0].affected_surfaces[0].function == "ProfileScreen.render"

    def test_risk_bands_from_settings(self, store, make_snapshot, edge):
        store.save(make_snapshot("web", calls=[edge("HomeScreen", "db.get", file="screens/home.py")]))
        settings = _defaults()
        settings["impact"]["high_risk_at"] = 1
        assert EcosystemAnalyzer(store, settings=settings).impact_tree("web")[0].risk == "high"


class TestEcosystem:
    """Topology and diff."""

    def test_ecosystem_edges(self, analyzer):
        graph = analyzer.ecosystem()
        kinds = {(e.source, e.target, e.kind) for e in graph.edges}

        assert ("web", "accounts", "call") in kinds
        assert ("accounts", "web", "type_contract") in kinds

    def test_ecosystem_focus(self, analyzer):
        assert analyzer.ecosystem(focus_repo="accounts").repos == ["accounts", "web"]
        assert isinstance(analyzer.ecosystem(focus_repo="acount"), NotFound)

    def test_ownership_from_settings(self, store, make_snapshot, service, outbound):
        store.save(make_snapshot("infra", services=[service("worker", image="ghcr.io/acme/ledger:1")]))
        store.save(make_snapshot("ledger"))
        store.save(make_snapshot("web", outbound=[outbound("http://worker/jobs")]))
        settings = _defaults()
        settings["image_rewrites"] = {"ledger": "ledger"}

        graph = EcosystemAnalyzer(store, settings=settings).ecosystem()
        assert graph.impact_for("ledger").depended_on_by == ["web"]

    def test_diff(self, analyzer):
        result = analyzer.diff("v1", "v2")
        by_repo = {r.repo: r for r in result.repos}

        assert by_repo["web"].to_found is False
        assert result.aggregated[TYPE_DEFINITIONS]["added"] == ["accounts/Session"]

    def test_diff_unknown_ref(self, analyzer):
        result = analyzer.diff("v1", "v7")
        assert isinstance(result, NotFound)
        assert "v7" in result.message

    def test_diff_unknown_repo(self, analyzer):
        assert isinstance(analyzer.diff("v1", "v2", repo="ghost"), NotFound)

    def test_default_settings_loaded(self, ecograph_home, store):
        analyzer = EcosystemAnalyzer(store)
        assert analyzer.settings["scoring"] == DEFAULT_SETTINGS["scoring"]
