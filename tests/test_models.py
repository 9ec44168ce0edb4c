"""Tests for canonical data models."""

from datetime import datetime, timezone

import pytest

from ecograph.models import (
    SERVICE_TOPOLOGY,
    TYPE_DEFINITIONS,
    DomainDiff,
    ExtractionSnapshot,
    NotFound,
    ServiceInfo,
    TopologyFacts,
    TypeDefinition,
    TypeFacts,
    TypeRelationship,
    parse_timestamp,
)


class TestValidation:
    """Closed vocabularies are enforced at construction."""

    def test_unknown_type_kind_rejected(self):
        with pytest.raises(ValueError, match="type kind"):
            TypeDefinition(name="X", kind="record", file="a.py", line=1)

    def test_unknown_relationship_kind_rejected(self):
        with pytest.raises(ValueError):
            TypeRelationship("references", "A", "B")

    def test_unknown_layer_rejected(self):
        with pytest.raises(ValueError, match="service layer"):
            ServiceInfo(name="api", layer="frontend")

    def test_unknown_ref_type_rejected(self):
        with pytest.raises(ValueError):
            ExtractionSnapshot("repo", "main", datetime.now(timezone.utc), ref_type="commit")


class TestSerialization:
    """Records survive a JSON-compatible dict round trip."""

    def test_type_definition_round_trip(self, make_type):
        original = make_type("Order", fields=["id", ("owner", "UserProfile")], doc="An order.")
        restored = TypeDefinition.from_dict(original.to_dict())

        assert restored == original
        assert restored.fields[1].type_ref.name == "UserProfile"

    def test_snapshot_round_trip_parses_domains(self, make_snapshot, make_type, service):
        snapshot = make_snapshot("shop", types=[make_type("Cart")], services=[service("shop-api")])
        restored = ExtractionSnapshot.from_dict(snapshot.to_dict())

        assert restored.repo == "shop"
        assert restored.captured_at == snapshot.captured_at
        assert [t.name for t in restored.type_facts().types] == ["Cart"]
        assert restored.topology_facts().services[0].name == "shop-api"

    def test_typed_payloads_serialize(self):
        snapshot = ExtractionSnapshot(
            "shop",
            "main",
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            facts_by_domain={TYPE_DEFINITIONS: TypeFacts(), SERVICE_TOPOLOGY: TopologyFacts()},
        )
        payload = snapshot.to_dict()["facts_by_domain"]

        assert payload[TYPE_DEFINITIONS]["types"] == []
        assert payload[SERVICE_TOPOLOGY]["services"] == []

    def test_unknown_domain_returned_as_is(self):
        snapshot = ExtractionSnapshot(
            "shop", "main", datetime(2024, 1, 1, tzinfo=timezone.utc),
            facts_by_domain={"terraform": {"providers": ["aws"]}},
        )
        assert snapshot.domain("terraform") == {"providers": ["aws"]}
        assert snapshot.domain("missing") is None
        assert snapshot.type_facts() is None
        assert snapshot.domains == ["terraform"]

    def test_naive_timestamp_assumed_utc(self):
        parsed = parse_timestamp("2024-03-01T12:00:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset().total_seconds() == 0


class TestDerivedViews:
    """Small behaviours of derived records."""

    def test_not_found_default_message(self):
        miss = NotFound("repository", "billing", ["billing-api"])
        assert miss.message == "No repository named 'billing'."

    def test_not_found_keeps_custom_message(self):
        miss = NotFound("snapshot", "v9", message="No snapshot for ref 'v9'.")
        assert miss.message == "No snapshot for ref 'v9'."

    def test_domain_diff_is_empty(self):
        assert DomainDiff("types", "unchanged").is_empty
        assert not DomainDiff("types", "changed", added=["A"]).is_empty
        assert not DomainDiff("types", "new").is_empty
