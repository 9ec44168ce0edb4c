"""Pytest configuration and fixtures for ecograph tests."""

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

from ecograph.models import (
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
)
from ecograph.relationships import build_type_facts
from ecograph.storage import SnapshotStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def ecograph_home(temp_dir: Path, monkeypatch) -> Path:
    """Point snapshot storage and the config file at a temporary home."""
    snapshot_dir = temp_dir / "snapshots"
    config_file = temp_dir / "config.toml"

    # Patch both config AND storage modules (storage imports at module load)
    monkeypatch.setattr("ecograph.config.SNAPSHOT_DIR", snapshot_dir)
    monkeypatch.setattr("ecograph.storage.SNAPSHOT_DIR", snapshot_dir)
    monkeypatch.setattr("ecograph.config_manager.CONFIG_FILE", config_file)
    return temp_dir


@pytest.fixture
def store(temp_dir: Path) -> SnapshotStore:
    """SnapshotStore rooted in a temporary directory."""
    return SnapshotStore(temp_dir / "snapshots")


@pytest.fixture
def storefront_path() -> Path:
    """Path to the sample storefront repository."""
    return Path(__file__).parent / "fixtures" / "storefront"


@pytest.fixture
def accounts_path(temp_dir: Path) -> Path:
    """A second small repository that serves the storefront's user lookups."""
    root = temp_dir / "accounts"
    root.mkdir()
    (root / "models.py").write_text(
        "from dataclasses import dataclass\n"
        "\n"
        "\n"
        "@dataclass\n"
        "class User_Profile:\n"
        "    id: str\n"
        "    email: str\n"
        "    created_at: str\n",
        encoding="utf-8",
    )
    (root / "ecograph.services.yaml").write_text(
        "services:\n"
        "  - name: accounts-api\n"
        "    layer: edge\n"
        "    routes:\n"
        '      - "accounts.example.com/*"\n',
        encoding="utf-8",
    )
    return root


def _field(spec) -> FieldDefinition:
    if isinstance(spec, FieldDefinition):
        return spec
    if isinstance(spec, tuple):
        name, type_name = spec
        return FieldDefinition(name, TypeRef(type_name, type_name))
    return FieldDefinition(spec, TypeRef("str", "str"))


@pytest.fixture
def make_type():
    """Factory for TypeDefinition; fields are names, (name, type) pairs or FieldDefinitions."""

    def _make(name, kind="struct", fields=(), file="src/models.py", line=1, **kwargs) -> TypeDefinition:
        return TypeDefinition(
            name=name,
            kind=kind,
            file=file,
            line=line,
            fields=[_field(f) for f in fields],
            **kwargs,
        )

    return _make


@pytest.fixture
def make_snapshot():
    """Factory for ExtractionSnapshot built from typed records."""

    def _make(
        repo,
        ref="main",
        types=(),
        calls=(),
        services=(),
        outbound=(),
        extra=None,
        minutes=0,
        ref_type="branch",
    ) -> ExtractionSnapshot:
        facts = {
            TYPE_DEFINITIONS: build_type_facts(list(types), list(calls)).to_dict(),
            SERVICE_TOPOLOGY: TopologyFacts(list(services), list(outbound)).to_dict(),
        }
        facts.update(extra or {})
        return ExtractionSnapshot(
            repo=repo,
            ref=ref,
            captured_at=BASE_TIME + timedelta(minutes=minutes),
            facts_by_domain=facts,
            ref_type=ref_type,
        )

    return _make


@pytest.fixture
def edge():
    """Factory for CallEdge."""

    def _make(caller, callee, file="src/app.py", line=1) -> CallEdge:
        return CallEdge(caller, callee, file, line)

    return _make


@pytest.fixture
def service():
    """Factory for ServiceInfo."""

    def _make(name, layer="backend", owner_repo="", routes=(), image=None) -> ServiceInfo:
        return ServiceInfo(name, layer, owner_repo, list(routes), image)

    return _make


@pytest.fixture
def outbound():
    """Factory for OutboundCall."""

    def _make(target, caller=None) -> OutboundCall:
        return OutboundCall(target, "src/client.py", 1, caller=caller)

    return _make
