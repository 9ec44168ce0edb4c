"""JSON-on-disk persistence for extraction snapshots.

Layout::

    <SNAPSHOT_DIR>/<repo>/<ref_type>-<safe_ref>/manifest.json
    <SNAPSHOT_DIR>/<repo>/<ref_type>-<safe_ref>/<domain>.json

One directory per (repo, ref). A save only replaces an existing snapshot
when it was captured later.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional

from .config import SNAPSHOT_DIR
from .models import ExtractionSnapshot, SnapshotRef, parse_timestamp

logger = logging.getLogger(__name__)

_REPO_NAME = re.compile(r"^[A-Za-z0-9._-]{1,100}$")
_UNSAFE_REF = re.compile(r"[^A-Za-z0-9._-]")

MANIFEST = "manifest.json"


def validate_repo_name(repo: str) -> str:
    if not _REPO_NAME.match(repo) or repo in (".", ".."):
        raise ValueError(
            f"Invalid repository name '{repo}': use 1-100 letters, digits, '-', '_' or '.'"
        )
    return repo


def safe_ref(ref: str) -> str:
    return _UNSAFE_REF.sub("_", ref)


class SnapshotStore:
    """Read and write :class:`ExtractionSnapshot` records."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = base_dir or SNAPSHOT_DIR

    def repo_dir(self, repo: str) -> Path:
        return self.base_dir / validate_repo_name(repo)

    def snapshot_dir(self, repo: str, ref_type: str, ref: str) -> Path:
        return self.repo_dir(repo) / f"{ref_type}-{safe_ref(ref)}"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, snapshot: ExtractionSnapshot) -> bool:
        """Persist *snapshot* unless a newer capture of the same ref exists.

        Returns:
            True if written, False if an existing newer snapshot was kept.
        """
        target = self.snapshot_dir(snapshot.repo, snapshot.ref_type, snapshot.ref)
        existing = self._read_manifest(target / MANIFEST)
        if existing is not None and existing.captured_at > snapshot.captured_at:
            logger.info(
                "Kept newer snapshot of %s@%s captured %s",
                snapshot.repo, snapshot.ref, existing.captured_at.isoformat(),
            )
            return False

        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True, exist_ok=True)

        manifest = {
            "repo": snapshot.repo,
            "ref": snapshot.ref,
            "ref_type": snapshot.ref_type,
            "sha": snapshot.sha,
            "captured_at": snapshot.captured_at.isoformat(),
            "domains": snapshot.domains,
        }
        for domain, payload in snapshot.to_dict()["facts_by_domain"].items():
            (target / f"{domain}.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
        (target / MANIFEST).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return True

    def delete(self, repo: str, ref: Optional[str] = None) -> bool:
        """Delete one ref of *repo*, or the whole repository when *ref* is None."""
        if ref is None:
            path = self.repo_dir(repo)
            if not path.exists():
                return False
            shutil.rmtree(path)
            return True

        removed = False
        for entry in self.list_snapshots(repo):
            if entry.ref == ref:
                shutil.rmtree(self.snapshot_dir(repo, entry.ref_type, entry.ref))
                removed = True
        return removed

    def prune(self, repo: str, keep: int = 5) -> List[str]:
        """Remove all but the *keep* most recent snapshots; return removed refs."""
        removed = []
        for entry in self.list_snapshots(repo)[keep:]:
            shutil.rmtree(self.snapshot_dir(repo, entry.ref_type, entry.ref))
            removed.append(entry.ref)
        return removed

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def list_repos(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir() and any(p.iterdir()))

    def list_snapshots(self, repo: str) -> List[SnapshotRef]:
        """Snapshots of *repo*, most recently captured first."""
        path = self.repo_dir(repo)
        if not path.exists():
            return []
        refs = []
        for child in path.iterdir():
            manifest = self._read_manifest(child / MANIFEST)
            if manifest is not None:
                refs.append(manifest)
        return sorted(refs, key=lambda r: r.captured_at, reverse=True)

    def get_snapshot(self, repo: str, ref: str) -> Optional[ExtractionSnapshot]:
        for entry in self.list_snapshots(repo):
            if entry.ref == ref:
                return self.load(repo, entry.ref_type, entry.ref)
        return None

    def latest(self, repo: str) -> Optional[ExtractionSnapshot]:
        snapshots = self.list_snapshots(repo)
        if not snapshots:
            return None
        head = snapshots[0]
        return self.load(repo, head.ref_type, head.ref)

    def load(self, repo: str, ref_type: str, ref: str) -> Optional[ExtractionSnapshot]:
        target = self.snapshot_dir(repo, ref_type, ref)
        manifest_path = target / MANIFEST
        if not manifest_path.exists():
            return None
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            facts = {}
            for domain in manifest.get("domains", []):
                domain_file = target / f"{domain}.json"
                if domain_file.exists():
                    facts[domain] = json.loads(domain_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Corrupted snapshot %s: %s", target, exc)
            return None
        return ExtractionSnapshot.from_dict({**manifest, "facts_by_domain": facts})

    def _read_manifest(self, path: Path) -> Optional[SnapshotRef]:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return SnapshotRef(
                ref=payload["ref"],
                ref_type=payload.get("ref_type", "branch"),
                captured_at=parse_timestamp(payload["captured_at"]),
                sha=payload.get("sha"),
            )
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            logger.warning("Skipping unreadable manifest %s: %s", path, exc)
            return None
