"""Command hierarchy groups for the ecograph CLI.

  ecograph snapshot  — Extract, list and remove snapshots
  ecograph analyze   — Types, calls, topology and diffs
  ecograph config    — Scoring and ownership settings
"""

from __future__ import annotations

import typer

# ── Snapshot group ───────────────────────────────────────────
snapshot_grp = typer.Typer(
    help="📸 Snapshots — extract facts from working trees and manage stored refs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# ── Analysis group ───────────────────────────────────────────
analyze_grp = typer.Typer(
    help="🔍 Analysis — shared types, call graphs, blast radius, ecosystem and diffs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# ── Configuration group ──────────────────────────────────────
config_grp = typer.Typer(
    help="⚙️  Configuration — scoring weights, risk bands and ownership rules.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
