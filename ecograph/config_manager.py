"""Configuration manager for ecograph using TOML files.

All scoring constants live here so they can be tuned per installation
without touching the analysis code::

    [scoring]
    name_weight = 50
    contract_floor = 60

    [ownership]
    "billing-worker" = "billing"

    [image_rewrites]
    "ghcr.io/acme/billing" = "billing"
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict

import toml

from .config import BASE_DIR

logger = logging.getLogger(__name__)

CONFIG_FILE = BASE_DIR / "config.toml"

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "scoring": {
        "name_weight": 50,
        "kind_weight": 20,
        "field_weight": 30,
        "min_similarity": 50,
        "contract_floor": 60,
    },
    "impact": {
        "service_weight": 5,
        "dependent_weight": 10,
        "shared_type_weight": 1,
        "medium_risk_at": 1,
        "high_risk_at": 3,
        "hotspot_degree": 10,
        "max_depth": 5,
        "max_nodes": 50,
        "upstream_depth": 6,
        "max_surfaces": 10,
    },
    # deployment name -> owning repository
    "ownership": {},
    # container image (full or short name) -> owning repository
    "image_rewrites": {},
}


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", CONFIG_FILE, exc)
        return {}


def _save_full_config(config: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, "w") as f:
            toml.dump(config, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config %s: %s", CONFIG_FILE, exc)
        return False


def load_settings() -> Dict[str, Dict[str, Any]]:
    """Return ``DEFAULT_SETTINGS`` overlaid with values from the TOML file.

    Unknown sections in the file are kept so that user mappings survive a
    round trip through :func:`save_setting`.
    """
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    for section, values in load_full_config().items():
        if isinstance(values, dict):
            settings.setdefault(section, {}).update(values)
    return settings


def save_setting(section: str, key: str, value: Any) -> bool:
    """Persist one ``section.key`` value, leaving other sections untouched.

    Args:
        section: TOML table name, e.g. ``scoring`` or ``ownership``.
        key: Key inside the table.
        value: Already-typed value (see :func:`parse_value`).

    Returns:
        True if saved successfully, False otherwise.
    """
    config = load_full_config()
    config.setdefault(section, {})[key] = value
    return _save_full_config(config)


def reset_settings() -> bool:
    """Drop the config file contents, reverting to defaults."""
    return _save_full_config({})


def parse_value(raw: str) -> Any:
    """Coerce a command-line string into an int, float, bool or string."""
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw
