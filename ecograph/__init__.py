"""ecograph: cross-repository knowledge graph and impact analysis."""

__version__ = "0.1.0"
