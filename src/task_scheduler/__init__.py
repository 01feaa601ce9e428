"""Persistent hierarchical task queue with atomic-claim dispatch."""

__version__ = "0.1.0"
