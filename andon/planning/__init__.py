"""
Planning utilities for Andon.

This module provides:
- DependencyGraph: dependency-respecting order for work units
"""

from andon.planning.dependency_graph import DependencyGraph

__all__ = ["DependencyGraph"]
