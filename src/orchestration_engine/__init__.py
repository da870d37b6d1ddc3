"""
orchestration-engine package root.

File: src/orchestration_engine/__init__.py

Purpose
- Package root for a single-process work-item orchestration engine: dependency
  resolution, budget-aware scheduling with an escalating commitment ladder, and
  spiral detection over per-item iteration history.

Import boundaries
- ``planning`` resolves a queue into an ordered, acyclic plan.
- ``control_plane`` runs the plan against an executor.
- ``config`` and ``observability`` carry the ambient stack.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
