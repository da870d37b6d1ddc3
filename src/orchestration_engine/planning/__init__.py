"""
orchestration-engine planning package.

File: src/orchestration_engine/planning/__init__.py

Purpose
- Planning layer: queue manifests, dependency graph construction, cycle resolution,
  and execution ordering.

Functional requirements
- Must output an acyclic plan (order, parallel groups, critical path) or raise a
  ``ResolutionError`` subclass.

Non-functional requirements
- Must produce repeatable plans given the same queue and strategy.
"""

from orchestration_engine.planning.manifest import (
    Manifest,
    ManifestError,
    load_manifest,
    parse_manifest,
)
from orchestration_engine.planning.resolver import (
    MERGED_ID_PREFIX,
    CycleResolution,
    CycleResolutionError,
    DependencyResolver,
    ResolutionAction,
    ResolutionDecision,
    ResolutionHandler,
    ResolutionOption,
    ResolutionRequest,
    ResolutionRequiredError,
    ResolutionResult,
    ResolutionStrategy,
    UnknownDependencyError,
    resolve,
)
from orchestration_engine.planning.task_graph import (
    Cycle,
    CycleError,
    DependencyGraph,
    ResolutionError,
)

__all__ = [
    "MERGED_ID_PREFIX",
    "Cycle",
    "CycleError",
    "CycleResolution",
    "CycleResolutionError",
    "DependencyGraph",
    "DependencyResolver",
    "Manifest",
    "ManifestError",
    "ResolutionAction",
    "ResolutionDecision",
    "ResolutionError",
    "ResolutionHandler",
    "ResolutionOption",
    "ResolutionRequest",
    "ResolutionRequiredError",
    "ResolutionResult",
    "ResolutionStrategy",
    "UnknownDependencyError",
    "load_manifest",
    "parse_manifest",
    "resolve",
]
