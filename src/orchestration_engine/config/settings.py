"""Typed engine settings built from a validated configuration mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from orchestration_engine.config.schema import assert_valid_config, default_config
from orchestration_engine.control_plane.commitment import CommitmentPolicy
from orchestration_engine.control_plane.scheduler import SchedulerLimits
from orchestration_engine.control_plane.spiral import SpiralThresholds
from orchestration_engine.domain.models import Budget, EdgeKind
from orchestration_engine.planning.resolver import ResolutionStrategy


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    log_to_stdout: bool = True
    redact_secrets: bool = True


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """
    Effective settings for one orchestration run.

    Every field has a built-in default, so ``EngineSettings()`` equals
    ``EngineSettings.from_config(default_config())``.
    """

    strategy: ResolutionStrategy = ResolutionStrategy.FAIL_ON_CYCLE
    edge_kinds: tuple[EdgeKind, ...] = tuple(EdgeKind)
    weighted_critical_path: bool = False
    budget: Budget = field(default_factory=lambda: Budget(total_units=100.0))
    scheduler: SchedulerLimits = field(default_factory=SchedulerLimits)
    commitment: CommitmentPolicy = field(default_factory=CommitmentPolicy)
    spiral: SpiralThresholds = field(default_factory=SpiralThresholds)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> EngineSettings:
        """Validate ``config`` and convert each section to its typed counterpart."""

        valid: dict[str, Any] = assert_valid_config(config)
        resolver = valid["resolver"]
        budget = valid["budget"]
        observability = valid["observability"]
        return cls(
            strategy=ResolutionStrategy(resolver["strategy"]),
            edge_kinds=tuple(EdgeKind(kind) for kind in resolver["edge_kinds"]),
            weighted_critical_path=resolver["weighted_critical_path"],
            budget=Budget(
                total_units=budget["total_units"],
                wall_clock_seconds=budget.get("wall_clock_seconds"),
                max_iterations_per_item=budget["max_iterations_per_item"],
            ),
            scheduler=SchedulerLimits(max_in_flight=valid["scheduler"]["max_in_flight"]),
            commitment=CommitmentPolicy(**valid["commitment"]),
            spiral=SpiralThresholds.from_mapping(valid["spiral"]),
            observability=ObservabilitySettings(
                log_level=observability["log_level"],
                log_dir=Path(observability["log_dir"]),
                log_to_stdout=observability["log_to_stdout"],
                redact_secrets=observability["redact_secrets"],
            ),
        )

    @classmethod
    def defaults(cls) -> EngineSettings:
        return cls.from_config(default_config())

    def observability_mapping(self) -> dict[str, object]:
        """Mapping accepted by ``observability.logging.setup_logging``."""
        return {
            "log_level": self.observability.log_level,
            "log_dir": self.observability.log_dir.as_posix(),
            "log_to_stdout": self.observability.log_to_stdout,
            "redact_secrets": self.observability.redact_secrets,
        }


__all__ = ["EngineSettings", "ObservabilitySettings"]
