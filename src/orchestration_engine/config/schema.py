"""
Configuration defaults, validation rules and profile overlays.

Every section of ``orchestration.toml`` maps to a table of field validators.
Validation never stops at the first problem: it collects every issue as a
``ConfigValidationIssue(path, message)`` with a dotted path, and only returns a
normalized config when the list is empty.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict, cast

ConfigSchemaVersion: Final[int] = 1
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "exploration")

STRATEGY_VALUES: Final[tuple[str, ...]] = (
    "fail_on_cycle",
    "break_weakest",
    "merge_cycle",
    "user_resolution",
)
EDGE_KIND_VALUES: Final[tuple[str, ...]] = ("explicit", "data_flow", "temporal", "implicit")
LOG_LEVEL_VALUES: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)


class MetaConfig(TypedDict):
    schema_version: int


class ResolverConfig(TypedDict):
    strategy: Literal["fail_on_cycle", "break_weakest", "merge_cycle", "user_resolution"]
    edge_kinds: list[str]
    weighted_critical_path: bool


class BudgetConfig(TypedDict):
    total_units: float
    max_iterations_per_item: int
    wall_clock_seconds: NotRequired[float]


class SchedulerConfig(TypedDict):
    max_in_flight: int


class CommitmentConfig(TypedDict):
    budget_warning_ratio: float
    budget_hard_cap_ratio: float
    time_reduced_ratio: float
    reduced_iteration_factor: float
    critical_spirals_for_force: int


class SpiralConfig(TypedDict):
    oscillation_min_resources: int
    oscillation_window: int
    scope_creep_tolerance: int
    scope_creep_critical_extra: int
    diminishing_delta: float
    diminishing_window: int
    thrashing_time_factor: float
    gold_plating_progress: float
    warning_escalation_after: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    resolver: dict[str, object]
    budget: dict[str, object]
    scheduler: dict[str, object]
    commitment: dict[str, object]
    spiral: dict[str, object]
    observability: dict[str, object]


class EngineConfig(TypedDict):
    meta: MetaConfig
    resolver: ResolverConfig
    budget: BudgetConfig
    scheduler: SchedulerConfig
    commitment: CommitmentConfig
    spiral: SpiralConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[EngineConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "resolver": {
        "strategy": "fail_on_cycle",
        "edge_kinds": list(EDGE_KIND_VALUES),
        "weighted_critical_path": False,
    },
    "budget": {
        "total_units": 100.0,
        "max_iterations_per_item": 5,
    },
    "scheduler": {
        "max_in_flight": 1,
    },
    "commitment": {
        "budget_warning_ratio": 0.5,
        "budget_hard_cap_ratio": 0.75,
        "time_reduced_ratio": 0.75,
        "reduced_iteration_factor": 0.5,
        "critical_spirals_for_force": 2,
    },
    "spiral": {
        "oscillation_min_resources": 3,
        "oscillation_window": 3,
        "scope_creep_tolerance": 0,
        "scope_creep_critical_extra": 5,
        "diminishing_delta": 0.1,
        "diminishing_window": 2,
        "thrashing_time_factor": 2.0,
        "gold_plating_progress": 1.0,
        "warning_escalation_after": 3,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": True,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "resolver": {"strategy": "fail_on_cycle"},
            "budget": {"max_iterations_per_item": 3},
            "scheduler": {"max_in_flight": 1},
            "commitment": {"critical_spirals_for_force": 1},
        },
        "exploration": {
            "resolver": {"strategy": "break_weakest"},
            "budget": {"max_iterations_per_item": 8},
            "scheduler": {"max_in_flight": 4},
            "spiral": {"warning_escalation_after": 5},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One problem found at a dotted config path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized mapping, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by ``assert_valid_config`` and profile selection; carries every issue."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


_FieldValidator = Callable[[object, str, _Issues], object | None]


def _ratio(value: object, path: str, issues: _Issues) -> float | None:
    return _as_float(value, path, issues, minimum=0.0, maximum=1.0, exclusive_minimum=True)


def _positive_float(value: object, path: str, issues: _Issues) -> float | None:
    return _as_float(value, path, issues, minimum=0.0, exclusive_minimum=True)


def _non_negative_float(value: object, path: str, issues: _Issues) -> float | None:
    return _as_float(value, path, issues, minimum=0.0)


def _positive_int(value: object, path: str, issues: _Issues) -> int | None:
    return _as_int(value, path, issues, minimum=1)


def _non_negative_int(value: object, path: str, issues: _Issues) -> int | None:
    return _as_int(value, path, issues, minimum=0)


def _strategy(value: object, path: str, issues: _Issues) -> str | None:
    return _as_enum(value, path, issues, allowed_values=STRATEGY_VALUES)


def _log_level(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    return _as_enum(parsed.upper(), path, issues, allowed_values=LOG_LEVEL_VALUES)


def _edge_kinds(value: object, path: str, issues: _Issues) -> list[str] | None:
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",") if part.strip()]
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of edge kinds, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_enum(item, f"{path}[{index}]", issues, allowed_values=EDGE_KIND_VALUES)
        if parsed is not None and parsed not in out:
            out.append(parsed)
    return out


def _schema_version(value: object, path: str, issues: _Issues) -> int | None:
    parsed = _as_int(value, path, issues, minimum=1)
    if parsed is not None and parsed != ConfigSchemaVersion:
        issues.add(path, migration_guidance(parsed))
        return None
    return parsed


_SECTIONS: Final[dict[str, dict[str, _FieldValidator]]] = {
    "meta": {"schema_version": _schema_version},
    "resolver": {
        "strategy": _strategy,
        "edge_kinds": _edge_kinds,
        "weighted_critical_path": lambda value, path, issues: _as_bool(value, path, issues),
    },
    "budget": {
        "total_units": _positive_float,
        "wall_clock_seconds": _positive_float,
        "max_iterations_per_item": _positive_int,
    },
    "scheduler": {"max_in_flight": _positive_int},
    "commitment": {
        "budget_warning_ratio": _ratio,
        "budget_hard_cap_ratio": _ratio,
        "time_reduced_ratio": _ratio,
        "reduced_iteration_factor": _ratio,
        "critical_spirals_for_force": _positive_int,
    },
    "spiral": {
        "oscillation_min_resources": _positive_int,
        "oscillation_window": _positive_int,
        "scope_creep_tolerance": _non_negative_int,
        "scope_creep_critical_extra": _positive_int,
        "diminishing_delta": _non_negative_float,
        "diminishing_window": _positive_int,
        "thrashing_time_factor": _positive_float,
        "gold_plating_progress": _ratio,
        "warning_escalation_after": _positive_int,
    },
    "observability": {
        "log_level": _log_level,
        "log_dir": lambda value, path, issues: _as_path_text(value, path, issues),
        "log_to_stdout": lambda value, path, issues: _as_bool(value, path, issues),
        "redact_secrets": lambda value, path, issues: _as_bool(value, path, issues),
    },
}

_OPTIONAL_FIELDS: Final[frozenset[tuple[str, str]]] = frozenset(
    {("budget", "wall_clock_seconds")}
)


def default_config() -> EngineConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    if found_version < ConfigSchemaVersion:
        action = "upgrade orchestration.toml to the current schema"
        relation = "older"
    else:
        action = "upgrade the orchestration-engine runtime"
        relation = "newer"
    return (
        f"schema version {found_version} is {relation} than supported "
        f"{ConfigSchemaVersion}; {action}"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested tables merge, scalars replace."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        elif isinstance(value, Mapping):
            merged[key] = merge_config({}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile from ``config["profiles"]`` over ``config`` and validate."""

    name = profile.strip() if isinstance(profile, str) else ""
    if not name:
        return merge_config({}, config)

    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Check every section, field and cross-field rule; report all issues at once."""

    issues = _Issues()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    _reject_unknown_keys(root, {*_SECTIONS, "profiles"}, "", issues)

    normalized: dict[str, Any] = {}
    for section in _SECTIONS:
        raw = root.get(section)
        if raw is None:
            issues.add(section, "missing required section")
            continue
        section_obj = _as_object(raw, section, issues)
        if section_obj is not None:
            normalized[section] = _validate_section(section, section_obj, section, issues, partial=False)

    profiles_raw = root.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            normalized["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)

    _validate_cross_fields(normalized, issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return the normalized config or raise ``ConfigValidationError``."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking string values masked, safe to log or dump."""

    if not isinstance(config, Mapping):
        return {}
    return cast("dict[str, Any]", _redacted(config))


def _validate_section(
    section: str,
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    rules = _SECTIONS[section]
    _reject_unknown_keys(payload, set(rules), path, issues)

    out: dict[str, Any] = {}
    for field_name, validator in rules.items():
        field_path = _join(path, field_name)
        if field_name not in payload:
            if not partial and (section, field_name) not in _OPTIONAL_FIELDS:
                issues.add(field_path, "missing required field")
            continue
        parsed = validator(payload[field_name], field_path, issues)
        if parsed is not None:
            out[field_name] = parsed
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue

        allowed = set(_SECTIONS) - {"meta"}
        _reject_unknown_keys(profile_obj, allowed, profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(allowed):
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                overlay[section] = _validate_section(
                    section, section_obj, section_path, issues, partial=True
                )
        out[profile_name] = overlay
    return out


def _validate_cross_fields(normalized: Mapping[str, Any], issues: _Issues) -> None:
    commitment = normalized.get("commitment")
    if isinstance(commitment, Mapping):
        warning = commitment.get("budget_warning_ratio")
        hard_cap = commitment.get("budget_hard_cap_ratio")
        if isinstance(warning, float) and isinstance(hard_cap, float) and warning > hard_cap:
            issues.add(
                "commitment.budget_warning_ratio",
                "must be <= commitment.budget_hard_cap_ratio",
            )

    spiral = normalized.get("spiral")
    if isinstance(spiral, Mapping):
        tolerance = spiral.get("scope_creep_tolerance")
        critical = spiral.get("scope_creep_critical_extra")
        if isinstance(tolerance, int) and isinstance(critical, int) and critical <= tolerance:
            issues.add(
                "spiral.scope_creep_critical_extra",
                "must be > spiral.scope_creep_tolerance",
            )
        window = spiral.get("oscillation_window")
        if isinstance(window, int) and window < 2:
            issues.add("spiral.oscillation_window", "must be >= 2")
        factor = spiral.get("thrashing_time_factor")
        if isinstance(factor, float) and factor <= 1.0:
            issues.add("spiral.thrashing_time_factor", "must be > 1.0")


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _Issues) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _Issues,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _Issues,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    exclusive_minimum: bool = False,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None:
        if exclusive_minimum and parsed <= minimum:
            issues.add(path, f"must be > {minimum}")
            return None
        if parsed < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _Issues,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _Issues,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


_SECRET_MARKERS: Final[tuple[str, ...]] = ("secret", "token", "password", "api_key")


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>"
            if isinstance(item, str) and any(marker in key.lower() for marker in _SECRET_MARKERS)
            else _redacted(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "EDGE_KIND_VALUES",
    "PATH_FIELDS",
    "STRATEGY_VALUES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "EngineConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
