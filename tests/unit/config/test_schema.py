"""Unit tests for config schema validation, profiles, and typed settings."""

from __future__ import annotations

from typing import Any

import pytest

from orchestration_engine.config import (
    ConfigValidationError,
    EngineSettings,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)
from orchestration_engine.config.schema import migration_guidance
from orchestration_engine.domain.models import Budget, EdgeKind
from orchestration_engine.planning.resolver import ResolutionStrategy


def _with(path: str, value: object) -> dict[str, Any]:
    config: dict[str, Any] = dict(default_config())
    section, field_name = path.split(".")
    config[section] = {**config[section], field_name: value}
    return config


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


@pytest.mark.unit
def test_defaults_are_valid_and_stable() -> None:
    first = validate_config(default_config())
    second = validate_config(default_config())

    assert first.is_valid
    assert first.config == second.config
    assert first.config is not None
    assert first.config["budget"] == {"total_units": 100.0, "max_iterations_per_item": 5}


@pytest.mark.unit
def test_missing_section_field_and_unknown_keys_are_reported() -> None:
    config: dict[str, Any] = dict(default_config())
    del config["scheduler"]
    config["budget"] = {"total_units": 10.0, "extra": 1}
    config["plugins"] = {}

    paths = _issue_paths(config)

    assert "scheduler" in paths
    assert "plugins" in paths
    assert "budget.extra" in paths
    assert "budget.max_iterations_per_item" in paths
    assert "budget.wall_clock_seconds" not in paths


@pytest.mark.unit
@pytest.mark.parametrize(
    ("path", "value", "message"),
    [
        ("resolver.strategy", "topo", "invalid value 'topo'"),
        ("budget.total_units", 0, "must be > 0.0"),
        ("budget.max_iterations_per_item", True, "expected integer, got bool"),
        ("scheduler.max_in_flight", 0, "must be >= 1"),
        ("commitment.time_reduced_ratio", 1.5, "must be <= 1.0"),
        ("observability.log_dir", "  ", "must not be empty"),
        ("observability.log_to_stdout", "yes", "expected boolean, got str"),
    ],
)
def test_field_level_errors(path: str, value: object, message: str) -> None:
    result = validate_config(_with(path, value))

    assert not result.is_valid
    assert result.config is None
    assert [issue.path for issue in result.issues] == [path]
    assert message in result.issues[0].message


@pytest.mark.unit
def test_cross_field_errors() -> None:
    config = merge_config(
        default_config(),
        {
            "commitment": {"budget_warning_ratio": 0.9, "budget_hard_cap_ratio": 0.6},
            "spiral": {
                "scope_creep_tolerance": 4,
                "scope_creep_critical_extra": 4,
                "oscillation_window": 1,
                "thrashing_time_factor": 1.0,
            },
        },
    )

    with pytest.raises(ConfigValidationError) as exc_info:
        assert_valid_config(config)

    assert [issue.path for issue in exc_info.value.issues] == [
        "commitment.budget_warning_ratio",
        "spiral.scope_creep_critical_extra",
        "spiral.oscillation_window",
        "spiral.thrashing_time_factor",
    ]
    assert "- commitment.budget_warning_ratio:" in str(exc_info.value)


@pytest.mark.unit
def test_schema_version_mismatch_carries_migration_guidance() -> None:
    result = validate_config(_with("meta.schema_version", 2))

    assert result.issues[0].path == "meta.schema_version"
    assert "newer than supported" in result.issues[0].message
    assert "older than supported" in migration_guidance(0)
    assert migration_guidance(1) == "schema version is current"


@pytest.mark.unit
def test_values_are_normalized() -> None:
    config = merge_config(
        default_config(),
        {
            "observability": {"log_level": "debug"},
            "resolver": {"edge_kinds": "explicit, temporal,explicit"},
            "budget": {"total_units": 40},
        },
    )

    valid = assert_valid_config(config)

    assert valid["observability"]["log_level"] == "DEBUG"
    assert valid["resolver"]["edge_kinds"] == ["explicit", "temporal"]
    assert valid["budget"]["total_units"] == 40.0
    assert isinstance(valid["budget"]["total_units"], float)


@pytest.mark.unit
def test_profile_names_and_overlay_sections_are_validated() -> None:
    config = default_config()
    config["profiles"] = {
        "Bad Name": {},
        "fast": {"meta": {"schema_version": 1}, "scheduler": {"max_in_flight": 0}},
    }

    paths = _issue_paths(config)

    assert paths == ["profiles.Bad Name", "profiles.fast.meta", "profiles.fast.scheduler.max_in_flight"]


@pytest.mark.unit
def test_builtin_profiles_overlay_defaults() -> None:
    strict = apply_profile_overlay(default_config(), "strict")
    exploration = apply_profile_overlay(default_config(), "exploration")
    untouched = apply_profile_overlay(default_config(), None)

    assert strict["budget"]["max_iterations_per_item"] == 3
    assert strict["commitment"]["critical_spirals_for_force"] == 1
    assert strict["budget"]["total_units"] == 100.0
    assert exploration["resolver"]["strategy"] == "break_weakest"
    assert exploration["scheduler"]["max_in_flight"] == 4
    assert untouched == dict(default_config())


@pytest.mark.unit
def test_unknown_profile_raises() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        apply_profile_overlay(default_config(), "nightly")


@pytest.mark.unit
def test_redaction_masks_secret_strings_only() -> None:
    redacted = redact_config(
        {
            "observability": {"redact_secrets": True, "log_level": "INFO"},
            "executor": {"api_key": "abc", "nested": [{"auth_token": "xyz"}]},
            "db_password": "hunter2",
        }
    )

    assert redacted == {
        "db_password": "<redacted>",
        "executor": {"api_key": "<redacted>", "nested": [{"auth_token": "<redacted>"}]},
        "observability": {"log_level": "INFO", "redact_secrets": True},
    }
    assert redact_config(["not", "a", "mapping"]) == {}


@pytest.mark.unit
def test_engine_settings_from_config() -> None:
    config = merge_config(
        default_config(),
        {
            "resolver": {"strategy": "merge_cycle", "edge_kinds": ["explicit", "data_flow"]},
            "budget": {"total_units": 12, "wall_clock_seconds": 30},
            "scheduler": {"max_in_flight": 3},
            "commitment": {"critical_spirals_for_force": 1},
            "spiral": {"oscillation_window": 4},
            "observability": {"log_dir": "var/log", "log_level": "warning"},
        },
    )

    settings = EngineSettings.from_config(config)

    assert settings.strategy is ResolutionStrategy.MERGE_CYCLE
    assert settings.edge_kinds == (EdgeKind.EXPLICIT, EdgeKind.DATA_FLOW)
    assert settings.budget == Budget(total_units=12.0, wall_clock_seconds=30.0)
    assert settings.scheduler.max_in_flight == 3
    assert settings.commitment.critical_spirals_for_force == 1
    assert settings.spiral.oscillation_window == 4
    assert settings.observability_mapping() == {
        "log_level": "WARNING",
        "log_dir": "var/log",
        "log_to_stdout": True,
        "redact_secrets": True,
    }


@pytest.mark.unit
def test_engine_settings_defaults_match_builtin_config() -> None:
    assert EngineSettings.defaults() == EngineSettings()

    with pytest.raises(ConfigValidationError):
        EngineSettings.from_config({"meta": {"schema_version": 1}})
