"""
Effective configuration loading.

Layers, lowest to highest: built-in defaults, ``orchestration.toml``, the
selected profile overlay, ``ORCH_*`` environment variables, then dotted CLI
overrides. The result is validated after the file layer and again at the end,
and path fields are resolved against the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from orchestration_engine.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "orchestration.toml"
ENV_PREFIX: Final[str] = "ORCH_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Fields absent from the defaults still need an environment binding.
_OPTIONAL_ENV_FIELDS: Final[dict[tuple[str, str], type]] = {("budget", "wall_clock_seconds"): float}


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective configuration mapping.

    Without ``config_path`` a missing ``./orchestration.toml`` is fine; an
    explicit path that does not exist raises ``ConfigLoadError``.
    """

    explicit = config_path is not None
    path = Path(config_path or Path.cwd() / DEFAULT_CONFIG_FILE).expanduser().resolve()
    env = os.environ if environ is None else environ
    cli = dict(cli_overrides or {})

    config = assert_valid_config(merge_config(default_config(), _read_toml(path, explicit)))

    selected = _selected_profile(profile, cli, env)
    if selected:
        config = apply_profile_overlay(config, selected)

    config = merge_config(config, env_overrides(env))
    config = merge_config(config, _nest_dotted(cli))
    return normalize_paths(assert_valid_config(config), base_dir=path.parent)


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``ORCH_<SECTION>_<FIELD>`` variables into a nested overlay.

    Values are coerced to the type of the field's built-in default; list fields
    take comma-separated text.
    """

    overlay: dict[str, Any] = {}
    for (section, field_name), kind in sorted(_env_fields().items()):
        name = f"{ENV_PREFIX}{section}_{field_name}".upper()
        if name in environ:
            overlay.setdefault(section, {})[field_name] = _coerce(environ[name], kind, name)
    return overlay


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields against ``base_dir`` as POSIX strings."""

    resolved = merge_config({}, config)
    for section, field_name in PATH_FIELDS:
        holder = resolved.get(section)
        if isinstance(holder, dict) and isinstance(holder.get(field_name), str):
            candidate = Path(os.path.expandvars(holder[field_name])).expanduser()
            if not candidate.is_absolute():
                candidate = base_dir / candidate
            holder[field_name] = Path(os.path.normpath(candidate)).as_posix()
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON with secrets redacted."""

    return json.dumps(redact_config(config), sort_keys=True, separators=(",", ":"))


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"cannot read {path}: {exc}") from exc


def _selected_profile(
    explicit: str | None, cli: Mapping[str, object], environ: Mapping[str, str]
) -> str | None:
    if explicit is not None:
        return explicit.strip() or None
    if "profile" in cli:
        chosen = cli["profile"]
        if not isinstance(chosen, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
        return chosen.strip() or None
    return (environ.get(PROFILE_ENV) or "").strip() or None


def _env_fields() -> dict[tuple[str, str], type]:
    fields: dict[tuple[str, str], type] = dict(_OPTIONAL_ENV_FIELDS)
    for section, values in default_config().items():
        if section in ("meta", "profiles") or not isinstance(values, Mapping):
            continue
        for field_name, default in values.items():
            fields[(section, field_name)] = type(default)
    return fields


def _coerce(raw: str, kind: type, name: str) -> object:
    text = raw.strip()
    if kind is bool:
        if text.lower() in _TRUE_WORDS:
            return True
        if text.lower() in _FALSE_WORDS:
            return False
        raise ConfigLoadError(f"{name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if kind is list:
        return [part.strip() for part in text.split(",") if part.strip()]
    if kind is int:
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} must be an integer") from exc
    if kind is float:
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} must be a number") from exc
    return text


def _nest_dotted(cli: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(cli):
        if key == "profile":
            continue
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        cursor = nested
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
            if not isinstance(cursor, dict):
                raise ConfigLoadError(f"CLI override {key!r} conflicts with a scalar override")
        cursor[parts[-1]] = cli[key]
    return nested


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "ConfigLoadError",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
