"""Queue manifest loading from YAML or JSON files."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

from orchestration_engine.domain.models import Budget, JSONValue, WorkItem

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})
_ITEM_FIELDS = frozenset(
    {"id", "name", "priority", "dependencies", "budget", "metadata", "alternates"}
)
_BUDGET_FIELDS = frozenset({"total_units", "wall_clock_seconds", "max_iterations_per_item"})


class ManifestError(ValueError):
    """Raised when a manifest cannot be read or does not describe a valid queue."""


@dataclass(frozen=True, slots=True)
class Manifest:
    items: tuple[WorkItem, ...]
    budget: Budget

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "budget": self.budget.to_dict(),
            "items": [
                {key: value for key, value in item.to_dict().items() if key in _ITEM_FIELDS}
                for item in self.items
            ],
        }


def load_manifest(path: str | Path) -> Manifest:
    """Load a queue manifest; YAML for ``.yaml``/``.yml`` files, JSON otherwise."""

    manifest_path = Path(path)
    try:
        with manifest_path.open("r", encoding="utf-8") as handle:
            if manifest_path.suffix.lower() in _YAML_SUFFIXES:
                payload = yaml.safe_load(handle)
            else:
                payload = json.load(handle)
    except OSError as exc:
        raise ManifestError(f"failed to read manifest {manifest_path.as_posix()}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"invalid YAML in {manifest_path.as_posix()}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestError(f"invalid JSON in {manifest_path.as_posix()}: {exc}") from exc

    return parse_manifest(payload, source=manifest_path.as_posix())


def parse_manifest(payload: object, *, source: str = "manifest") -> Manifest:
    """Validate an already-decoded manifest mapping."""

    if not isinstance(payload, Mapping):
        raise ManifestError(f"{source}: root must be an object")

    unknown = sorted(str(key) for key in payload if key not in {"budget", "items"})
    if unknown:
        raise ManifestError(f"{source}: unexpected fields: {unknown}")

    budget_raw = payload.get("budget")
    if not isinstance(budget_raw, Mapping):
        raise ManifestError(f"{source}.budget: must be an object")
    _reject_unknown(budget_raw, _BUDGET_FIELDS, f"{source}.budget")
    try:
        budget = Budget.from_dict(budget_raw)
    except ValueError as exc:
        raise ManifestError(f"{source}.budget: {exc}") from exc

    items_raw = payload.get("items")
    if not isinstance(items_raw, Sequence) or isinstance(items_raw, (str, bytes, bytearray)):
        raise ManifestError(f"{source}.items: must be a list")

    items: list[WorkItem] = []
    seen: set[str] = set()
    for index, record in enumerate(items_raw):
        entry_path = f"{source}.items[{index}]"
        if not isinstance(record, Mapping):
            raise ManifestError(f"{entry_path}: must be an object")
        _reject_unknown(record, _ITEM_FIELDS, entry_path)
        if "id" not in record:
            raise ManifestError(f"{entry_path}: missing required field 'id'")
        try:
            item = WorkItem.from_dict(record)
        except (TypeError, ValueError) as exc:
            raise ManifestError(f"{entry_path}: {exc}") from exc
        if item.id in seen:
            raise ManifestError(f"{entry_path}: duplicate work item id {item.id!r}")
        seen.add(item.id)
        items.append(item)

    return Manifest(items=tuple(items), budget=budget)


def _reject_unknown(record: Mapping[object, object], allowed: frozenset[str], path: str) -> None:
    unknown = sorted(str(key) for key in record if key not in allowed)
    if unknown:
        raise ManifestError(f"{path}: unexpected fields: {unknown}")


__all__ = ["Manifest", "ManifestError", "load_manifest", "parse_manifest"]
