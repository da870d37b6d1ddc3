"""Unit tests for planning.manifest."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from orchestration_engine.domain.models import Budget
from orchestration_engine.planning.manifest import ManifestError, load_manifest, parse_manifest

_YAML_MANIFEST = """\
budget:
  total_units: 12
  max_iterations_per_item: 4
items:
  - id: fetch
    priority: 2
    budget: 3
  - id: build
    name: Build wheel
    dependencies: [fetch]
    budget: 5
    metadata:
      produces: [wheel]
    alternates: [build-lite]
  - id: build-lite
    budget: 2
"""


@pytest.mark.unit
def test_load_yaml_manifest(tmp_path: Path) -> None:
    path = tmp_path / "queue.yaml"
    path.write_text(_YAML_MANIFEST, encoding="utf-8")

    manifest = load_manifest(path)

    assert manifest.budget == Budget(total_units=12.0, max_iterations_per_item=4)
    assert [item.id for item in manifest.items] == ["fetch", "build", "build-lite"]
    build = manifest.items[1]
    assert build.name == "Build wheel"
    assert build.dependencies == ("fetch",)
    assert build.metadata == {"produces": ["wheel"]}
    assert build.alternates == ("build-lite",)
    assert manifest.items[0].name == "fetch"


@pytest.mark.unit
def test_load_json_manifest_round_trips(tmp_path: Path) -> None:
    payload = {
        "budget": {"total_units": 5, "wall_clock_seconds": 30},
        "items": [{"id": "only", "budget": 1.5}],
    }
    path = tmp_path / "queue.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    manifest = load_manifest(path)

    assert manifest.budget.wall_clock_seconds == 30.0
    assert parse_manifest(manifest.to_dict()) == manifest


@pytest.mark.unit
@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ([], "root must be an object"),
        ({"items": []}, "budget: must be an object"),
        ({"budget": {"total_units": 1}, "items": [], "extra": 1}, "unexpected fields"),
        ({"budget": {"total_units": 0}, "items": []}, "Budget.total_units"),
        ({"budget": {"total_units": 1}, "items": "a"}, "items: must be a list"),
        ({"budget": {"total_units": 1}, "items": [{"name": "x"}]}, "missing required field 'id'"),
        ({"budget": {"total_units": 1}, "items": [{"id": "a", "owner": "x"}]}, "unexpected fields"),
        ({"budget": {"total_units": 1}, "items": [{"id": "a"}, {"id": "a"}]}, "duplicate"),
        ({"budget": {"total_units": 1}, "items": [{"id": "a", "priority": "hi"}]}, "priority"),
    ],
)
def test_parse_manifest_rejects_invalid_payloads(payload: object, message: str) -> None:
    with pytest.raises(ManifestError, match=message):
        parse_manifest(payload)


@pytest.mark.unit
def test_load_manifest_reports_read_and_decode_errors(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="failed to read manifest"):
        load_manifest(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yml"
    broken.write_text("items: [unclosed", encoding="utf-8")
    with pytest.raises(ManifestError, match="invalid YAML"):
        load_manifest(broken)

    bad_json = tmp_path / "broken.json"
    bad_json.write_text("{", encoding="utf-8")
    with pytest.raises(ManifestError, match="invalid JSON"):
        load_manifest(bad_json)
