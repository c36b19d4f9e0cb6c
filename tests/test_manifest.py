from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from camera_digits.inference.manifest import ModelManifest


def _valid() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "mnist_traced_v1",
        "arch": "lenet5",
        "n_classes": 10,
        "version": "1.0.0",
        "created_at": datetime.now(UTC).isoformat(),
        "preprocess_hash": "v1/centercrop5+luma+bicubic28+rot90+mnistnorm",
    }


def test_manifest_from_dict_valid() -> None:
    man = ModelManifest.from_dict(_valid())
    assert man.model_id == "mnist_traced_v1"
    assert man.n_classes == 10


def test_manifest_missing_field_raises() -> None:
    bad = _valid()
    del bad["model_id"]
    with pytest.raises(ValueError):
        _ = ModelManifest.from_dict(bad)


def test_manifest_unknown_schema_raises() -> None:
    bad = _valid()
    bad["schema_version"] = "v9"
    with pytest.raises(ValueError):
        _ = ModelManifest.from_dict(bad)


def test_manifest_too_few_classes_raises() -> None:
    bad = _valid()
    bad["n_classes"] = 1
    with pytest.raises(ValueError):
        _ = ModelManifest.from_dict(bad)


def test_manifest_round_trips_through_file(tmp_path: Path) -> None:
    man = ModelManifest.from_dict(_valid())
    p = tmp_path / "manifest.json"
    p.write_text(json.dumps(man.to_dict()), encoding="utf-8")
    assert ModelManifest.from_path(p) == man


def test_manifest_from_json_requires_object() -> None:
    with pytest.raises(ValueError):
        _ = ModelManifest.from_json('"just a string"')
