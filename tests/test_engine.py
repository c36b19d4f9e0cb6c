from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
import torch
from torch import Tensor

from camera_digits.config import AppConfig, PipelineConfig, SecurityConfig, Settings
from camera_digits.errors import ErrorCode, InferenceError, LoadError
from camera_digits.inference import engine as engine_mod
from camera_digits.inference.engine import InferenceEngine
from camera_digits.inference.manifest import ModelManifest
from camera_digits.preprocess import preprocess_signature


class _Ramp(torch.nn.Module):
    def forward(self, x: Tensor) -> Tensor:
        flat = x.reshape(x.shape[0], -1)
        return flat[:, :10] * 0.0 + torch.arange(10, dtype=torch.float32)


class _Fixed:
    def __init__(self, out: Tensor) -> None:
        self.out = out

    def eval(self) -> object:
        return self

    def __call__(self, x: Tensor) -> Tensor:
        return self.out


class _Raises:
    def eval(self) -> object:
        return self

    def __call__(self, x: Tensor) -> Tensor:
        raise RuntimeError("device lost")


def _manifest(n_classes: int = 10) -> ModelManifest:
    return ModelManifest(
        schema_version="v1",
        model_id="m1",
        arch="lenet",
        n_classes=n_classes,
        version="1.0.0",
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(),
    )


def _settings(root: Path, active: str = "m1") -> Settings:
    return Settings(
        app=AppConfig(),
        pipeline=PipelineConfig(model_dir=root, active_model=active),
        security=SecurityConfig(),
    )


def _write_artifacts(root: Path, manifest: dict[str, object], model: bool = True) -> Path:
    d = root / "m1"
    d.mkdir(parents=True, exist_ok=True)
    (d / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    if model:
        traced = torch.jit.trace(_Ramp(), torch.zeros((1, 1, 28, 28), dtype=torch.float32))
        traced.save((d / "model.pt").as_posix())
    return d


def test_load_traced_module_and_infer(tmp_path: Path) -> None:
    _write_artifacts(tmp_path, _manifest().to_dict())
    eng = InferenceEngine.load(_settings(tmp_path))
    assert eng.model_id == "m1" and eng.n_classes == 10
    scores = eng.infer(torch.zeros((1, 1, 28, 28), dtype=torch.float32))
    assert scores == tuple(float(i) for i in range(10))


def test_infer_accepts_flat_buffer(tmp_path: Path) -> None:
    eng = InferenceEngine(_Fixed(torch.ones((1, 10))), _manifest())
    assert len(eng.infer(torch.zeros(784))) == 10


def test_load_missing_artifacts_raises(tmp_path: Path) -> None:
    with pytest.raises(LoadError) as ei:
        _ = InferenceEngine.load(_settings(tmp_path))
    assert ei.value.code is ErrorCode.model_load_failed


def test_load_signature_mismatch_raises(tmp_path: Path) -> None:
    man = _manifest().to_dict()
    man["preprocess_hash"] = "v0/other"
    _write_artifacts(tmp_path, man)
    with pytest.raises(LoadError) as ei:
        _ = InferenceEngine.load(_settings(tmp_path))
    assert "signature" in ei.value.message


def test_load_invalid_manifest_raises(tmp_path: Path) -> None:
    d = _write_artifacts(tmp_path, _manifest().to_dict())
    (d / "manifest.json").write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(LoadError):
        _ = InferenceEngine.load(_settings(tmp_path))


def test_load_corrupt_model_raises(tmp_path: Path) -> None:
    d = _write_artifacts(tmp_path, _manifest().to_dict(), model=False)
    (d / "model.pt").write_bytes(b"not a torchscript archive")
    with pytest.raises(LoadError):
        _ = InferenceEngine.load(_settings(tmp_path))


def test_load_applies_thread_setting(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_artifacts(tmp_path, _manifest().to_dict(), model=False)
    (tmp_path / "m1" / "model.pt").write_bytes(b"x")
    calls: list[int] = []

    def _fake_load(path: Path) -> _Fixed:
        return _Fixed(torch.zeros((1, 10)))

    monkeypatch.setattr(engine_mod, "_load_script_module", _fake_load, raising=True)
    monkeypatch.setattr(torch, "set_num_threads", calls.append, raising=True)
    s = _settings(tmp_path)
    s = Settings(app=AppConfig(threads=2), pipeline=s.pipeline, security=s.security)
    _ = InferenceEngine.load(s)
    assert calls == [2]


def test_infer_model_failure_raises_inference_error() -> None:
    eng = InferenceEngine(_Raises(), _manifest())
    with pytest.raises(InferenceError) as ei:
        _ = eng.infer(torch.zeros((1, 1, 28, 28)))
    assert ei.value.code is ErrorCode.inference_failed


def test_infer_partial_output_raises() -> None:
    eng = InferenceEngine(_Fixed(torch.zeros((1, 4))), _manifest())
    with pytest.raises(InferenceError):
        _ = eng.infer(torch.zeros((1, 1, 28, 28)))


def test_infer_malformed_buffer_raises() -> None:
    eng = InferenceEngine(_Fixed(torch.zeros((1, 10))), _manifest())
    with pytest.raises(InferenceError):
        _ = eng.infer(torch.zeros((1, 1, 14, 14)))
