from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
import torch
from PIL import Image
from torch import Tensor

from camera_digits.config import Settings
from camera_digits.inference.engine import InferenceEngine
from camera_digits.inference.manifest import ModelManifest
from camera_digits.preprocess import preprocess_signature
from scripts import run_frames
from scripts.run_frames import ImageDirSource


class _RampModel:
    def eval(self) -> object:
        return self

    def __call__(self, x: Tensor) -> Tensor:
        return torch.arange(10, dtype=torch.float32).reshape(1, 10)


def _engine() -> InferenceEngine:
    man = ModelManifest(
        schema_version="v1",
        model_id="ramp",
        arch="lenet",
        n_classes=10,
        version="1.0.0",
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(),
    )
    return InferenceEngine(_RampModel(), man)


def _frame(p: Path, size: tuple[int, int] = (140, 140)) -> None:
    Image.new("RGB", size, (120, 120, 120)).save(p)


def test_image_dir_source_sorted_and_skips_unreadable(tmp_path: Path) -> None:
    _frame(tmp_path / "b.png")
    _frame(tmp_path / "a.jpg")
    (tmp_path / "c.png").write_bytes(b"not an image")
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
    src = ImageDirSource(tmp_path)
    assert [p.name for p in src.paths()] == ["a.jpg", "b.png", "c.png"]
    names = [name for name, _ in src]
    assert names == ["a.jpg", "b.png"]


def test_image_dir_source_single_file(tmp_path: Path) -> None:
    p = tmp_path / "one.png"
    _frame(p)
    frames = list(ImageDirSource(p))
    assert len(frames) == 1 and frames[0][1].size == (140, 140)


def test_main_returns_1_when_model_missing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CAMERA_DIGITS_CONFIG", (tmp_path / "missing.toml").as_posix())
    monkeypatch.setenv("PIPELINE__MODEL_DIR", (tmp_path / "models").as_posix())
    _frame(tmp_path / "a.png")
    assert run_frames.main([(tmp_path / "a.png").as_posix()]) == 1


def test_main_prints_ranked_results(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("CAMERA_DIGITS_CONFIG", (tmp_path / "missing.toml").as_posix())
    eng = _engine()

    def _load(_: Settings) -> InferenceEngine:
        return eng

    monkeypatch.setattr(InferenceEngine, "load", staticmethod(_load))
    frames = tmp_path / "frames"
    frames.mkdir()
    _frame(frames / "01.png")
    _frame(frames / "02.png", size=(3, 3))

    code = run_frames.main([frames.as_posix(), "--debug-ascii"])
    assert code == 0
    out = capsys.readouterr().out
    assert "first    9" in out and "second   8" in out and "third    7" in out
    assert "* * *" in out or ". . ." in out
