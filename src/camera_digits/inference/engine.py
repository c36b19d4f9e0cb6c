from __future__ import annotations

import pickle
import threading
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..errors import InferenceError, LoadError
from ..logging import get_logger
from ..orientation import GRID_SIDE, GRID_SIZE
from ..preprocess import preprocess_signature
from .manifest import ModelManifest

_MANIFEST_NAME: Final[str] = "manifest.json"
_MODEL_NAME: Final[str] = "model.pt"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)
_INFER_ERRORS: Final[tuple[type[BaseException], ...]] = (RuntimeError, ValueError, TypeError)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...


class InferenceEngine:
    """Owned handle to a loaded TorchScript digit classifier.

    Built once at startup with ``InferenceEngine.load``; a failed load is
    fatal to the caller. ``infer`` returns raw per-class scores with no
    probability normalization.
    """

    def __init__(self, model: TorchModel, manifest: ModelManifest) -> None:
        self._model = model
        self._manifest = manifest
        self._model_lock = threading.Lock()
        model.eval()

    @classmethod
    def load(cls, settings: Settings) -> InferenceEngine:
        model_dir = settings.pipeline.model_dir / settings.pipeline.active_model
        manifest_path = model_dir / _MANIFEST_NAME
        model_path = model_dir / _MODEL_NAME
        if not (manifest_path.exists() and model_path.exists()):
            raise LoadError(f"model artifacts not found under {model_dir.as_posix()}")
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError) as exc:
            raise LoadError(f"invalid manifest: {exc}") from None
        if manifest.preprocess_hash != preprocess_signature():
            raise LoadError("manifest preprocess signature does not match this pipeline")
        try:
            model = _load_script_module(model_path)
        except _LOAD_ERRORS as exc:
            raise LoadError(f"failed to load model: {exc}") from None
        if settings.app.threads > 0:
            torch.set_num_threads(settings.app.threads)
        get_logger().info(
            "model_loaded model_id=%s arch=%s n_classes=%d",
            manifest.model_id,
            manifest.arch,
            manifest.n_classes,
        )
        return cls(model, manifest)

    @property
    def manifest(self) -> ModelManifest:
        return self._manifest

    @property
    def model_id(self) -> str:
        return self._manifest.model_id

    @property
    def n_classes(self) -> int:
        return int(self._manifest.n_classes)

    def infer(self, tensor: Tensor) -> tuple[float, ...]:
        batch = _as_batch(tensor)
        try:
            with self._model_lock, torch.no_grad():
                out = self._model(batch)
        except _INFER_ERRORS as exc:
            raise InferenceError(f"model call failed: {exc}") from None
        if not torch.is_tensor(out):
            raise InferenceError("model returned a non-tensor output")
        flat = out.detach().to(dtype=torch.float32).reshape(-1)
        n = int(flat.shape[0])
        if n != self.n_classes:
            raise InferenceError(f"model returned {n} scores, expected {self.n_classes}")
        return tuple(float(x) for x in flat.tolist())


def _as_batch(x: Tensor) -> Tensor:
    if x.numel() != GRID_SIZE:
        raise InferenceError(f"input must hold 784 values, got {x.numel()}")
    return x.reshape(1, 1, GRID_SIDE, GRID_SIDE).to(dtype=torch.float32).contiguous()


if TYPE_CHECKING:

    def _load_script_module(path: Path) -> TorchModel: ...
else:

    def _load_script_module(path: Path) -> TorchModel:
        return torch.jit.load(path.as_posix(), map_location=torch.device("cpu"))
