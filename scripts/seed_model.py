from __future__ import annotations

import argparse
import json
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from camera_digits.inference.manifest import ModelManifest
from camera_digits.logging import get_logger
from camera_digits.preprocess import preprocess_signature


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    model_path: Path
    to_dir: Path
    arch: str
    n_classes: int
    version: str


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    ap = argparse.ArgumentParser(description="Install a TorchScript classifier into a model dir")
    ap.add_argument("--model-id", required=True, help="Model id folder name")
    ap.add_argument("--model", required=True, help="Path to a TorchScript model.pt")
    ap.add_argument("--to-dir", default="./seed/digits/models", help="Destination models root")
    ap.add_argument("--arch", default="lenet5", help="Architecture label for the manifest")
    ap.add_argument("--n-classes", type=int, default=10, help="Number of output classes")
    ap.add_argument("--version", default="1.0.0", help="Model version for the manifest")
    a = ap.parse_args(argv)
    return SeedArgs(
        model_id=str(a.model_id),
        model_path=Path(str(a.model)),
        to_dir=Path(str(a.to_dir)),
        arch=str(a.arch),
        n_classes=int(a.n_classes),
        version=str(a.version),
    )


def build_manifest(args: SeedArgs) -> ModelManifest:
    return ModelManifest(
        schema_version="v1",
        model_id=args.model_id,
        arch=args.arch,
        n_classes=args.n_classes,
        version=args.version,
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(),
    )


def install_model(args: SeedArgs) -> Path:
    """Copy the model file and write a manifest stamped with the current preprocessing."""
    if not args.model_path.is_file():
        raise SystemExit(f"Model file not found: {args.model_path.as_posix()}")
    if args.n_classes < 2:
        raise SystemExit(f"n_classes must be >= 2, got {args.n_classes}")
    dst = args.to_dir / args.model_id
    dst.mkdir(parents=True, exist_ok=True)
    shutil.copy2(args.model_path, dst / "model.pt")
    man = build_manifest(args)
    (dst / "manifest.json").write_text(json.dumps(man.to_dict(), indent=2), encoding="utf-8")
    get_logger().info(
        "seed_model_installed model_id=%s src=%s dst=%s",
        args.model_id,
        args.model_path.as_posix(),
        dst.as_posix(),
    )
    return dst


def main(argv: list[str] | None = None) -> None:  # pragma: no cover - tiny glue
    from camera_digits.logging import init_logging

    init_logging()
    install_model(parse_args(argv))


if __name__ == "__main__":
    main()
