from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/camera_digits.toml")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class PipelineConfig:
    model_dir: Path = Path("/data/digits/models")
    active_model: str = "mnist_traced_v1"
    invert: bool = False
    debug_ascii: bool = False
    render_stages: bool = True
    visualize_scale: int = 4
    visualize_max_kb: int = 64
    max_frame_mb: int = 8
    max_frame_side_px: int = 4096


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    pipeline: PipelineConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("CAMERA_DIGITS_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def default(cls) -> Settings:
        return cls(app=AppConfig(), pipeline=PipelineConfig(), security=SecurityConfig())

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            pipeline=_load_pipeline_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            pipeline=_merge_pipeline(base.pipeline, _toml_table(raw, "pipeline")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _env_bool(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt)))
    return a


def _load_pipeline_from_env() -> PipelineConfig:
    p = PipelineConfig()
    md = os.getenv("PIPELINE__MODEL_DIR")
    am = os.getenv("PIPELINE__ACTIVE_MODEL")
    inv = os.getenv("PIPELINE__INVERT")
    dbg = os.getenv("PIPELINE__DEBUG_ASCII")
    rs = os.getenv("PIPELINE__RENDER_STAGES")
    vs = os.getenv("PIPELINE__VISUALIZE_SCALE")
    vk = os.getenv("PIPELINE__VISUALIZE_MAX_KB")
    mb = os.getenv("PIPELINE__MAX_FRAME_MB")
    mx = os.getenv("PIPELINE__MAX_FRAME_SIDE_PX")
    if md:
        p = replace(p, model_dir=Path(md))
    if am:
        p = replace(p, active_model=am)
    if inv is not None:
        p = replace(p, invert=_env_bool(inv))
    if dbg is not None:
        p = replace(p, debug_ascii=_env_bool(dbg))
    if rs is not None:
        p = replace(p, render_stages=_env_bool(rs))
    if vs is not None:
        p = replace(p, visualize_scale=int(vs))
    if vk is not None:
        p = replace(p, visualize_max_kb=int(vk))
    if mb is not None:
        p = replace(p, max_frame_mb=int(mb))
    if mx is not None:
        p = replace(p, max_frame_side_px=int(mx))
    return p


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"]))))
    return out


def _merge_pipeline(base: PipelineConfig, data: dict[str, object]) -> PipelineConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "invert" in data:
        out = replace(out, invert=bool(data["invert"]))
    if "debug_ascii" in data:
        out = replace(out, debug_ascii=bool(data["debug_ascii"]))
    if "render_stages" in data:
        out = replace(out, render_stages=bool(data["render_stages"]))
    if "visualize_scale" in data:
        out = replace(out, visualize_scale=int(str(data["visualize_scale"])))
    if "visualize_max_kb" in data:
        out = replace(out, visualize_max_kb=int(str(data["visualize_max_kb"])))
    if "max_frame_mb" in data:
        out = replace(out, max_frame_mb=int(str(data["max_frame_mb"])))
    if "max_frame_side_px" in data:
        out = replace(out, max_frame_side_px=int(str(data["max_frame_side_px"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    coerced = _coerce_security(data)
    if "api_key" in coerced:
        out = replace(out, api_key=str(coerced["api_key"]))
    return out


def _coerce_security(inp: dict[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    api_key_val = inp.get("api_key")
    if isinstance(api_key_val, str):
        out["api_key"] = api_key_val
    enabled = inp.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out["api_key"] = ""
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.pipeline.max_frame_mb) * 1024 * 1024,
            max_side_px=int(s.pipeline.max_frame_side_px),
        )
