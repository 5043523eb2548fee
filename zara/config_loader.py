from __future__ import annotations
import os
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "config/default.yaml"

# env var -> (section, key, cast)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable]] = {
    "ZARA_TICK_SECONDS": ("estimator", "tick_seconds", float),
    "ZARA_STORE": ("store", "kind", str),
    "ZARA_SQLITE_PATH": ("store", "path", str),
}


def load_config(config_path: Optional[str] = None) -> dict:
    load_dotenv()
    path = config_path or os.environ.get("ZARA_CONFIG", DEFAULT_CONFIG_PATH)
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    cfg = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return apply_env_overrides(cfg)


def apply_env_overrides(cfg: dict, environ: Optional[Mapping[str, str]] = None) -> dict:
    env = os.environ if environ is None else environ

    for var, (section, key, cast) in ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        section_cfg = cfg.get(section, {}) or {}
        section_cfg[key] = cast(value)
        cfg[section] = section_cfg

    if env.get("LOG_LEVEL"):
        cfg["log_level"] = env["LOG_LEVEL"]
    return cfg
