# utils/config_utils.py
import yaml
from typing import Any, Dict, List, Optional


def load_cfg(path: str, overrides: Optional[List[str]] = None) -> Dict:
    """Load YAML and apply CLI overrides like key=value and dotted keys."""
    with open(path, "r") as f:
        cfg = yaml.safe_load(f) or {}
    if overrides:
        apply_overrides(cfg, overrides)
    return cfg


def apply_overrides(cfg: Dict, overrides: List[str]) -> Dict:
    """In-place `a.b.c=value` overrides; values are parsed as YAML scalars/lists."""
    for kv in overrides:
        if "=" not in kv:
            raise ValueError(f"override must look like key=value, got '{kv}'")
        k, v = kv.split("=", 1)
        try:
            value = yaml.safe_load(v)
        except yaml.YAMLError:
            value = v
        cur = cfg
        parts = k.strip().split(".")
        for p in parts[:-1]:
            cur = cur.setdefault(p, {})
        cur[parts[-1]] = value
    return cfg


def cfg_get(cfg: Dict, dotted_key: str, default: Any = None) -> Any:
    cur: Any = cfg
    for p in dotted_key.split("."):
        if not isinstance(cur, dict) or p not in cur:
            return default
        cur = cur[p]
    return cur
