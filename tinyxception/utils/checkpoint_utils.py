"""
Loading and saving TinyXception weights.

Provides:
- resolve_weights_path(path, default_name): file path as-is, or <dir>/<default_name>.{pt,pth,bin}
- load_weights(path): named weight map from .pt/.pth/.ckpt, flat float32 tensor from .bin
- load_weight_map_from_url(url, model_dir=None): download + cache via torch.hub
- save_weight_map(path, weight_map) / save_flat_weights(path, tensors)

The .pt loader is permissive about the outer container: it accepts the weight
map itself, or a dict holding it under `weight_map`, `state_dict`,
`model_state` or `model`.
"""

import os
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import numpy as np
import torch
from loguru import logger

WEIGHT_MAP_SUFFIXES = (".pt", ".pth", ".ckpt")
FLAT_SUFFIXES = (".bin",)
_CONTAINER_KEYS = ("weight_map", "state_dict", "model_state", "model")


def _pick(*dicts, keys=None) -> Tuple[Any, Optional[str]]:
    """Helper: find first available key in given dicts. Returns (value, key_name) or (None, None)."""
    if keys is None:
        keys = []
    for d in dicts:
        if not isinstance(d, dict):
            continue
        for k in keys:
            if k in d:
                return d[k], k
    return None, None


def resolve_weights_path(path: str, default_name: str) -> str:
    """Resolve a weight file; directories are searched for `default_name` with a known suffix."""
    if os.path.isdir(path):
        for suffix in WEIGHT_MAP_SUFFIXES + FLAT_SUFFIXES:
            candidate = os.path.join(path, default_name + suffix)
            if os.path.isfile(candidate):
                logger.debug("Resolved weights for '{}' in {} -> {}", default_name, path, candidate)
                return candidate
        logger.critical("No weights named '{}' found in directory: {}", default_name, path)
        raise FileNotFoundError(f"no '{default_name}' weights (.pt/.pth/.ckpt/.bin) in {path}")

    if not os.path.isfile(path):
        logger.critical("Weights not found at path: {}", path)
        raise FileNotFoundError(f"Weights not found: {path}")
    return path


def _as_weight_map(ckpt: Any, source: str) -> Dict[str, torch.Tensor]:
    weight_map, key = _pick(ckpt, keys=list(_CONTAINER_KEYS))
    if weight_map is None:
        weight_map = ckpt
    else:
        logger.debug("Using weight map stored under key '{}' in {}", key, source)

    if not isinstance(weight_map, dict) or not all(isinstance(v, torch.Tensor) for v in weight_map.values()):
        logger.error("{} does not contain a mapping of names to tensors", source)
        raise ValueError(f"{source} does not contain a weight map (dict of str -> tensor)")
    return weight_map


def load_weights(path: str, map_location: Union[str, torch.device] = "cpu") -> Union[Dict[str, torch.Tensor], torch.Tensor]:
    """
    Load weights from disk.

    Returns a named weight map for torch files and a 1-D float32 tensor for
    raw .bin buffers.
    """
    logger.info("Loading weights from: {}", path)
    if not os.path.exists(path):
        logger.critical("Weights not found at path: {}", path)
        raise FileNotFoundError(f"Weights not found: {path}")

    suffix = os.path.splitext(path)[1].lower()
    if suffix in FLAT_SUFFIXES:
        flat = torch.from_numpy(np.fromfile(path, dtype="<f4"))
        logger.info("Loaded flat weight buffer: {} values", flat.numel())
        return flat

    if suffix not in WEIGHT_MAP_SUFFIXES:
        logger.warning("Unrecognized weight file suffix '{}'; trying torch.load", suffix)

    try:
        ckpt = torch.load(path, map_location=map_location, weights_only=True)
    except Exception as e:
        logger.critical("Failed to load weight file {}: {}", path, e)
        raise

    weight_map = _as_weight_map(ckpt, path)
    logger.info("Loaded weight map: {} tensors", len(weight_map))
    return weight_map


def load_weight_map_from_url(
    url: str,
    model_dir: Optional[str] = None,
    map_location: Union[str, torch.device] = "cpu",
    progress: bool = True,
) -> Dict[str, torch.Tensor]:
    """Download a .pt weight map once; later calls reuse the torch hub cache."""
    logger.info("Fetching weights from {} (cache dir: {})", url, model_dir or torch.hub.get_dir())
    ckpt = torch.hub.load_state_dict_from_url(
        url, model_dir=model_dir, map_location=map_location, progress=progress, weights_only=True)
    return _as_weight_map(ckpt, url)


def save_weight_map(path: str, weight_map: Mapping[str, torch.Tensor]) -> None:
    """torch.save a {name: tensor} map (tensors are detached and moved to CPU)."""
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    torch.save({k: v.detach().cpu().contiguous() for k, v in weight_map.items()}, path)
    logger.info("Saved weight map ({} tensors) to {}", len(weight_map), path)


def save_flat_weights(path: str, tensors: Iterable[torch.Tensor]) -> int:
    """Write tensors back to back as raw little-endian float32. Returns the value count."""
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    count = 0
    with open(path, "wb") as f:
        for t in tensors:
            arr = t.detach().cpu().to(torch.float32).reshape(-1).numpy().astype("<f4", copy=False)
            arr.tofile(f)
            count += arr.size
    logger.info("Wrote {} float32 values to {}", count, path)
    return count
