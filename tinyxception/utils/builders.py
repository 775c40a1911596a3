# utils/builders.py
from typing import Any, Dict, Optional, Tuple, Union

import torch
from loguru import logger

from ..models import REGISTRY as MODEL_REG


def _resolve_model_cfg(model_cfg: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """(registry name, constructor kwargs) from either cfg style.

    {"name": "tiny_xception", "params": {"num_main_blocks": 2}}
    {"model": "tiny_xception", "model_args": {"num_main_blocks": 2}}
    """
    if "name" in model_cfg:
        name, args = model_cfg["name"], model_cfg.get("params")
    else:
        name, args = model_cfg.get("model") or model_cfg.get("model_name"), model_cfg.get("model_args")

    if name is None:
        logger.critical("Model cfg needs a 'name' (or 'model') entry. Received: {}", model_cfg)
        raise ValueError("model cfg needs a 'name' (or 'model') entry")
    if name not in MODEL_REG:
        logger.error("Unknown model '{}'. Registered: {}", name, sorted(MODEL_REG))
        raise KeyError(f"Unknown model: {name}")
    return name, dict(args or {})


def build_model_from_cfg(model_cfg: Dict[str, Any], device: Optional[Union[str, torch.device]] = "cpu",
                         weights: Optional[str] = None):
    """
    Instantiate a registered network and optionally load its weights.

    `weights` (file or directory) takes precedence over a `weights` entry in
    the cfg params. The network is moved to `device` last.
    """
    name, model_args = _resolve_model_cfg(model_cfg)
    if weights is not None:
        model_args["weights"] = weights
    logger.debug("Building '{}' with args {} on {}", name, model_args, device)

    try:
        model = MODEL_REG[name](**model_args)
    except Exception as e:
        logger.critical("Failed to build model '{}' with args {}: {}", name, model_args, e)
        raise

    if model.is_loaded:
        params = model.params
        sizes = sorted(((k, t.numel()) for k, t in params.named_tensors()), key=lambda kv: kv[1], reverse=True)
        logger.info("Model '{}' ready: {} main block(s), {} tensors, {} weights",
                    name, model.num_main_blocks, len(sizes), params.num_weights)
        logger.debug("Largest tensors: {}", sizes[:5])
    else:
        logger.warning("Model '{}' built without weights; load them before inference.", name)

    return model.to(device) if device is not None else model
