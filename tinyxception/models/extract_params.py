# models/extract_params.py
"""
Build a TinyXceptionParams tree from pretrained weights.

Two sources are supported and both go through the same tree builder, so they
always produce structurally identical trees:
  - extract_params(weights, num_main_blocks): flat float32 buffer, consumed in
    layout order (entry conv, reduction blocks 0/1, main blocks, exit reduction
    block, exit separable conv)
  - extract_params_from_weight_map(weight_map, num_main_blocks): mapping of
    "entry_flow/conv_in/filters"-style keys to tensors

Also provides weight_layout / num_weights (the ordered key/shape table) and
random_weights for smoke tests.
"""
import math
import re
from typing import Callable, List, Mapping, Tuple, Union

import numpy as np
import torch
from loguru import logger

from .errors import MissingBlockParamsError, ShapeMismatchError
from .params import (
    ConvParams,
    EntryFlowParams,
    ExitFlowParams,
    MainBlockParams,
    ParamMapping,
    ReductionBlockParams,
    SeparableConvParams,
    TinyXceptionParams,
)

# pretrained channel widths
INPUT_CHANNELS = 3
ENTRY_CONV_CHANNELS = 32
ENTRY_FLOW_CHANNELS = (64, 128)
MIDDLE_FLOW_CHANNELS = 128
EXIT_FLOW_CHANNELS = (256, 512)
SEPARABLE_KERNEL = 3

Shape = Tuple[int, ...]
TakeFn = Callable[[str, Shape], torch.Tensor]
WeightsLike = Union[torch.Tensor, np.ndarray, List[float]]

_MAIN_BLOCK_KEY = re.compile(r"^middle_flow/main_block_(\d+)/")


def _extract_tree(take: TakeFn, num_main_blocks: int) -> Tuple[TinyXceptionParams, List[ParamMapping]]:
    mappings: List[ParamMapping] = []

    def entry(key: str, param_path: str, shape: Shape) -> torch.Tensor:
        tensor = take(key, shape)
        mappings.append(ParamMapping(key, param_path))
        return tensor

    def conv_params(c_in, c_out, kernel, prefix, path) -> ConvParams:
        return ConvParams(
            filters=entry(f"{prefix}/filters", f"{path}.filters", (kernel, kernel, c_in, c_out)),
            bias=entry(f"{prefix}/bias", f"{path}.bias", (c_out,)),
        )

    def separable_conv_params(c_in, c_out, prefix, path) -> SeparableConvParams:
        k = SEPARABLE_KERNEL
        return SeparableConvParams(
            depthwise_filter=entry(f"{prefix}/depthwise_filter", f"{path}.depthwise_filter", (k, k, c_in, 1)),
            pointwise_filter=entry(f"{prefix}/pointwise_filter", f"{path}.pointwise_filter", (1, 1, c_in, c_out)),
            bias=entry(f"{prefix}/bias", f"{path}.bias", (c_out,)),
        )

    def reduction_block_params(c_in, c_out, prefix, path) -> ReductionBlockParams:
        return ReductionBlockParams(
            separable_conv0=separable_conv_params(c_in, c_out, f"{prefix}/separable_conv0", f"{path}.separable_conv0"),
            separable_conv1=separable_conv_params(c_out, c_out, f"{prefix}/separable_conv1", f"{path}.separable_conv1"),
            expansion_conv=conv_params(c_in, c_out, 1, f"{prefix}/expansion_conv", f"{path}.expansion_conv"),
        )

    def main_block_params(channels, prefix, path) -> MainBlockParams:
        return MainBlockParams(*[
            separable_conv_params(channels, channels, f"{prefix}/separable_conv{i}", f"{path}.separable_conv{i}")
            for i in range(3)
        ])

    c0, c1 = ENTRY_FLOW_CHANNELS
    entry_flow = EntryFlowParams(
        conv_in=conv_params(INPUT_CHANNELS, ENTRY_CONV_CHANNELS, 3, "entry_flow/conv_in", "entry_flow.conv_in"),
        reduction_block_0=reduction_block_params(
            ENTRY_CONV_CHANNELS, c0, "entry_flow/reduction_block_0", "entry_flow.reduction_block_0"),
        reduction_block_1=reduction_block_params(
            c0, c1, "entry_flow/reduction_block_1", "entry_flow.reduction_block_1"),
    )

    middle_flow = tuple(
        main_block_params(MIDDLE_FLOW_CHANNELS, f"middle_flow/main_block_{idx}", f"middle_flow.{idx}")
        for idx in range(num_main_blocks)
    )

    e0, e1 = EXIT_FLOW_CHANNELS
    exit_flow = ExitFlowParams(
        reduction_block=reduction_block_params(
            MIDDLE_FLOW_CHANNELS, e0, "exit_flow/reduction_block", "exit_flow.reduction_block"),
        separable_conv=separable_conv_params(e0, e1, "exit_flow/separable_conv", "exit_flow.separable_conv"),
    )

    return TinyXceptionParams(entry_flow, middle_flow, exit_flow), mappings


def validate_num_main_blocks(num_main_blocks: int) -> None:
    if isinstance(num_main_blocks, bool) or not isinstance(num_main_blocks, int) or num_main_blocks < 0:
        raise ValueError(f"num_main_blocks must be a non-negative int, got {num_main_blocks!r}")


def weight_layout(num_main_blocks: int) -> List[Tuple[str, Shape]]:
    """Ordered (key, shape) pairs of the flat weight buffer."""
    validate_num_main_blocks(num_main_blocks)
    layout: List[Tuple[str, Shape]] = []

    def take(key: str, shape: Shape) -> torch.Tensor:
        layout.append((key, shape))
        return torch.empty(shape, device="meta")

    _extract_tree(take, num_main_blocks)
    return layout


def num_weights(num_main_blocks: int) -> int:
    return sum(math.prod(shape) for _, shape in weight_layout(num_main_blocks))


def extract_params(weights: WeightsLike, num_main_blocks: int) -> Tuple[TinyXceptionParams, List[ParamMapping]]:
    """Slice a flat float buffer into the parameter tree.

    Raises ValueError if the buffer is too short or has weights left over,
    which is what a wrong num_main_blocks looks like on this path.
    """
    validate_num_main_blocks(num_main_blocks)
    flat = torch.as_tensor(weights, dtype=torch.float32).reshape(-1)
    total = flat.numel()
    offset = 0

    def take(key: str, shape: Shape) -> torch.Tensor:
        nonlocal offset
        size = math.prod(shape)
        if offset + size > total:
            logger.error("Weight buffer exhausted at '{}' (need {}, {} left)", key, size, total - offset)
            raise ValueError(
                f"weight buffer too short: '{key}' needs {size} values but only {total - offset} remain "
                f"(num_main_blocks={num_main_blocks})")
        tensor = flat[offset:offset + size].reshape(shape).clone()
        offset += size
        return tensor

    params, mappings = _extract_tree(take, num_main_blocks)

    if offset != total:
        logger.error("{} weights remaining after extract (num_main_blocks={})", total - offset, num_main_blocks)
        raise ValueError(f"weights remaining after extract: {total - offset} (num_main_blocks={num_main_blocks})")

    logger.debug("Extracted {} tensors ({} weights) from flat buffer", len(mappings), total)
    return params, mappings


def _main_block_indices(keys) -> List[int]:
    indices = set()
    for key in keys:
        m = _MAIN_BLOCK_KEY.match(key)
        if m:
            indices.add(int(m.group(1)))
    return sorted(indices)


def extract_params_from_weight_map(
    weight_map: Mapping[str, Union[torch.Tensor, np.ndarray]],
    num_main_blocks: int,
) -> Tuple[TinyXceptionParams, List[ParamMapping]]:
    """Reassemble the parameter tree from named tensors.

    Keys the architecture does not use are ignored, except main blocks past
    num_main_blocks: those mean the weights were trained with a deeper middle
    flow and are rejected.
    """
    validate_num_main_blocks(num_main_blocks)
    present = _main_block_indices(weight_map.keys())
    extra = [idx for idx in present if idx >= num_main_blocks]
    if extra:
        logger.error("Weight map has main blocks {} but model is configured for {}", extra, num_main_blocks)
        raise ValueError(
            f"weight map contains main block(s) {extra} beyond num_main_blocks={num_main_blocks}")

    def take(key: str, shape: Shape) -> torch.Tensor:
        if key not in weight_map:
            m = _MAIN_BLOCK_KEY.match(key)
            if m:
                logger.error("Weight map has no '{}' (main blocks present: {})", key, present)
                raise MissingBlockParamsError(int(m.group(1)), available=len(present), key=key)
            logger.error("Expected weight '{}' not found in weight map", key)
            raise KeyError(f"expected weight '{key}' not found in weight map")
        tensor = torch.as_tensor(weight_map[key])
        if tuple(tensor.shape) != tuple(shape):
            raise ShapeMismatchError(
                f"'{key}' has shape {tuple(tensor.shape)}, expected {tuple(shape)}", stage=key.rsplit("/", 1)[0])
        return tensor.detach().to(dtype=torch.float32).clone()

    params, mappings = _extract_tree(take, num_main_blocks)
    unused = len(weight_map) - len(mappings)
    if unused:
        logger.debug("Ignored {} unused tensor(s) in weight map", unused)
    return params, mappings


def random_weights(num_main_blocks: int, seed: int = 0) -> torch.Tensor:
    """Flat buffer of uniform fan-in scaled weights, for smoke tests without a checkpoint."""
    gen = torch.Generator().manual_seed(seed)
    chunks = []
    for key, shape in weight_layout(num_main_blocks):
        if key.endswith("/bias"):
            bound = 0.05
        elif key.endswith("/depthwise_filter"):
            bound = math.sqrt(3.0 / (shape[0] * shape[1]))
        else:
            bound = math.sqrt(3.0 / (shape[0] * shape[1] * shape[2]))
        chunks.append(torch.empty(math.prod(shape)).uniform_(-bound, bound, generator=gen))
    return torch.cat(chunks)
