# models/tiny_xception.py
"""
TinyXception feature extractor (inference only).

    input [B, 112, 112, 3] RGB 0..255
      -> (x - mean_rgb) / 256
      -> entry flow:  conv_in (3x3, s2) + relu, reduction_block_0, reduction_block_1
      -> middle flow: num_main_blocks residual main blocks
      -> exit flow:   reduction_block, separable_conv + relu
    output [B, 7, 7, 512]

The network holds an immutable TinyXceptionParams tree; every forward pass is
independent, so one instance can serve concurrent callers.
"""
from contextlib import contextmanager
from typing import Iterator, List, Mapping, Optional, Union

import numpy as np
import torch
import torch.nn.functional as F
from loguru import logger

from . import register
from ..data.net_input import NetInput, NetInputLike, to_net_input
from ..utils.checkpoint_utils import load_weight_map_from_url, load_weights, resolve_weights_path
from ..utils.inference_utils import inference_scope
from .errors import MissingBlockParamsError, ShapeMismatchError, UninitializedModelError
from .extract_params import validate_num_main_blocks, extract_params, extract_params_from_weight_map
from .layers import conv, depthwise_separable_conv, max_pool
from .params import MainBlockParams, ParamMapping, ReductionBlockParams, TinyXceptionParams

DEFAULT_MODEL_NAME = "tiny_xception_model"
INPUT_SIZE = 112
MEAN_RGB = (122.782, 117.001, 104.298)
NORMALIZATION_SCALE = 256.0


def preprocess(batch: torch.Tensor) -> torch.Tensor:
    """[B, H, W, 3] RGB in 0..255 -> (batch - MEAN_RGB) / 256, same layout."""
    mean = torch.tensor(MEAN_RGB, dtype=batch.dtype, device=batch.device)
    return (batch - mean) / NORMALIZATION_SCALE


def reduction_block(x: torch.Tensor, params: ReductionBlockParams, activate_input: bool = True) -> torch.Tensor:
    """Two separable convs + 3x3/2 max pool, plus a strided 1x1 projection of the input."""
    out = F.relu(x) if activate_input else x
    out = depthwise_separable_conv(out, params.separable_conv0, 1)
    out = depthwise_separable_conv(F.relu(out), params.separable_conv1, 1)
    out = max_pool(out, 3, 2)
    shortcut = conv(x, params.expansion_conv, 2)
    if out.shape != shortcut.shape:
        raise ShapeMismatchError(
            f"pooled path {tuple(out.shape)} and shortcut {tuple(shortcut.shape)} cannot be summed")
    return out + shortcut


def main_block(x: torch.Tensor, params: MainBlockParams) -> torch.Tensor:
    """Three relu -> separable conv steps added back onto the (unactivated) input."""
    out = depthwise_separable_conv(F.relu(x), params.separable_conv0, 1)
    out = depthwise_separable_conv(F.relu(out), params.separable_conv1, 1)
    out = depthwise_separable_conv(F.relu(out), params.separable_conv2, 1)
    if out.shape != x.shape:
        raise ShapeMismatchError(f"main block output {tuple(out.shape)} does not match input {tuple(x.shape)}")
    return out + x


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except ShapeMismatchError as e:
        if e.stage is not None:
            raise
        logger.error("Shape mismatch in {}: {}", name, e.message)
        raise e.with_stage(name) from e


class TinyXception:
    """
    Owns the parameter tree and runs the forward pass.

    Parameters are attached with one of the load_* methods; until then every
    forward call raises UninitializedModelError.
    """

    def __init__(self, num_main_blocks: int):
        validate_num_main_blocks(num_main_blocks)
        self._name = "TinyXception"
        self._num_main_blocks = num_main_blocks
        self._params: Optional[TinyXceptionParams] = None
        self._param_mappings: List[ParamMapping] = []
        self._device = torch.device("cpu")

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def num_main_blocks(self) -> int:
        return self._num_main_blocks

    @property
    def params(self) -> Optional[TinyXceptionParams]:
        """Copy of the loaded tree; edits to it never reach the network."""
        return None if self._params is None else self._params.clone()

    @property
    def param_mappings(self) -> List[ParamMapping]:
        return list(self._param_mappings)

    @property
    def is_loaded(self) -> bool:
        return self._params is not None

    @property
    def device(self) -> torch.device:
        return self._device

    def to(self, device: Union[str, torch.device]) -> "TinyXception":
        self._device = torch.device(device)
        if self._params is not None:
            self._params = self._params.to(self._device)
        logger.debug("{} moved to {}", self._name, self._device)
        return self

    def dispose(self) -> None:
        """Drop the loaded parameters; the network goes back to the not-loaded state."""
        self._params = None
        self._param_mappings = []

    def get_default_model_name(self) -> str:
        return DEFAULT_MODEL_NAME

    def get_weight_map(self):
        """Copies of the loaded parameters as {"entry_flow/conv_in/filters": tensor, ...}."""
        if self._params is None:
            logger.error("{} - get_weight_map called before any weights were loaded", self._name)
            raise UninitializedModelError(self._name)
        return {k: t.detach().clone() for k, t in self._params.named_tensors()}

    # ------------------------------------------------------------------
    # parameter ingestion
    # ------------------------------------------------------------------
    def load_params(self, params: TinyXceptionParams, param_mappings: Optional[List[ParamMapping]] = None) -> None:
        """Attach an already-built tree after checking it against this network's configuration."""
        if params.num_main_blocks < self._num_main_blocks:
            logger.error("{} expects {} main block(s), params have {}",
                         self._name, self._num_main_blocks, params.num_main_blocks)
            raise MissingBlockParamsError(params.num_main_blocks, available=params.num_main_blocks)
        if params.num_main_blocks > self._num_main_blocks:
            logger.error("{} expects {} main block(s), params have {}",
                         self._name, self._num_main_blocks, params.num_main_blocks)
            raise ValueError(
                f"params have {params.num_main_blocks} main blocks, network expects {self._num_main_blocks}")
        params.validate()
        # the network owns its tensors; the caller's tree stays independent
        self._params = params.to(self._device).clone()
        self._param_mappings = list(param_mappings or [])
        logger.info("{} loaded: {} main block(s), {} weights", self._name, self._num_main_blocks, params.num_weights)

    def load_from_weights(self, weights: Union[torch.Tensor, np.ndarray]) -> None:
        """Load from a flat float32 buffer laid out in extraction order."""
        params, mappings = extract_params(weights, self._num_main_blocks)
        self.load_params(params, mappings)

    def load_from_weight_map(self, weight_map: Mapping[str, Union[torch.Tensor, np.ndarray]]) -> None:
        """Load from named tensors ("entry_flow/conv_in/filters", ...)."""
        params, mappings = extract_params_from_weight_map(weight_map, self._num_main_blocks)
        self.load_params(params, mappings)

    def load(self, path: str) -> None:
        """Load from a weight file, or from <dir>/<default model name>.{pt,pth,bin}."""
        resolved = resolve_weights_path(path, self.get_default_model_name())
        weights = load_weights(resolved)
        if isinstance(weights, torch.Tensor):
            self.load_from_weights(weights)
        else:
            self.load_from_weight_map(weights)

    def load_from_url(self, url: str, model_dir: Optional[str] = None) -> None:
        """Download (or reuse the cached copy of) a weight map and load it."""
        self.load_from_weight_map(load_weight_map_from_url(url, model_dir=model_dir))

    # ------------------------------------------------------------------
    # inference
    # ------------------------------------------------------------------
    def _main_block_params(self, params: TinyXceptionParams, idx: int) -> MainBlockParams:
        if idx >= len(params.middle_flow):
            logger.error("{} has no params for middle_flow/main_block_{} ({} loaded)",
                         self._name, idx, len(params.middle_flow))
            raise MissingBlockParamsError(idx, available=len(params.middle_flow))
        return params.middle_flow[idx]

    def forward_input(self, net_input: Union[NetInput, torch.Tensor]) -> torch.Tensor:
        """Run the network on a batch; returns the [B, 7, 7, 512] feature map."""
        params = self._params
        if params is None:
            logger.error("{} - forward called before any weights were loaded", self._name)
            raise UninitializedModelError(self._name)

        if isinstance(net_input, torch.Tensor):
            net_input = NetInput(net_input)

        with inference_scope(self._device):
            batch = net_input.to_batch_tensor(INPUT_SIZE, is_center=True).to(self._device)
            # NHWC -> NCHW for the conv kernels
            x = preprocess(batch).permute(0, 3, 1, 2)

            with _stage("entry_flow/conv_in"):
                out = F.relu(conv(x, params.entry_flow.conv_in, 2))
            with _stage("entry_flow/reduction_block_0"):
                out = reduction_block(out, params.entry_flow.reduction_block_0, activate_input=False)
            with _stage("entry_flow/reduction_block_1"):
                out = reduction_block(out, params.entry_flow.reduction_block_1)

            for idx in range(self._num_main_blocks):
                block = self._main_block_params(params, idx)
                with _stage(f"middle_flow/main_block_{idx}"):
                    out = main_block(out, block)

            with _stage("exit_flow/reduction_block"):
                out = reduction_block(out, params.exit_flow.reduction_block)
            with _stage("exit_flow/separable_conv"):
                out = F.relu(depthwise_separable_conv(out, params.exit_flow.separable_conv, 1))

            out = out.permute(0, 2, 3, 1)

        # copied outside inference mode so callers get an ordinary tensor
        out = out.clone(memory_format=torch.contiguous_format)
        logger.debug("{} forward: batch {} -> features {}", self._name, tuple(batch.shape), tuple(out.shape))
        return out

    async def forward(self, inputs: NetInputLike) -> torch.Tensor:
        return self.forward_input(await to_net_input(inputs))


@register("tiny_xception")
def tiny_xception(num_main_blocks: int = 2, weights: Optional[str] = None, **_) -> TinyXception:
    """
    Registry constructor. `weights` may be a weight file or a directory holding
    the default model file; without it the network is returned unloaded.
    """
    model = TinyXception(num_main_blocks)
    if weights:
        model.load(weights)
    return model
