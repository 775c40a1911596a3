# models/params.py
"""
Parameter tree for TinyXception.

Tensors keep the layout of the pretrained weight set:
  - conv filters:        [kh, kw, in_c, out_c]
  - depthwise filters:   [kh, kw, in_c, channel_multiplier]
  - pointwise filters:   [1, 1, in_c, out_c]
  - biases:              [out_c]

Every container is a frozen dataclass. Field order is the order in which the
tensors appear in the flat weight buffer, so `named_tensors()` doubles as the
serialization order.
"""
from dataclasses import dataclass, fields, replace
from typing import Callable, Iterator, NamedTuple, Optional, Tuple, Union

import torch

from .errors import ShapeMismatchError


class ParamMapping(NamedTuple):
    """Where a tensor of the tree came from: weight-map key -> attribute path."""
    original_path: str
    param_path: str


def _map_tensors(node, fn: Callable[[torch.Tensor], torch.Tensor]):
    if isinstance(node, torch.Tensor):
        return fn(node)
    if isinstance(node, tuple):
        return tuple(_map_tensors(n, fn) for n in node)
    return replace(node, **{f.name: _map_tensors(getattr(node, f.name), fn) for f in fields(node)})


def _named_tensors(node, prefix: str) -> Iterator[Tuple[str, torch.Tensor]]:
    for f in fields(node):
        value = getattr(node, f.name)
        key = f"{prefix}/{f.name}" if prefix else f.name
        if isinstance(value, torch.Tensor):
            yield key, value
        elif isinstance(value, tuple):
            # middle flow: ordered main blocks
            for idx, block in enumerate(value):
                yield from _named_tensors(block, f"{key}/main_block_{idx}")
        else:
            yield from _named_tensors(value, key)


class _ParamsNode:
    """Shared helpers for every params container."""

    def named_tensors(self, prefix: str = "") -> Iterator[Tuple[str, torch.Tensor]]:
        yield from _named_tensors(self, prefix)

    def to(self, device: Optional[Union[str, torch.device]] = None, dtype: Optional[torch.dtype] = None):
        return _map_tensors(self, lambda t: t.to(device=device, dtype=dtype))

    def clone(self):
        """Same tree over freshly allocated tensors."""
        return _map_tensors(self, lambda t: t.detach().clone())

    @property
    def num_weights(self) -> int:
        return sum(t.numel() for _, t in self.named_tensors())


@dataclass(frozen=True)
class ConvParams(_ParamsNode):
    filters: torch.Tensor
    bias: torch.Tensor

    @property
    def in_channels(self) -> int:
        return int(self.filters.shape[2])

    @property
    def out_channels(self) -> int:
        return int(self.filters.shape[3])

    def validate(self, stage: str = "conv") -> None:
        if self.filters.dim() != 4:
            raise ShapeMismatchError(f"filters must be 4D [kh, kw, in_c, out_c], got {tuple(self.filters.shape)}", stage)
        if tuple(self.bias.shape) != (self.out_channels,):
            raise ShapeMismatchError(
                f"bias shape {tuple(self.bias.shape)} does not match out_c={self.out_channels}", stage)


@dataclass(frozen=True)
class SeparableConvParams(_ParamsNode):
    depthwise_filter: torch.Tensor
    pointwise_filter: torch.Tensor
    bias: torch.Tensor

    @property
    def in_channels(self) -> int:
        return int(self.depthwise_filter.shape[2])

    @property
    def out_channels(self) -> int:
        return int(self.pointwise_filter.shape[3])

    def validate(self, stage: str = "separable_conv") -> None:
        dw, pw = self.depthwise_filter, self.pointwise_filter
        if dw.dim() != 4 or pw.dim() != 4:
            raise ShapeMismatchError(
                f"depthwise/pointwise filters must be 4D, got {tuple(dw.shape)} / {tuple(pw.shape)}", stage)
        if tuple(pw.shape[:2]) != (1, 1):
            raise ShapeMismatchError(f"pointwise filter must be 1x1, got {tuple(pw.shape)}", stage)
        # depthwise output (in_c * multiplier) feeds the pointwise conv
        if dw.shape[2] * dw.shape[3] != pw.shape[2]:
            raise ShapeMismatchError(
                f"depthwise output channels {dw.shape[2] * dw.shape[3]} != pointwise input channels {pw.shape[2]}",
                stage)
        if tuple(self.bias.shape) != (self.out_channels,):
            raise ShapeMismatchError(
                f"bias shape {tuple(self.bias.shape)} does not match out_c={self.out_channels}", stage)


@dataclass(frozen=True)
class ReductionBlockParams(_ParamsNode):
    separable_conv0: SeparableConvParams
    separable_conv1: SeparableConvParams
    expansion_conv: ConvParams

    @property
    def in_channels(self) -> int:
        return self.separable_conv0.in_channels

    @property
    def out_channels(self) -> int:
        return self.separable_conv1.out_channels

    def validate(self, stage: str = "reduction_block") -> None:
        self.separable_conv0.validate(f"{stage}/separable_conv0")
        self.separable_conv1.validate(f"{stage}/separable_conv1")
        self.expansion_conv.validate(f"{stage}/expansion_conv")
        if self.separable_conv1.in_channels != self.separable_conv0.out_channels:
            raise ShapeMismatchError(
                f"separable_conv1 expects {self.separable_conv1.in_channels} channels, "
                f"separable_conv0 produces {self.separable_conv0.out_channels}", stage)
        if self.expansion_conv.in_channels != self.in_channels:
            raise ShapeMismatchError(
                f"expansion_conv expects {self.expansion_conv.in_channels} input channels, block input has "
                f"{self.in_channels}", stage)
        if self.expansion_conv.out_channels != self.out_channels:
            raise ShapeMismatchError(
                f"shortcut width {self.expansion_conv.out_channels} != main path width {self.out_channels}", stage)


@dataclass(frozen=True)
class MainBlockParams(_ParamsNode):
    separable_conv0: SeparableConvParams
    separable_conv1: SeparableConvParams
    separable_conv2: SeparableConvParams

    @property
    def channels(self) -> int:
        return self.separable_conv0.in_channels

    def validate(self, stage: str = "main_block") -> None:
        for name in ("separable_conv0", "separable_conv1", "separable_conv2"):
            conv = getattr(self, name)
            conv.validate(f"{stage}/{name}")
            if conv.in_channels != self.channels or conv.out_channels != self.channels:
                raise ShapeMismatchError(
                    f"{name} maps {conv.in_channels}->{conv.out_channels}, main blocks must keep "
                    f"{self.channels} channels", stage)


@dataclass(frozen=True)
class EntryFlowParams(_ParamsNode):
    conv_in: ConvParams
    reduction_block_0: ReductionBlockParams
    reduction_block_1: ReductionBlockParams


@dataclass(frozen=True)
class ExitFlowParams(_ParamsNode):
    reduction_block: ReductionBlockParams
    separable_conv: SeparableConvParams


@dataclass(frozen=True)
class TinyXceptionParams(_ParamsNode):
    entry_flow: EntryFlowParams
    middle_flow: Tuple[MainBlockParams, ...]
    exit_flow: ExitFlowParams

    @property
    def num_main_blocks(self) -> int:
        return len(self.middle_flow)

    @property
    def out_channels(self) -> int:
        return self.exit_flow.separable_conv.out_channels

    def validate(self) -> None:
        """Check every block and the channel hand-off between consecutive stages."""
        entry, exit_ = self.entry_flow, self.exit_flow
        entry.conv_in.validate("entry_flow/conv_in")
        entry.reduction_block_0.validate("entry_flow/reduction_block_0")
        entry.reduction_block_1.validate("entry_flow/reduction_block_1")
        for idx, block in enumerate(self.middle_flow):
            block.validate(f"middle_flow/main_block_{idx}")
        exit_.reduction_block.validate("exit_flow/reduction_block")
        exit_.separable_conv.validate("exit_flow/separable_conv")

        chain = [("entry_flow/conv_in", entry.conv_in.in_channels, entry.conv_in.out_channels),
                 ("entry_flow/reduction_block_0", entry.reduction_block_0.in_channels,
                  entry.reduction_block_0.out_channels),
                 ("entry_flow/reduction_block_1", entry.reduction_block_1.in_channels,
                  entry.reduction_block_1.out_channels)]
        chain += [(f"middle_flow/main_block_{idx}", b.channels, b.channels) for idx, b in enumerate(self.middle_flow)]
        chain += [("exit_flow/reduction_block", exit_.reduction_block.in_channels, exit_.reduction_block.out_channels),
                  ("exit_flow/separable_conv", exit_.separable_conv.in_channels, exit_.separable_conv.out_channels)]

        for (prev_stage, _, prev_out), (stage, cur_in, _) in zip(chain, chain[1:]):
            if prev_out != cur_in:
                raise ShapeMismatchError(f"expects {cur_in} input channels but {prev_stage} produces {prev_out}",
                                         stage)
