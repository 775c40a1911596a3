# models/layers.py
"""
Functional building blocks shared by the TinyXception graph.

All ops take activations in torch layout [B, C, H, W] and parameters in the
pretrained layout documented in models/params.py. Padding follows the
TensorFlow "same" rule: output = ceil(input / stride), with the odd pixel of
padding going to the bottom/right.
"""
import math
from typing import Sequence, Tuple, Union

import torch
import torch.nn.functional as F
from torch.nn.modules.utils import _pair

from .errors import ShapeMismatchError
from .params import ConvParams, SeparableConvParams

Stride = Union[int, Tuple[int, int]]


def same_padding(size: int, kernel: int, stride: int) -> Tuple[int, int]:
    """(before, after) padding so that a strided window yields ceil(size / stride) outputs."""
    out = math.ceil(size / stride)
    total = max((out - 1) * stride + kernel - size, 0)
    return total // 2, total - total // 2


def pad_same(x: torch.Tensor, kernel: Sequence[int], stride: Stride, value: float = 0.0) -> torch.Tensor:
    sh, sw = _pair(stride)
    top, bottom = same_padding(x.shape[-2], int(kernel[0]), sh)
    left, right = same_padding(x.shape[-1], int(kernel[1]), sw)
    if top == bottom == left == right == 0:
        return x
    return F.pad(x, (left, right, top, bottom), mode="constant", value=value)


def conv(x: torch.Tensor, params: ConvParams, stride: Stride = 1) -> torch.Tensor:
    """2D convolution with "same" padding followed by a bias add."""
    if x.shape[1] != params.in_channels:
        raise ShapeMismatchError(
            f"conv expects {params.in_channels} input channels, got tensor of shape {tuple(x.shape)}")
    # [kh, kw, in, out] -> [out, in, kh, kw]
    weight = params.filters.permute(3, 2, 0, 1).contiguous()
    x = pad_same(x, weight.shape[-2:], stride)
    return F.conv2d(x, weight, params.bias, stride=_pair(stride))


def depthwise_separable_conv(x: torch.Tensor, params: SeparableConvParams, stride: Stride = 1) -> torch.Tensor:
    """Per-channel 3x3 (depthwise) conv, then 1x1 (pointwise) projection plus bias."""
    in_c = x.shape[1]
    if in_c != params.in_channels:
        raise ShapeMismatchError(
            f"separable conv expects {params.in_channels} input channels, got tensor of shape {tuple(x.shape)}")

    kh, kw, _, multiplier = params.depthwise_filter.shape
    # output channel i * multiplier + m reads input channel i
    dw_weight = params.depthwise_filter.reshape(kh, kw, in_c * multiplier).permute(2, 0, 1).unsqueeze(1).contiguous()
    out = F.conv2d(pad_same(x, (kh, kw), stride), dw_weight, stride=_pair(stride), groups=in_c)

    pw_weight = params.pointwise_filter.permute(3, 2, 0, 1).contiguous()
    return F.conv2d(out, pw_weight, params.bias)


def max_pool(x: torch.Tensor, kernel: Stride = 3, stride: Stride = 2) -> torch.Tensor:
    """Max pool with "same" padding; padded cells never win."""
    kernel = _pair(kernel)
    x = pad_same(x, kernel, stride, value=float("-inf"))
    return F.max_pool2d(x, kernel, _pair(stride))
