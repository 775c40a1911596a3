# data/net_input.py
"""
Turn images into the fixed-size batch tensor the network consumes.

to_net_input(...) accepts file paths, encoded bytes, PIL images, numpy arrays,
torch tensors ([H, W, 3] or [B, H, W, 3]) or a list of single images, and
returns a NetInput. Decoding runs in a worker thread so the event loop is not
blocked.

NetInput.to_batch_tensor(size) zero-pads every image to a square, resizes it
bilinearly to size x size and stacks the result as [B, size, size, 3] float32
with pixel values in 0..255 (RGB).
"""
import asyncio
import math
import pathlib
from typing import List, Sequence, Tuple, Union

import numpy as np
import torch
import torchvision.transforms.functional as TF
from loguru import logger
from PIL import Image
from torchvision.io import ImageReadMode, decode_image, read_image


def pad_to_square(image: torch.Tensor, is_center: bool = True) -> torch.Tensor:
    """Zero-pad an [H, W, C] image so height == width.

    With is_center the padding is split, the larger half going after the
    image; otherwise all of it goes to the bottom/right.
    """
    height, width = int(image.shape[0]), int(image.shape[1])
    if height == width:
        return image
    amount = abs(height - width)
    after = math.floor(amount * (0.5 if is_center else 1.0) + 0.5)
    before = amount - after
    chw = image.permute(2, 0, 1)
    if height > width:
        padded = TF.pad(chw, [before, 0, after, 0], fill=0)
    else:
        padded = TF.pad(chw, [0, before, 0, after], fill=0)
    return padded.permute(1, 2, 0)


def resize_bilinear(image: torch.Tensor, size: int) -> torch.Tensor:
    """Bilinear resize of an [H, W, C] float image to size x size.

    Output pixel i samples source coordinate i * in / size (no half-pixel
    offset, corners not aligned), as in TensorFlow's legacy resize_bilinear.
    """

    def _axis(in_size: int):
        pos = torch.arange(size, dtype=torch.float32, device=image.device) * (in_size / size)
        lo = pos.floor().long()
        hi = (lo + 1).clamp(max=in_size - 1)
        return lo, hi, pos - lo

    y_lo, y_hi, wy = _axis(int(image.shape[0]))
    x_lo, x_hi, wx = _axis(int(image.shape[1]))
    wx = wx[None, :, None]

    top, bottom = image[y_lo], image[y_hi]
    top = top[:, x_lo] + (top[:, x_hi] - top[:, x_lo]) * wx
    bottom = bottom[:, x_lo] + (bottom[:, x_hi] - bottom[:, x_lo]) * wx
    return top + (bottom - top) * wy[:, None, None]


class NetInput:
    """A batch of RGB images kept at their original sizes until batching."""

    def __init__(self, inputs: Union[torch.Tensor, Sequence[torch.Tensor]]):
        if isinstance(inputs, torch.Tensor):
            if inputs.dim() == 3:
                inputs = [inputs]
            elif inputs.dim() == 4:
                inputs = list(inputs.unbind(0))
            else:
                raise ValueError(f"NetInput - expected a 3D or 4D tensor, got shape {tuple(inputs.shape)}")
        inputs = list(inputs)
        if not inputs:
            raise ValueError("NetInput - empty input batch")
        for idx, image in enumerate(inputs):
            if image.dim() != 3 or image.shape[-1] != 3:
                raise ValueError(
                    f"NetInput - input at index {idx} must be [H, W, 3] RGB, got shape {tuple(image.shape)}")
        self._inputs: List[torch.Tensor] = inputs

    @property
    def batch_size(self) -> int:
        return len(self._inputs)

    @property
    def input_dimensions(self) -> List[Tuple[int, int, int]]:
        return [tuple(int(d) for d in image.shape) for image in self._inputs]

    def get_input(self, idx: int) -> torch.Tensor:
        return self._inputs[idx]

    def to_batch_tensor(self, input_size: int, is_center: bool = True) -> torch.Tensor:
        batch = []
        for image in self._inputs:
            image = pad_to_square(image.to(torch.float32), is_center)
            if tuple(image.shape[:2]) != (input_size, input_size):
                image = resize_bilinear(image, input_size)
            batch.append(image)
        return torch.stack(batch, dim=0)


ImageLike = Union[str, pathlib.Path, bytes, bytearray, Image.Image, np.ndarray, torch.Tensor]
NetInputLike = Union[NetInput, ImageLike, Sequence[ImageLike]]


def _read_image_file(path: Union[str, pathlib.Path]) -> torch.Tensor:
    path = pathlib.Path(path)
    if not path.is_file():
        logger.error("Image not found: {}", path)
        raise FileNotFoundError(f"image not found: {path}")
    return read_image(str(path), mode=ImageReadMode.RGB).permute(1, 2, 0)


def _decode_bytes(data: Union[bytes, bytearray]) -> torch.Tensor:
    encoded = torch.frombuffer(bytearray(data), dtype=torch.uint8)
    return decode_image(encoded, mode=ImageReadMode.RGB).permute(1, 2, 0)


def _as_image_tensor(array: Union[np.ndarray, torch.Tensor]) -> torch.Tensor:
    tensor = torch.from_numpy(np.ascontiguousarray(array)) if isinstance(array, np.ndarray) else array
    if tensor.dim() != 3 or tensor.shape[-1] != 3:
        raise ValueError(f"to_net_input - expected an [H, W, 3] image, got shape {tuple(tensor.shape)}")
    return tensor


async def _load_image(item: ImageLike) -> torch.Tensor:
    if isinstance(item, (str, pathlib.Path)):
        return await asyncio.to_thread(_read_image_file, item)
    if isinstance(item, (bytes, bytearray)):
        return await asyncio.to_thread(_decode_bytes, item)
    if isinstance(item, Image.Image):
        return TF.pil_to_tensor(item.convert("RGB")).permute(1, 2, 0)
    if isinstance(item, (np.ndarray, torch.Tensor)):
        return _as_image_tensor(item)
    raise TypeError(f"to_net_input - unsupported input type: {type(item).__name__}")


async def to_net_input(inputs: NetInputLike) -> NetInput:
    """Convert any supported input into a NetInput, decoding files/bytes off the event loop."""
    if isinstance(inputs, NetInput):
        return inputs

    if isinstance(inputs, (np.ndarray, torch.Tensor)) and inputs.ndim == 4:
        batch = torch.from_numpy(np.ascontiguousarray(inputs)) if isinstance(inputs, np.ndarray) else inputs
        return NetInput(batch)

    if isinstance(inputs, (list, tuple)):
        if not inputs:
            raise ValueError("to_net_input - empty array passed as input")
        images = await asyncio.gather(*(_load_image(item) for item in inputs))
        logger.debug("Loaded {} image(s) for batching", len(images))
        return NetInput(list(images))

    return NetInput([await _load_image(inputs)])
