import asyncio
import io

import numpy as np
import pytest
import torch
from PIL import Image

from tinyxception.data import NetInput, pad_to_square, resize_bilinear, to_net_input


def _png_bytes(arr):
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def rgb_array():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(10, 12, 3), dtype=np.uint8)


def test_pad_to_square_centered():
    out = pad_to_square(torch.ones(4, 2, 3))
    assert out.shape == (4, 4, 3)
    assert torch.all(out[:, 0] == 0) and torch.all(out[:, 3] == 0)
    assert torch.all(out[:, 1:3] == 1)


def test_pad_to_square_odd_amount_goes_after():
    out = pad_to_square(torch.ones(5, 2, 3))
    assert out.shape == (5, 5, 3)
    assert torch.all(out[:, 0] == 0)
    assert torch.all(out[:, 1:3] == 1)
    assert torch.all(out[:, 3:] == 0)


def test_pad_to_square_not_centered():
    out = pad_to_square(torch.ones(2, 4, 3), is_center=False)
    assert out.shape == (4, 4, 3)
    assert torch.all(out[:2] == 1)
    assert torch.all(out[2:] == 0)


def test_pad_to_square_noop_for_square():
    image = torch.rand(6, 6, 3)
    assert pad_to_square(image) is image


def test_to_batch_tensor_shapes():
    net_input = NetInput([torch.rand(100, 80, 3) * 255, torch.rand(112, 112, 3) * 255])
    assert net_input.batch_size == 2
    assert net_input.input_dimensions == [(100, 80, 3), (112, 112, 3)]
    batch = net_input.to_batch_tensor(112)
    assert batch.shape == (2, 112, 112, 3)
    assert batch.dtype == torch.float32


def test_to_batch_tensor_keeps_correctly_sized_images():
    image = torch.randint(0, 256, (112, 112, 3), dtype=torch.uint8)
    batch = NetInput(image).to_batch_tensor(112)
    assert torch.equal(batch[0], image.to(torch.float32))


@pytest.mark.parametrize("bad", [torch.zeros(4, 4, 1), torch.zeros(4, 4), [torch.zeros(2, 2, 4)], []])
def test_net_input_rejects_bad_shapes(bad):
    with pytest.raises(ValueError):
        NetInput(bad)


def test_to_net_input_from_file(tmp_path, rgb_array):
    path = tmp_path / "face.png"
    Image.fromarray(rgb_array).save(path)
    net_input = asyncio.run(to_net_input(str(path)))
    assert net_input.batch_size == 1
    assert torch.equal(net_input.get_input(0), torch.from_numpy(rgb_array))


def test_to_net_input_from_bytes_and_pil(rgb_array):
    items = [_png_bytes(rgb_array), Image.fromarray(rgb_array), rgb_array]
    net_input = asyncio.run(to_net_input(items))
    assert net_input.batch_size == 3
    for idx in range(3):
        assert torch.equal(net_input.get_input(idx), torch.from_numpy(rgb_array))


def test_to_net_input_converts_grayscale_pil():
    gray = Image.fromarray(np.full((5, 5), 77, dtype=np.uint8))
    net_input = asyncio.run(to_net_input(gray))
    assert net_input.input_dimensions == [(5, 5, 3)]


def test_to_net_input_batch_array(rgb_array):
    batch = np.stack([rgb_array, rgb_array])
    net_input = asyncio.run(to_net_input(batch))
    assert net_input.batch_size == 2


def test_to_net_input_passes_net_input_through():
    net_input = NetInput(torch.zeros(3, 3, 3))
    assert asyncio.run(to_net_input(net_input)) is net_input


def test_to_net_input_errors(tmp_path):
    with pytest.raises(ValueError, match="empty array"):
        asyncio.run(to_net_input([]))
    with pytest.raises(TypeError):
        asyncio.run(to_net_input(42))
    with pytest.raises(FileNotFoundError):
        asyncio.run(to_net_input(str(tmp_path / "missing.jpg")))
    with pytest.raises(ValueError):
        asyncio.run(to_net_input(np.zeros((4, 4), dtype=np.uint8)))


# ---------- resize_bilinear ----------
def test_resize_bilinear_upscale_samples_without_half_pixel_offset():
    plane = torch.tensor([[0.0, 10.0], [20.0, 30.0]])
    image = plane[:, :, None].repeat(1, 1, 3)
    out = resize_bilinear(image, 4)
    expected = torch.tensor([
        [0.0, 5.0, 10.0, 10.0],
        [10.0, 15.0, 20.0, 20.0],
        [20.0, 25.0, 30.0, 30.0],
        [20.0, 25.0, 30.0, 30.0],
    ])
    assert out.shape == (4, 4, 3)
    for c in range(3):
        assert torch.equal(out[:, :, c], expected)


def test_resize_bilinear_downscale_picks_source_pixels():
    image = torch.arange(16 * 3, dtype=torch.float32).reshape(4, 4, 3)
    assert torch.equal(resize_bilinear(image, 2), image[::2, ::2])


def test_to_batch_tensor_uses_bilinear_resize():
    image = torch.rand(56, 56, 3) * 255
    batch = NetInput(image).to_batch_tensor(112)
    assert torch.equal(batch[0], resize_bilinear(image, 112))
