from dataclasses import replace

import numpy as np
import pytest
import torch

from tinyxception.models import extract_params, extract_params_from_weight_map, num_weights, weight_layout
from tinyxception.models.errors import MissingBlockParamsError, ShapeMismatchError
from tinyxception.models.extract_params import random_weights
from tinyxception.models.params import ParamMapping, SeparableConvParams


def _weight_map(num_main_blocks, seed=0):
    params, _ = extract_params(random_weights(num_main_blocks, seed), num_main_blocks)
    return dict(params.named_tensors())


def test_num_weights():
    assert num_weights(0) == 314208
    assert num_weights(2) == 420192
    assert num_weights(3) - num_weights(2) == 52992


def test_weight_layout_order():
    layout = weight_layout(1)
    assert layout[0] == ("entry_flow/conv_in/filters", (3, 3, 3, 32))
    assert layout[1] == ("entry_flow/conv_in/bias", (32,))
    assert layout[-1] == ("exit_flow/separable_conv/bias", (512,))
    keys = [k for k, _ in layout]
    assert keys.index("entry_flow/reduction_block_1/expansion_conv/bias") < keys.index(
        "middle_flow/main_block_0/separable_conv0/depthwise_filter")
    assert len(keys) == len(set(keys))


def test_extract_params_consumes_buffer_in_order(flat_weights):
    params, mappings = extract_params(flat_weights, 2)
    flat = torch.cat([t.reshape(-1) for _, t in params.named_tensors()])
    assert torch.equal(flat, flat_weights)
    assert params.num_main_blocks == 2
    assert params.out_channels == 512
    assert params.num_weights == 420192
    assert mappings[0] == ParamMapping("entry_flow/conv_in/filters", "entry_flow.conv_in.filters")
    assert ParamMapping("middle_flow/main_block_1/separable_conv2/bias",
                        "middle_flow.1.separable_conv2.bias") in mappings
    assert [m.original_path for m in mappings] == [k for k, _ in weight_layout(2)]


def test_extract_params_copies_weights(flat_weights):
    buf = flat_weights.clone()
    params, _ = extract_params(buf, 2)
    buf.zero_()
    assert params.entry_flow.conv_in.filters.abs().sum() > 0


def test_extract_params_accepts_numpy(flat_weights):
    params, _ = extract_params(flat_weights.numpy(), 2)
    assert torch.equal(params.exit_flow.separable_conv.bias, flat_weights[-512:])


def test_extract_params_rejects_short_buffer(flat_weights):
    with pytest.raises(ValueError, match="too short"):
        extract_params(flat_weights[:-1], 2)


def test_extract_params_rejects_leftover_weights(flat_weights):
    with pytest.raises(ValueError, match="remaining"):
        extract_params(torch.cat([flat_weights, torch.zeros(3)]), 2)


@pytest.mark.parametrize("num_main_blocks", [1, 3])
def test_extract_params_wrong_block_count(flat_weights, num_main_blocks):
    with pytest.raises(ValueError):
        extract_params(flat_weights, num_main_blocks)


@pytest.mark.parametrize("bad", [-1, 1.5, True, "2"])
def test_invalid_num_main_blocks(bad):
    with pytest.raises(ValueError):
        weight_layout(bad)


def test_weight_map_matches_flat_path(flat_weights):
    flat_params, flat_mappings = extract_params(flat_weights, 2)
    map_params, map_mappings = extract_params_from_weight_map(dict(flat_params.named_tensors()), 2)
    assert flat_mappings == map_mappings
    for (k1, t1), (k2, t2) in zip(flat_params.named_tensors(), map_params.named_tensors()):
        assert k1 == k2
        assert torch.equal(t1, t2)


def test_weight_map_accepts_numpy_and_ignores_unknown_keys():
    weight_map = {k: v.numpy() for k, v in _weight_map(1).items()}
    weight_map["fc/weights"] = np.zeros((512, 2), dtype=np.float32)
    params, mappings = extract_params_from_weight_map(weight_map, 1)
    assert params.num_main_blocks == 1
    assert all(m.original_path != "fc/weights" for m in mappings)


def test_weight_map_with_extra_main_blocks_is_rejected():
    with pytest.raises(ValueError, match="beyond"):
        extract_params_from_weight_map(_weight_map(2), 1)


def test_weight_map_missing_main_block():
    with pytest.raises(MissingBlockParamsError) as exc:
        extract_params_from_weight_map(_weight_map(1), 2)
    assert exc.value.index == 1
    assert exc.value.available == 1
    assert isinstance(exc.value, KeyError)
    assert "main_block_1" in str(exc.value)


def test_weight_map_missing_key():
    weight_map = _weight_map(0)
    del weight_map["exit_flow/reduction_block/expansion_conv/bias"]
    with pytest.raises(KeyError, match="expansion_conv/bias"):
        extract_params_from_weight_map(weight_map, 0)


def test_weight_map_wrong_shape():
    weight_map = _weight_map(0)
    weight_map["entry_flow/conv_in/filters"] = torch.zeros(3, 3, 3, 16)
    with pytest.raises(ShapeMismatchError) as exc:
        extract_params_from_weight_map(weight_map, 0)
    assert exc.value.stage == "entry_flow/conv_in"


def test_validate_detects_broken_channel_chain(flat_weights):
    params, _ = extract_params(flat_weights, 2)
    params.validate()

    sep = SeparableConvParams(torch.zeros(3, 3, 128, 1), torch.zeros(1, 1, 128, 512), torch.zeros(512))
    broken = replace(params, exit_flow=replace(params.exit_flow, separable_conv=sep))
    with pytest.raises(ShapeMismatchError) as exc:
        broken.validate()
    assert exc.value.stage == "exit_flow/separable_conv"


def test_random_weights_is_seeded():
    assert torch.equal(random_weights(0, seed=3), random_weights(0, seed=3))
    assert not torch.equal(random_weights(0, seed=3), random_weights(0, seed=4))
    assert random_weights(1).numel() == num_weights(1)
