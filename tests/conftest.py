import pytest
import torch

from tinyxception.models import TinyXception
from tinyxception.models.extract_params import random_weights
from tinyxception.models.params import ConvParams, MainBlockParams, ReductionBlockParams, SeparableConvParams


# ---------- small random params for block-level tests ----------
def _conv(c_in, c_out, k, gen, zero=False):
    if zero:
        return ConvParams(torch.zeros(k, k, c_in, c_out), torch.zeros(c_out))
    return ConvParams(torch.randn(k, k, c_in, c_out, generator=gen) * 0.2,
                      torch.randn(c_out, generator=gen) * 0.05)


def _separable(c_in, c_out, gen, zero=False):
    if zero:
        return SeparableConvParams(torch.zeros(3, 3, c_in, 1), torch.zeros(1, 1, c_in, c_out), torch.zeros(c_out))
    return SeparableConvParams(torch.randn(3, 3, c_in, 1, generator=gen) * 0.3,
                               torch.randn(1, 1, c_in, c_out, generator=gen) * 0.3,
                               torch.randn(c_out, generator=gen) * 0.05)


@pytest.fixture
def gen():
    return torch.Generator().manual_seed(1234)


@pytest.fixture
def make_conv(gen):
    return lambda c_in, c_out, k=3, zero=False: _conv(c_in, c_out, k, gen, zero)


@pytest.fixture
def make_separable(gen):
    return lambda c_in, c_out, zero=False: _separable(c_in, c_out, gen, zero)


@pytest.fixture
def make_reduction(gen):
    def _make(c_in, c_out, zero_separable=False):
        return ReductionBlockParams(
            separable_conv0=_separable(c_in, c_out, gen, zero_separable),
            separable_conv1=_separable(c_out, c_out, gen, zero_separable),
            expansion_conv=_conv(c_in, c_out, 1, gen),
        )
    return _make


@pytest.fixture
def make_main(gen):
    def _make(channels, zero=False):
        return MainBlockParams(*[_separable(channels, channels, gen, zero) for _ in range(3)])
    return _make


# ---------- full network ----------
@pytest.fixture(scope="session")
def flat_weights():
    """Seeded flat buffer for a network with two main blocks."""
    return random_weights(2, seed=0)


@pytest.fixture
def loaded_model(flat_weights):
    model = TinyXception(2)
    model.load_from_weights(flat_weights)
    return model


@pytest.fixture
def image_batch():
    gen = torch.Generator().manual_seed(7)
    return torch.randint(0, 256, (2, 112, 112, 3), generator=gen).to(torch.float32)
