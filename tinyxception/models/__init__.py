# models/__init__.py

REGISTRY = {}


def register(name):
    def deco(fn):
        REGISTRY[name] = fn
        return fn
    return deco


# importing the module registers "tiny_xception"
from .tiny_xception import TinyXception, main_block, preprocess, reduction_block  # noqa: E402
from .extract_params import extract_params, extract_params_from_weight_map, num_weights, weight_layout  # noqa: E402
from .errors import (  # noqa: E402
    MissingBlockParamsError,
    ShapeMismatchError,
    TinyXceptionError,
    UninitializedModelError,
)
