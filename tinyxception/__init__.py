"""TinyXception: compact depthwise-separable feature extractor (inference only)."""
from .models import (
    REGISTRY,
    MissingBlockParamsError,
    ShapeMismatchError,
    TinyXception,
    TinyXceptionError,
    UninitializedModelError,
)
from .data import NetInput, to_net_input

__version__ = "0.1.0"
