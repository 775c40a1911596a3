# models/errors.py
"""
Exceptions raised by the TinyXception graph and its parameter extraction.

All of them derive from TinyXceptionError and from the builtin that callers
would naturally catch (RuntimeError / ValueError / KeyError).
"""
from typing import Optional


class TinyXceptionError(Exception):
    """Base class for every error raised by this package."""


class UninitializedModelError(TinyXceptionError, RuntimeError):
    """Inference was requested before any parameters were loaded."""

    def __init__(self, model_name: str = "TinyXception"):
        super().__init__(f"{model_name} - load model before inference")
        self.model_name = model_name


class ShapeMismatchError(TinyXceptionError, ValueError):
    """Tensors reaching an op (or a loaded weight) have incompatible shapes."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        self.message = message
        super().__init__(f"[{stage}] {message}" if stage else message)

    def with_stage(self, stage: str) -> "ShapeMismatchError":
        return ShapeMismatchError(self.message, stage=stage)


class MissingBlockParamsError(TinyXceptionError, KeyError):
    """A main block index has no parameters in the loaded weights."""

    def __init__(self, index: int, available: int, key: Optional[str] = None):
        self.index = index
        self.available = available
        self.key = key
        detail = f" (expected key '{key}')" if key else ""
        super().__init__(
            f"middle_flow/main_block_{index} missing: only {available} main block(s) loaded{detail}"
        )

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]
