# utils/inference_utils.py
"""
Scope wrapped around a whole forward pass.

Inside the scope autograd is off (torch.inference_mode), so intermediates carry
no graph or version counters and are freed as soon as the pass drops them.
On CUDA the caching allocator can optionally be trimmed on exit.
"""
from contextlib import contextmanager
from typing import Iterator, Optional, Union

import torch
from loguru import logger


@contextmanager
def inference_scope(
    device: Optional[Union[str, torch.device]] = None,
    release_cached: bool = False,
) -> Iterator[None]:
    failed = False
    try:
        with torch.inference_mode():
            yield
    except BaseException:
        failed = True
        raise
    finally:
        if release_cached and device is not None and torch.device(device).type == "cuda":
            torch.cuda.empty_cache()
            logger.debug("Released cached CUDA blocks after {} forward pass", "failed" if failed else "completed")
