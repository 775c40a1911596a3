# utils/inspect_utils.py
import torch


def tensor_stats(x: torch.Tensor):
    """Shape and summary statistics of a float tensor, as plain Python values."""
    x = x.detach()
    out = {"shape": tuple(x.shape),
           "has_nan": bool(torch.isnan(x).any().item()),
           "has_inf": bool(torch.isinf(x).any().item())}
    if not x.numel():
        out.update(min=None, max=None, mean=None, std=None, zero_frac=None)
        return out
    xf = x.float()
    out["min"] = float(xf.min().cpu())
    out["max"] = float(xf.max().cpu())
    out["mean"] = float(xf.mean().cpu())
    out["std"] = float(xf.std().cpu()) if xf.numel() > 1 else 0.0
    # fraction of dead (post-relu) activations
    out["zero_frac"] = float((xf == 0).float().mean().cpu())
    return out
