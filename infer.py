import argparse
import asyncio
import os
import time

import torch
from tqdm import tqdm

from tinyxception.utils.config_utils import load_cfg, cfg_get
from tinyxception.utils.logging_utils import init_logger
from tinyxception.utils.builders import build_model_from_cfg
from tinyxception.utils.inspect_utils import tensor_stats

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".bmp", ".gif")


def list_images(path):
    if os.path.isfile(path):
        return [path]
    return sorted(
        os.path.join(path, f) for f in os.listdir(path)
        if f.lower().endswith(IMAGE_SUFFIXES)
    )


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--cfg", required=True)
    ap.add_argument("--input", required=True, help="image file or folder of images")
    ap.add_argument("--out", default=None)
    ap.add_argument("--weights", default=None, help="overrides cfg 'weights'")
    ap.add_argument("--over", nargs="*", default=[])
    args = ap.parse_args()

    cfg = load_cfg(args.cfg, overrides=args.over)
    out_dir = args.out or f'{cfg.get("output_dir", "outputs")}/{cfg.get("exp_name", "run")}-{time.strftime("%Y%m%d-%H%M%S")}'
    os.makedirs(out_dir, exist_ok=True)

    log_cfg = cfg.get("logging", {}) or {}
    logger = init_logger(
        debug=log_cfg.get("debug", False),
        log_dir=out_dir,
        log_level=log_cfg.get("level", "INFO"),
    )

    # -------------------------
    # Device
    # -------------------------
    device = cfg_get(cfg, "system.device", "cpu")
    if str(device).startswith("cuda") and not torch.cuda.is_available():
        logger.warning("CUDA requested but not available, using CPU.")
        device = "cpu"
    logger.info("Device: {} | Output directory: {}", device, out_dir)

    # -------------------------
    # Model
    # -------------------------
    model = build_model_from_cfg(cfg["model"], device=device, weights=args.weights or cfg.get("weights"))

    # -------------------------
    # Images -> features
    # -------------------------
    paths = list_images(args.input)
    if not paths:
        logger.error("No images found at {}", args.input)
        raise SystemExit(1)

    batch_size = int(cfg.get("batch_size", 16))
    features = []
    for start in tqdm(range(0, len(paths), batch_size), desc="infer", unit="batch"):
        chunk = paths[start:start + batch_size]
        feats = asyncio.run(model.forward(chunk))
        features.append(feats.cpu())
    features = torch.cat(features, dim=0)

    stats = tensor_stats(features)
    logger.info("Features: shape={} mean={:.4f} std={:.4f} zero_frac={:.3f}",
                stats["shape"], stats["mean"], stats["std"], stats["zero_frac"])
    if stats["has_nan"] or stats["has_inf"]:
        logger.warning("Non-finite values in features (nan={}, inf={})", stats["has_nan"], stats["has_inf"])

    feat_path = os.path.join(out_dir, "features.pt")
    torch.save({"paths": paths, "features": features}, feat_path)

    shapes_path = os.path.join(out_dir, "shapes.txt")
    with open(shapes_path, "w") as f:
        for p, feat in zip(paths, features):
            f.write(f"{p}\t{tuple(feat.shape)}\n")

    logger.info("Features saved to: {}", feat_path)


if __name__ == "__main__":
    main()
