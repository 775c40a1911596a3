# scripts/export_weights.py
# Convert between the two weight formats:
#   .pt  named weight map  ("entry_flow/conv_in/filters" -> tensor)
#   .bin raw float32 buffer in extraction order
import argparse
import os

from loguru import logger

from tinyxception.models import TinyXception
from tinyxception.utils.checkpoint_utils import load_weights, save_flat_weights, save_weight_map


def export(src, dst, num_main_blocks):
    model = TinyXception(num_main_blocks)
    weights = load_weights(src)
    # loading through the model validates shapes and block count
    if isinstance(weights, dict):
        model.load_from_weight_map(weights)
    else:
        model.load_from_weights(weights)

    weight_map = model.get_weight_map()
    if dst.endswith(".bin"):
        n = save_flat_weights(dst, weight_map.values())
        logger.info("Wrote {}: {} tensors, {} floats", dst, len(weight_map), n)
    else:
        save_weight_map(dst, weight_map)
        logger.info("Wrote {}: {} tensors", dst, len(weight_map))


if __name__ == "__main__":
    ap = argparse.ArgumentParser()
    ap.add_argument("--src", required=True, help=".pt/.pth weight map or .bin buffer")
    ap.add_argument("--dst", default=os.path.join("weights", "tiny_xception_model.bin"))
    ap.add_argument("--num-main-blocks", type=int, default=2)
    args = ap.parse_args()
    export(args.src, args.dst, args.num_main_blocks)
