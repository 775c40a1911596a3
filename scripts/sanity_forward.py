# scripts/sanity_forward.py
# Quick end-to-end check: load weights (or random ones) and run one forward pass.
#     python scripts/sanity_forward.py --img face.jpg --weights weights/
#     python scripts/sanity_forward.py --random --num-main-blocks 2
import argparse
import asyncio

import torch
from loguru import logger

from tinyxception.models import TinyXception
from tinyxception.models.extract_params import random_weights
from tinyxception.utils.inspect_utils import tensor_stats


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--img", default=None, help="image path; a random 112x112 batch is used if omitted")
    ap.add_argument("--weights", default=None, help="weight file or directory")
    ap.add_argument("--random", action="store_true", help="use seeded random weights")
    ap.add_argument("--num-main-blocks", type=int, default=2)
    ap.add_argument("--batch", type=int, default=2)
    ap.add_argument("--seed", type=int, default=0)
    args = ap.parse_args()

    model = TinyXception(args.num_main_blocks)
    if args.random or not args.weights:
        model.load_from_weights(random_weights(args.num_main_blocks, seed=args.seed))
    else:
        model.load(args.weights)

    if args.img:
        out = asyncio.run(model.forward(args.img))
    else:
        gen = torch.Generator().manual_seed(args.seed)
        batch = torch.randint(0, 256, (args.batch, 112, 112, 3), generator=gen).float()
        out = model.forward_input(batch)

    stats = tensor_stats(out)
    logger.info("Forward OK, output shape: {}", stats["shape"])
    logger.info("min={:.4f} max={:.4f} mean={:.4f} zero_frac={:.3f}",
                stats["min"], stats["max"], stats["mean"], stats["zero_frac"])


if __name__ == "__main__":
    main()
