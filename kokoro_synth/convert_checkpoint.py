#!/usr/bin/env python3
"""Convert a Kokoro checkpoint between the .pth and .safetensors layouts"""
from .model import CORE_MODULES
from .weights import load_weights, save_checkpoint
from loguru import logger
import argparse
import sys


def convert(src, dst, core_only=False):
    weights = load_weights(src)
    logger.info(f"Found {len(weights)} parameters in {src}")
    if core_only:
        weights = {k: v for k, v in weights.items() if k.split('.')[0] in CORE_MODULES}
        logger.info(f"Keeping {len(weights)} synthesis-core parameters")
    save_checkpoint(weights, dst)
    logger.info(f"Saved checkpoint to {dst}")
    return weights


def main(argv=None):
    parser = argparse.ArgumentParser(description="Convert a Kokoro checkpoint between .pth and .safetensors.")
    parser.add_argument("src", type=str, help="Input checkpoint (.pth or .safetensors).")
    parser.add_argument("dst", type=str, help="Output checkpoint; the suffix selects the layout.")
    parser.add_argument("--core-only", action="store_true", help="Drop the phoneme encoder (bert, bert_encoder) tensors.")
    args = parser.parse_args(argv)

    logger.enable("kokoro_synth")
    convert(args.src, args.dst, core_only=args.core_only)
    return 0


if __name__ == "__main__":
    sys.exit(main())
