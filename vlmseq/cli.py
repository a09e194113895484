"""Command line entry point.

Usage:
    python -m vlmseq plan --config config.json --image a.png [--image b.png]
        [--strategy anyres|pad] [--max-context N] [--prompt-tokens N]
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
import time

from .config import ModelConfig
from .errors import VlmSeqError
from .image import load_image
from .merger import FeatureMerger
from .tiler import Tiler


def cmd_plan(args) -> int:
    config = ModelConfig.from_json(args.config) if args.config else ModelConfig()
    overrides = {}
    if args.strategy:
        overrides["image_aspect_ratio"] = args.strategy
    if args.max_context:
        overrides["max_context_length"] = args.max_context
    if args.merge_type:
        overrides["mm_patch_merge_type"] = args.merge_type
    if overrides:
        config = dataclasses.replace(config, **overrides)

    tiler = Tiler(config)
    merger = FeatureMerger(config)

    print(f"Tiling strategy: {config.image_aspect_ratio} "
          f"(tile {config.image_size}px, {config.patches_per_side}x{config.patches_per_side} patches)")
    print(f"Merge type: {config.mm_patch_merge_type}")

    print("\n--- Images ---")
    total = 0
    t0 = time.time()
    for path in args.image:
        img = load_image(path)
        plan = tiler.plan(img.size)
        n = merger.merged_length(plan)
        total += n
        print(f"  {path}: {img.width}x{img.height} -> grid {plan.rows}x{plan.cols}, "
              f"{plan.num_tiles} tile(s), {n} image tokens")

    print("\n--- Budget ---")
    used = total + args.prompt_tokens
    print(f"  Image tokens: {total}")
    print(f"  Prompt tokens: {args.prompt_tokens}")
    print(f"  Context: {used}/{config.max_context_length} "
          f"({config.max_context_length - used} left for text and generation)")
    if used > config.max_context_length:
        print(f"  Over budget by {used - config.max_context_length} tokens; "
              f"truncation policy '{config.truncation_policy}' applies")
    print(f"  ({time.time() - t0:.2f}s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vlmseq",
                                     description="Multimodal sequence assembly tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("plan", help="Show tiling plans and token budget for images")
    p.add_argument("--config", help="Model config.json (or directory containing it)")
    p.add_argument("--image", action="append", required=True, help="Input image (repeatable)")
    p.add_argument("--strategy", choices=["anyres", "pad"], help="Override image_aspect_ratio")
    p.add_argument("--merge-type", choices=["flat", "spatial", "spatial_unpad"],
                   help="Override mm_patch_merge_type")
    p.add_argument("--max-context", type=int, help="Override max context length")
    p.add_argument("--prompt-tokens", type=int, default=0,
                   help="Text tokens in the prompt, for budgeting")
    p.set_defaults(func=cmd_plan)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except VlmSeqError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
