# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable

from fp8merge import DEBUG_ON
from fp8merge.cli.env import _handle_env_command
from fp8merge.config import MergeConfig
from fp8merge.errors import Fp8MergeError
from fp8merge.utils.logger import setup_logger
from fp8merge.utils.merge import merge_model


def _handle_merge_command(args: argparse.Namespace) -> int:
    log = setup_logger()
    try:
        config = MergeConfig.from_env(
            block_size=args.block_size,
            dry_run=args.dry_run or None,
            drop_consumed_scales=args.drop_scales or None,
            decode_fp8=args.decode_fp8 or None,
            copy_aux_files=args.copy_aux or None,
            output_shard_name=args.shard_name,
            output_index_name=args.index_name,
            index_filename=args.input_index,
        )
    except ValueError as exc:
        log.error(f"Invalid options: {exc}")
        return 2

    try:
        merge_model(args.input_dir, args.output_dir, config=config)
    except (Fp8MergeError, OSError) as exc:
        log.error(f"Merge failed: {exc}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fp8merge", description="Dequantize and merge sharded FP8 checkpoints")
    subparsers = parser.add_subparsers(dest="command")

    merge_parser = subparsers.add_parser("merge", help="Merge FP8/BF16/F32 shards into a single BF16 shard")
    merge_parser.add_argument("input_dir", type=Path, help="Directory holding the shards and their index")
    merge_parser.add_argument("output_dir", type=Path, help="Directory receiving the merged shard and index")
    merge_parser.add_argument("--dry-run", action="store_true", help="Plan and print the merged metadata only")
    merge_parser.add_argument("--block-size", type=int, default=None, help="Quantization tile edge (default: 128)")
    merge_parser.add_argument(
        "--drop-scales",
        action="store_true",
        help="Omit `*_scale_inv` tensors whose weight was dequantized",
    )
    merge_parser.add_argument(
        "--decode-fp8",
        action="store_true",
        help="Decode fp8 bytes as e4m3 floats instead of unsigned integer codes",
    )
    merge_parser.add_argument("--copy-aux", action="store_true", help="Copy config/tokenizer files to the output")
    merge_parser.add_argument("--input-index", default=None, help="Index file name inside input_dir")
    merge_parser.add_argument("--shard-name", default=None, help="File name of the merged shard")
    merge_parser.add_argument("--index-name", default=None, help="File name of the regenerated index")
    merge_parser.set_defaults(func=_handle_merge_command)

    env_parser = subparsers.add_parser("env", help="Inspect the local fp8merge runtime environment")
    env_parser.set_defaults(func=_handle_env_command)

    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if DEBUG_ON else logging.WARNING)

    if hasattr(args, "func"):
        return args.func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution entrypoint
    sys.exit(main())
