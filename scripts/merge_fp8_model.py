#!/usr/bin/env python
# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-License-Identifier: Apache-2.0

"""Dequantize an FP8 E4M3 checkpoint and merge its shards into one BF16 shard."""

from __future__ import annotations

import sys

from fp8merge.cli.fp8merge import main


if __name__ == "__main__":
    sys.exit(main(["merge", *sys.argv[1:]]))
