# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""`fp8merge env`: report the runtime the converter would run with."""

from __future__ import annotations

import argparse
import platform
import sys
from importlib import import_module
from importlib.util import find_spec
from typing import Dict, List, Sequence, Tuple

from fp8merge.version import __version__


def _format_header(title: str) -> str:
    return f"{title}\n{'-' * len(title)}"


def _collect_runtime_info() -> List[Tuple[str, str]]:
    info: List[Tuple[str, str]] = []

    info.append(("Python", sys.version.split()[0]))
    info.append(("Platform", platform.platform()))
    info.append(("Byte order", sys.byteorder))
    info.append(("fp8merge", __version__))

    try:
        import torch

        info.append(("PyTorch", torch.__version__))
        info.append(("float8_e4m3fn", "yes" if hasattr(torch, "float8_e4m3fn") else "no"))
    except ImportError as exc:  # pragma: no cover - torch is a hard dependency
        info.append(("PyTorch", f"not available ({exc})"))

    return info


def _collect_dependencies() -> List[Tuple[str, str]]:
    modules: Dict[str, str] = {
        "numpy": "numpy",
        "logbar": "logbar",
        "safetensors": "safetensors",
    }

    results: List[Tuple[str, str]] = []
    for module_name, display_name in modules.items():
        spec = find_spec(module_name)
        if spec is None:
            results.append((display_name, "not installed"))
            continue

        try:
            module = import_module(module_name)
        except ImportError as exc:  # pragma: no cover - broken installs only
            results.append((display_name, f"installed but import failed ({exc})"))
            continue

        version = getattr(module, "__version__", None) or getattr(module, "VERSION", None)
        results.append((display_name, version or "installed"))

    return results


def _print_table(rows: Sequence[Tuple[str, str]]) -> None:
    if not rows:
        return

    padding = max(len(key) for key, _ in rows) + 2
    for key, value in rows:
        print(f"{key:<{padding}}{value}")


def _handle_env_command(_args: argparse.Namespace) -> int:
    print(_format_header("fp8merge environment"))
    _print_table(_collect_runtime_info())

    print()
    print(_format_header("Dependencies"))
    _print_table(_collect_dependencies())
    return 0
