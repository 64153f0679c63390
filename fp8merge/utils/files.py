# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

import json
import logging
import shutil
from pathlib import Path
from typing import Iterable, List


LOG = logging.getLogger(__name__)


def load_json(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")


def copy_aux_files(model_path: Path, output_path: Path, skip: Iterable[str]) -> List[str]:
    skip = set(skip)
    copied = []
    for item in sorted(model_path.iterdir()):
        if item.name in skip:
            continue
        target = output_path / item.name
        if item.is_dir():
            shutil.copytree(item, target, dirs_exist_ok=True)
        else:
            shutil.copy2(item, target)
        copied.append(item.name)
        LOG.debug("Copied auxiliary file '%s'", item.name)
    return copied


__all__ = ["load_json", "write_json", "copy_aux_files"]
