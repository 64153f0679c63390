# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""Dequantize a sharded FP8 checkpoint and merge it into a single BF16 shard."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from ..config import CONFIG_FILENAME, MergeConfig
from ..errors import OutputError
from .assemble import OutputAssembler
from .files import copy_aux_files, load_json, write_json
from .logger import log_time_block, setup_logger
from .materialize import TensorMaterializer
from .plan import MergePlan, MergePlanner, PlannedTensor
from .shard_index import ResolvedModel, ShardIndexResolver


LOG = logging.getLogger(__name__)


@dataclass
class MergeReport:
    processed: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    total_size: int = 0
    output_shard: Optional[Path] = None
    output_index: Optional[Path] = None
    dry_run: bool = False
    copied: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"processed {len(self.processed)} tensors, skipped {len(self.skipped)}, "
            f"{self.total_size} bytes{' (dry run)' if self.dry_run else ''}"
        )


def plan_merge(model_path: Path | str, config: Optional[MergeConfig] = None):
    """Resolve and plan a merge without touching the output directory.

    Returns ``(plan, materializer, resolved)``.
    """

    config = config or MergeConfig()
    with log_time_block("resolve"):
        resolved = ShardIndexResolver(model_path, config).resolve_model()

    materializer = TensorMaterializer(resolved, config)
    with log_time_block("plan"):
        plan = MergePlanner(config).build(materializer.plan_all())
    return plan, materializer, resolved


def _rewrite_model_config(model_path: Path, output_path: Path) -> None:
    config = load_json(model_path / CONFIG_FILENAME)
    if not config:
        return
    config.pop("quantization_config", None)
    config["torch_dtype"] = "bfloat16"
    write_json(output_path / CONFIG_FILENAME, config)


def _guard_inputs(assembler: OutputAssembler, resolved: ResolvedModel, config: MergeConfig) -> None:
    """Refuse to write the merged shard or index over any input file."""

    inputs = {(resolved.root / shard).resolve() for shard in resolved.shards}
    inputs.add((resolved.root / config.index_filename).resolve())
    for target in (assembler.shard_path, assembler.index_path):
        if target.resolve() in inputs:
            raise OutputError(f"refusing to overwrite input file `{target}`; choose another output directory or name")


def merge_model(
    model_path: Path | str,
    output_path: Path | str,
    *,
    config: Optional[MergeConfig] = None,
) -> MergeReport:
    model_path = Path(model_path)
    output_path = Path(output_path)
    config = config or MergeConfig()
    log = setup_logger()

    LOG.debug("Starting merge of '%s' into '%s' with %s", model_path, output_path, config.to_dict())
    plan, materializer, resolved = plan_merge(model_path, config)

    report = MergeReport(dry_run=config.dry_run)
    report.processed = plan.names()
    report.total_size = plan.total_size
    report.skipped.update(resolved.dropped)
    report.skipped.update(plan.skipped)

    if config.dry_run:
        log.info(f"Merged metadata (dry run):\n{json.dumps(plan.header(), indent=4)}")
        log.info(f"Dry run complete, no output written: {report.summary()}")
        return report

    def provide(entry: PlannedTensor):
        return materializer.materialize(entry.plan)

    assembler = OutputAssembler(output_path, config)
    _guard_inputs(assembler, resolved, config)
    with log_time_block("assemble"):
        report.output_shard, report.output_index = assembler.assemble(plan, provide)

    if config.copy_aux_files:
        skip = set(resolved.shards) | {
            config.index_filename,
            config.output_shard_name,
            config.output_index_name,
            CONFIG_FILENAME,
        }
        report.copied = copy_aux_files(model_path, output_path, skip)
        _rewrite_model_config(model_path, output_path)

    for name, reason in sorted(report.skipped.items()):
        LOG.debug("Skipped '%s': %s", name, reason)
    log.info(f"Merge complete: {report.summary()}. BF16 model saved to {output_path}")
    return report


__all__ = ["MergeReport", "merge_model", "plan_merge", "MergePlan"]
