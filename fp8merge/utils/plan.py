# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..config import MergeConfig
from ..format.container import METADATA_KEY
from .materialize import MaterializationPlan


LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedTensor:
    name: str
    dtype: str
    shape: Tuple[int, ...]
    data_offsets: Tuple[int, int]
    plan: MaterializationPlan

    @property
    def num_bytes(self) -> int:
        return self.data_offsets[1] - self.data_offsets[0]

    def header_entry(self) -> dict:
        return {
            "dtype": self.dtype,
            "shape": list(self.shape),
            "data_offsets": list(self.data_offsets),
        }


@dataclass(frozen=True)
class MergePlan:
    """Finalized layout of the merged shard, in write order."""

    entries: Tuple[PlannedTensor, ...]
    metadata: Mapping[str, str]
    skipped: Mapping[str, str]

    def __iter__(self) -> Iterator[PlannedTensor]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def total_size(self) -> int:
        return self.entries[-1].data_offsets[1] if self.entries else 0

    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]

    def header(self) -> dict:
        header: Dict[str, object] = {}
        if self.metadata:
            header[METADATA_KEY] = dict(self.metadata)
        for entry in self.entries:
            header[entry.name] = entry.header_entry()
        return header


def assign_offsets(lengths: Iterable[Tuple[str, int]]) -> List[Tuple[str, int, int]]:
    """Lay ``(name, length)`` pairs out back to back in ascending name order.

    Zero-length items get no range at all.
    """

    ordered = sorted(lengths, key=lambda item: item[0])
    offsets: List[Tuple[str, int, int]] = []
    running = 0
    seen = set()
    for name, length in ordered:
        if name == METADATA_KEY:
            continue
        if name in seen:
            raise ValueError(f"Duplicate tensor name `{name}` in merge plan")
        seen.add(name)
        if length < 0:
            raise ValueError(f"Negative length {length} for `{name}`")
        if length == 0:
            continue
        offsets.append((name, running, running + length))
        running += length
    return offsets


class MergePlanner:
    def __init__(self, config: Optional[MergeConfig] = None):
        self.config = config or MergeConfig()

    def build(self, plans: Iterable[MaterializationPlan]) -> MergePlan:
        by_name: Dict[str, MaterializationPlan] = {}
        skipped: Dict[str, str] = {}
        for plan in plans:
            if plan.name in by_name:
                raise ValueError(f"Duplicate tensor name `{plan.name}` in merge plan")
            by_name[plan.name] = plan
            if plan.dropped:
                skipped[plan.name] = plan.reason or "empty materialization"

        entries = []
        for name, start, end in assign_offsets((name, plan.num_bytes) for name, plan in by_name.items()):
            plan = by_name[name]
            entries.append(
                PlannedTensor(name=name, dtype=plan.dtype, shape=plan.shape, data_offsets=(start, end), plan=plan)
            )

        merged = MergePlan(
            entries=tuple(entries),
            metadata=MappingProxyType(dict(self.config.metadata)),
            skipped=MappingProxyType(skipped),
        )
        LOG.debug(
            "Planned %d tensors (%d bytes), skipped %d",
            len(merged),
            merged.total_size,
            len(skipped),
        )
        return merged


__all__ = ["PlannedTensor", "MergePlan", "MergePlanner", "assign_offsets"]
