# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""Per-tensor conversion into the bytes written to the merged shard.

Planning decides the action and the exact output size from headers alone, so
the merged header can be finalized before any tensor data is read. The
materialize step then produces bytes whose length matches the plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

import torch

from ..config import MergeConfig
from ..errors import MissingReferenceError, ShapeMismatchError
from ..quantization.dtype import (
    BF16,
    F8_E4M3,
    ceil_div,
    dequantize_blocks,
    element_size,
    float32_to_bfloat16,
    is_f32,
    tensor_to_bytes,
)
from .logger import setup_logger
from .shard_index import ResolvedModel, TensorDescriptor


LOG = logging.getLogger(__name__)
log = setup_logger()


class Action(str, Enum):
    DEQUANTIZE = "dequantize"
    COPY = "copy"
    NARROW = "narrow"
    PASSTHROUGH = "passthrough"
    DROP = "drop"


@dataclass(frozen=True)
class MaterializationPlan:
    descriptor: TensorDescriptor
    action: Action
    dtype: str
    shape: Tuple[int, ...]
    num_bytes: int
    scale: Optional[TensorDescriptor] = None
    reason: Optional[str] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def dropped(self) -> bool:
        return self.action is Action.DROP or self.num_bytes == 0


def _drop(desc: TensorDescriptor, reason: str) -> MaterializationPlan:
    return MaterializationPlan(
        descriptor=desc,
        action=Action.DROP,
        dtype=desc.dtype,
        shape=desc.shape,
        num_bytes=0,
        reason=reason,
    )


class TensorMaterializer:
    def __init__(self, resolved: ResolvedModel, config: Optional[MergeConfig] = None):
        self.resolved = resolved
        self.config = config or MergeConfig()

    def plan(self, desc: TensorDescriptor) -> MaterializationPlan:
        if desc.dtype == F8_E4M3:
            try:
                return self._plan_dequantize(desc)
            except (MissingReferenceError, ShapeMismatchError) as exc:
                log.warn(f"Materialize: dropping fp8 tensor `{desc.name}`: {exc}")
                return _drop(desc, str(exc))

        if desc.dtype == BF16:
            return MaterializationPlan(desc, Action.COPY, BF16, desc.shape, desc.num_bytes)

        if is_f32(desc.dtype):
            return MaterializationPlan(desc, Action.NARROW, BF16, desc.shape, desc.numel * element_size(BF16))

        LOG.debug("Passing through tensor '%s' with opaque dtype %s", desc.name, desc.dtype)
        return MaterializationPlan(desc, Action.PASSTHROUGH, desc.dtype, desc.shape, desc.num_bytes)

    def _plan_dequantize(self, desc: TensorDescriptor) -> MaterializationPlan:
        if desc.ndim != 2:
            raise ShapeMismatchError(f"expected a 2-D matrix, shape is {list(desc.shape)}")

        scale = self.resolved.descriptors.scale_for(desc.name)
        if not is_f32(scale.dtype):
            raise ShapeMismatchError(f"scale tensor `{scale.name}` has dtype {scale.dtype}, expected F32")

        rows, cols = desc.shape
        block_size = self.config.block_size
        expected = ceil_div(rows, block_size) * ceil_div(cols, block_size)
        count = scale.num_bytes // 4
        if scale.num_bytes % 4 or count != expected:
            raise ShapeMismatchError(
                f"scale tensor `{scale.name}` holds {count} values, {expected} blocks expected "
                f"for shape {list(desc.shape)} and block size {block_size}"
            )

        LOG.debug("Planned dequantization of '%s' with scale '%s' from shard '%s'", desc.name, scale.name, scale.shard)
        return MaterializationPlan(
            descriptor=desc,
            action=Action.DEQUANTIZE,
            dtype=BF16,
            shape=desc.shape,
            num_bytes=rows * cols * element_size(BF16),
            scale=scale,
        )

    def plan_all(self) -> List[MaterializationPlan]:
        """Plan every resolved tensor in ascending name order."""

        plans: Dict[str, MaterializationPlan] = {
            name: self.plan(self.resolved.descriptors[name]) for name in sorted(self.resolved.descriptors)
        }

        if self.config.drop_consumed_scales:
            for plan in list(plans.values()):
                if plan.action is not Action.DEQUANTIZE or plan.scale is None:
                    continue
                consumed = plans.get(plan.scale.name)
                if consumed is not None and not consumed.dropped:
                    LOG.debug("Dropping scale tensor '%s' consumed by '%s'", plan.scale.name, plan.name)
                    plans[plan.scale.name] = _drop(
                        consumed.descriptor, f"scale table consumed by dequantized `{plan.name}`"
                    )

        return list(plans.values())

    def materialize(self, item: Union[TensorDescriptor, MaterializationPlan]) -> Union[bytes, bytearray]:
        plan = item if isinstance(item, MaterializationPlan) else self.plan(item)
        desc = plan.descriptor

        if plan.action is Action.DROP:
            return b""

        if plan.action in (Action.COPY, Action.PASSTHROUGH):
            return self.resolved.read(desc)

        if plan.action is Action.NARROW:
            raw = self.resolved.read(desc)
            values = torch.frombuffer(raw, dtype=torch.float32)
            return tensor_to_bytes(float32_to_bfloat16(values))

        rows, cols = desc.shape
        quantized = self.resolved.read(desc)
        scale_inv = self.resolved.read(plan.scale)
        result = dequantize_blocks(
            quantized,
            scale_inv,
            rows,
            cols,
            self.config.block_size,
            decode_fp8=self.config.decode_fp8,
        )
        if result.numel() == 0:
            log.warn(f"Materialize: could not dequantize fp8 tensor `{desc.name}`.")
            return b""
        return tensor_to_bytes(result)


__all__ = ["Action", "MaterializationPlan", "TensorMaterializer"]
