# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

import struct

import pytest
from shard_fixtures import bf16_bytes, f32_bytes, write_index, write_shard

from fp8merge.config import MergeConfig
from fp8merge.quantization.dtype import float32_to_bfloat16_bits
from fp8merge.utils.materialize import Action, TensorMaterializer
from fp8merge.utils.shard_index import ShardIndexResolver


SHARD = "model.safetensors"


def _materializer(tmp_path, tensors, config=None):
    write_shard(tmp_path / SHARD, tensors)
    write_index(tmp_path, dict.fromkeys(tensors, SHARD))
    config = config or MergeConfig()
    resolved = ShardIndexResolver(tmp_path, config).resolve_model()
    return TensorMaterializer(resolved, config), resolved


def test_dequantize_with_scale(tmp_path):
    materializer, resolved = _materializer(
        tmp_path,
        {
            "w": ("F8_E4M3", [2, 2], bytes([10, 20, 30, 40])),
            "w_scale_inv": ("F32", [1, 1], f32_bytes([0.5])),
        },
    )

    plan = materializer.plan(resolved.descriptors["w"])
    out = materializer.materialize(plan)

    assert plan.action is Action.DEQUANTIZE
    assert plan.dtype == "BF16"
    assert plan.num_bytes == 8
    assert plan.scale.name == "w_scale_inv"
    assert out == struct.pack("<4H", *(float32_to_bfloat16_bits(v) for v in (20.0, 40.0, 60.0, 80.0)))


def test_fp8_without_scale_is_dropped_not_copied(tmp_path):
    materializer, resolved = _materializer(tmp_path, {"w": ("F8_E4M3", [2, 2], bytes(4))})

    plan = materializer.plan(resolved.descriptors["w"])

    assert plan.action is Action.DROP
    assert plan.num_bytes == 0
    assert "w_scale_inv" in plan.reason
    assert materializer.materialize(plan) == b""


def test_fp8_non_matrix_is_dropped(tmp_path):
    materializer, resolved = _materializer(
        tmp_path,
        {
            "w": ("F8_E4M3", [4], bytes(4)),
            "w_scale_inv": ("F32", [1], f32_bytes([1.0])),
        },
    )

    assert materializer.plan(resolved.descriptors["w"]).action is Action.DROP


def test_fp8_scale_block_count_mismatch_is_dropped(tmp_path):
    materializer, resolved = _materializer(
        tmp_path,
        {
            "w": ("F8_E4M3", [4, 4], bytes(16)),
            "w_scale_inv": ("F32", [2, 2], f32_bytes([1.0] * 4)),
        },
    )

    # default block size 128 gives a single block
    assert materializer.plan(resolved.descriptors["w"]).action is Action.DROP


def test_fp8_block_size_from_config(tmp_path):
    materializer, resolved = _materializer(
        tmp_path,
        {
            "w": ("F8_E4M3", [4, 4], bytes([1] * 16)),
            "w_scale_inv": ("F32", [2, 2], f32_bytes([1.0, 0.5, 0.25, 0.125])),
        },
        MergeConfig(block_size=2),
    )

    out = materializer.materialize(resolved.descriptors["w"])
    values = struct.unpack("<16H", out)

    assert values[0] == float32_to_bfloat16_bits(1.0)
    assert values[3] == float32_to_bfloat16_bits(2.0)
    assert values[12] == float32_to_bfloat16_bits(4.0)
    assert values[15] == float32_to_bfloat16_bits(8.0)


def test_fp8_scale_with_wrong_dtype_is_dropped(tmp_path):
    materializer, resolved = _materializer(
        tmp_path,
        {
            "w": ("F8_E4M3", [2, 2], bytes(4)),
            "w_scale_inv": ("BF16", [1, 1], bf16_bytes([0x3F80])),
        },
    )

    assert materializer.plan(resolved.descriptors["w"]).action is Action.DROP


def test_bf16_is_copied_verbatim(tmp_path):
    raw = bf16_bytes([0x3F80, 0x1234, 0xFFFF])
    materializer, resolved = _materializer(tmp_path, {"b": ("BF16", [3], raw)})

    plan = materializer.plan(resolved.descriptors["b"])

    assert plan.action is Action.COPY
    assert bytes(materializer.materialize(plan)) == raw


@pytest.mark.parametrize("dtype", ["F32", "float32"])
def test_f32_is_narrowed_by_truncation(tmp_path, dtype):
    word = struct.unpack("<f", struct.pack("<I", 0x3F80FFFF))[0]
    materializer, resolved = _materializer(tmp_path, {"n": (dtype, [2, 1, 1], f32_bytes([word, -1.5]))})

    plan = materializer.plan(resolved.descriptors["n"])
    out = materializer.materialize(plan)

    assert plan.action is Action.NARROW
    assert plan.dtype == "BF16"
    assert plan.shape == (2, 1, 1)
    assert plan.num_bytes == 4
    assert out == struct.pack("<2H", 0x3F80, 0xBFC0)


def test_opaque_dtype_passes_through(tmp_path):
    raw = struct.pack("<2q", -1, 2 ** 40)
    materializer, resolved = _materializer(tmp_path, {"ids": ("I64", [2], raw)})

    plan = materializer.plan(resolved.descriptors["ids"])

    assert plan.action is Action.PASSTHROUGH
    assert plan.dtype == "I64"
    assert plan.shape == (2,)
    assert plan.num_bytes == len(raw)
    assert bytes(materializer.materialize(plan)) == raw


def test_consumed_scales_kept_by_default(tmp_path):
    tensors = {
        "w": ("F8_E4M3", [1, 1], b"\x02"),
        "w_scale_inv": ("F32", [1], f32_bytes([1.0])),
    }
    materializer, _ = _materializer(tmp_path, tensors)

    actions = {plan.name: plan.action for plan in materializer.plan_all()}

    assert actions == {"w": Action.DEQUANTIZE, "w_scale_inv": Action.NARROW}


def test_consumed_scales_dropped_when_configured(tmp_path):
    tensors = {
        "w": ("F8_E4M3", [1, 1], b"\x02"),
        "w_scale_inv": ("F32", [1], f32_bytes([1.0])),
        "orphan_scale_inv": ("F32", [1], f32_bytes([1.0])),
    }
    materializer, _ = _materializer(tmp_path, tensors, MergeConfig(drop_consumed_scales=True))

    plans = {plan.name: plan for plan in materializer.plan_all()}

    assert plans["w"].action is Action.DEQUANTIZE
    assert plans["w_scale_inv"].action is Action.DROP
    assert plans["orphan_scale_inv"].action is Action.NARROW
    assert list(plans) == sorted(plans)
