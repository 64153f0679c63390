# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""Dtype tables, BF16 narrowing and block-wise FP8 dequantization."""

from __future__ import annotations

import logging
import struct
from typing import Optional, Sequence, Union

import torch

from ..utils.logger import setup_logger


LOG = logging.getLogger(__name__)
log = setup_logger()

F8_E4M3 = "F8_E4M3"
BF16 = "BF16"
F32_NAMES = frozenset({"F32", "float32"})

# dtypes the pipeline understands; everything else is opaque bytes
ELEMENT_SIZES = {
    F8_E4M3: 1,
    BF16: 2,
    "F32": 4,
    "float32": 4,
}

__all__ = [
    "F8_E4M3",
    "BF16",
    "F32_NAMES",
    "ELEMENT_SIZES",
    "element_size",
    "is_f32",
    "ceil_div",
    "float32_to_bfloat16",
    "float32_to_bfloat16_bits",
    "bfloat16_to_float32",
    "tensor_to_bytes",
    "dequantize_blocks",
]

BufferLike = Union[bytes, bytearray, memoryview]


def element_size(dtype: str) -> Optional[int]:
    """Bytes per element for known dtypes, ``None`` for opaque ones."""
    return ELEMENT_SIZES.get(dtype)


def is_f32(dtype: str) -> bool:
    return dtype in F32_NAMES


def ceil_div(value: int, divisor: int) -> int:
    return (value + divisor - 1) // divisor


def float32_to_bfloat16(tensor: torch.Tensor) -> torch.Tensor:
    """Narrow float32 values to BF16 by dropping the low 16 bits.

    This truncates (rounds toward zero) instead of rounding to nearest even,
    so the result differs from ``tensor.to(torch.bfloat16)`` whenever the
    discarded half is non-zero. NaN/Inf bit patterns keep their top half.
    """

    bits = tensor.to(torch.float32).contiguous().view(torch.int32)
    # arithmetic shift keeps the result inside int16 range
    return (bits >> 16).to(torch.int16).view(torch.bfloat16)


def float32_to_bfloat16_bits(value: float) -> int:
    """Scalar form of :func:`float32_to_bfloat16`, returning the 16-bit pattern."""
    (bits,) = struct.unpack("<I", struct.pack("<f", value))
    return bits >> 16


def bfloat16_to_float32(tensor: torch.Tensor) -> torch.Tensor:
    # widening is exact
    return tensor.to(torch.float32)


def tensor_to_bytes(tensor: torch.Tensor) -> bytes:
    """Raw element bytes of ``tensor`` in native (little-endian) order."""

    if tensor.numel() == 0:
        return b""
    flat = tensor.detach().to("cpu").contiguous().reshape(-1)
    return flat.view(torch.uint8).numpy().tobytes()


def _as_codes(quantized: Union[BufferLike, Sequence[int], torch.Tensor]) -> torch.Tensor:
    if isinstance(quantized, torch.Tensor):
        flat = quantized.reshape(-1)
        if flat.dtype == torch.uint8:
            return flat
        if flat.element_size() == 1 and flat.dtype != torch.int8:
            # float8 payloads: reinterpret the stored byte
            return flat.view(torch.uint8)
        return flat.to(torch.uint8)

    if isinstance(quantized, (bytes, bytearray, memoryview)):
        if len(quantized) == 0:
            return torch.empty(0, dtype=torch.uint8)
        buf = quantized if isinstance(quantized, bytearray) else bytearray(quantized)
        return torch.frombuffer(buf, dtype=torch.uint8)

    return torch.tensor(list(quantized), dtype=torch.uint8)


def _as_scales(scale_inv: Union[BufferLike, Sequence[float], torch.Tensor]) -> torch.Tensor:
    if isinstance(scale_inv, torch.Tensor):
        return scale_inv.reshape(-1).to(torch.float32)

    if isinstance(scale_inv, (bytes, bytearray, memoryview)):
        if len(scale_inv) == 0 or len(scale_inv) % 4:
            return torch.empty(0, dtype=torch.float32)
        buf = scale_inv if isinstance(scale_inv, bytearray) else bytearray(scale_inv)
        return torch.frombuffer(buf, dtype=torch.float32)

    return torch.tensor(list(scale_inv), dtype=torch.float32)


def _decode_codes(codes: torch.Tensor, decode_fp8: bool) -> torch.Tensor:
    if not decode_fp8:
        return codes.to(torch.float32)

    if not hasattr(torch, "float8_e4m3fn"):
        raise RuntimeError("Current PyTorch build does not provide float8_e4m3fn tensors")
    return codes.contiguous().view(torch.float8_e4m3fn).to(torch.float32)


def dequantize_blocks(
    quantized: Union[BufferLike, Sequence[int], torch.Tensor],
    scale_inv: Union[BufferLike, Sequence[float], torch.Tensor],
    rows: int,
    cols: int,
    block_size: int = 128,
    *,
    decode_fp8: bool = False,
) -> torch.Tensor:
    """Dequantize a ``rows x cols`` block-quantized matrix into BF16.

    ``scale_inv`` holds one inverse scale per ``block_size x block_size`` tile
    in row-major tile order. Every element of tile ``(br, bc)`` is multiplied
    by ``1 / scale_inv[br * num_col_blocks + bc]`` in float32 and narrowed
    with :func:`float32_to_bfloat16`. Edge tiles are clipped to the matrix.

    By default a stored byte is read as its unsigned integer code; pass
    ``decode_fp8=True`` to decode it as an E4M3 float first.

    Invalid input is logged and yields an empty tensor instead of raising.
    """

    if rows <= 0 or cols <= 0 or block_size <= 0:
        log.error(f"Dequantize: invalid dimensions rows={rows}, cols={cols}, block_size={block_size}.")
        return torch.empty(0, dtype=torch.bfloat16)

    codes = _as_codes(quantized)
    scales_inv = _as_scales(scale_inv)

    if codes.numel() != rows * cols:
        log.error(f"Dequantize: quantized size {codes.numel()} does not match rows * cols = {rows * cols}.")
        return torch.empty(0, dtype=torch.bfloat16)

    num_row_blocks = ceil_div(rows, block_size)
    num_col_blocks = ceil_div(cols, block_size)
    if scales_inv.numel() != num_row_blocks * num_col_blocks:
        log.error(
            f"Dequantize: scale_inv size does not match the expected number of blocks "
            f"({num_row_blocks * num_col_blocks} vs {scales_inv.numel()})."
        )
        return torch.empty(0, dtype=torch.bfloat16)

    # 1 / 0 -> inf is kept and propagates into the output
    scale = torch.reciprocal(scales_inv.reshape(num_row_blocks, num_col_blocks))
    codes = codes.reshape(rows, cols)
    result = torch.empty((rows, cols), dtype=torch.float32)

    for br in range(num_row_blocks):
        r0 = br * block_size
        r1 = min(r0 + block_size, rows)
        col_scale = scale[br].repeat_interleave(block_size)[:cols]
        result[r0:r1] = _decode_codes(codes[r0:r1], decode_fp8) * col_scale

    LOG.debug(
        "Dequantized %dx%d matrix with %dx%d blocks of size %d",
        rows,
        cols,
        num_row_blocks,
        num_col_blocks,
        block_size,
    )
    return float32_to_bfloat16(result)
