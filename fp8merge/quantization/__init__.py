# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

from .dtype import (
    BF16,
    F8_E4M3,
    F32_NAMES,
    bfloat16_to_float32,
    dequantize_blocks,
    element_size,
    float32_to_bfloat16,
    float32_to_bfloat16_bits,
    tensor_to_bytes,
)
