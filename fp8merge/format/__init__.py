# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

from .container import (
    HEADER_LEN_BYTES,
    METADATA_KEY,
    blob_size,
    encode_header,
    read_container,
    read_range,
    write_container,
)
