# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

import logging

from .utils.env import env_flag


DEBUG_ON = env_flag("DEBUG")

if DEBUG_ON:
    logging.getLogger(__name__).setLevel(logging.DEBUG)

from .config import MergeConfig  # noqa: E402
from .errors import (  # noqa: E402
    FormatError,
    Fp8MergeError,
    MissingIndexError,
    MissingReferenceError,
    OutputError,
    PartialScanError,
    ShapeMismatchError,
)
from .utils.merge import MergeReport, merge_model, plan_merge  # noqa: E402
from .version import __version__  # noqa: E402
