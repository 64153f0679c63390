# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

import contextlib
import logging
import time
from typing import Iterator, Optional

from logbar import LogBar


LOG = logging.getLogger(__name__)


def setup_logger():
    return LogBar.shared()


@contextlib.contextmanager
def log_time_block(
    block_name: str,
    *,
    logger: Optional[logging.Logger] = None,
) -> Iterator[None]:
    """Log the elapsed time of a pipeline stage at debug level."""

    if logger is None:
        logger = LOG

    start = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start
        logger.debug("[time] %s took %.3fs", block_name, duration)
