# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""Exception taxonomy shared by the merge pipeline.

Fatal conditions (``MissingIndexError``, ``OutputError``) abort a run. The
remaining errors are raised by the stage that detects them and downgraded to
"skip and continue" by its caller, which records the reason in the report.
"""

from __future__ import annotations


__all__ = [
    "Fp8MergeError",
    "FormatError",
    "MissingIndexError",
    "PartialScanError",
    "MissingReferenceError",
    "ShapeMismatchError",
    "OutputError",
]


class Fp8MergeError(Exception):
    """Base class for every error raised by fp8merge."""


class FormatError(Fp8MergeError, ValueError):
    """Malformed container, header entry or JSON document."""


class PartialScanError(FormatError):
    """A discovered shard could not be scanned; its tensors are excluded."""

    def __init__(self, shard: str, reason: str):
        super().__init__(f"Shard `{shard}` skipped: {reason}")
        self.shard = shard
        self.reason = reason


class MissingIndexError(Fp8MergeError, FileNotFoundError):
    """The top-level index document is missing or unreadable."""


class MissingReferenceError(Fp8MergeError, KeyError):
    """A tensor or its scale table could not be resolved to a shard."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class ShapeMismatchError(Fp8MergeError, ValueError):
    """Declared shape, byte range or scale table size disagree."""


class OutputError(Fp8MergeError, OSError):
    """The merged shard or index could not be written."""
