# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""Reader/writer for the length-prefixed JSON header container.

Layout: ``<u64 little-endian header_len><header_len bytes of UTF-8 JSON><raw tensor bytes>``.
Tensor data starts exactly ``8 + header_len`` bytes into the file; there is no
alignment padding between the header and the data, nor between tensors.
"""

from __future__ import annotations

import json
import logging
import os
import struct
from pathlib import Path
from typing import Iterable, Tuple, Union

from ..errors import FormatError


LOG = logging.getLogger(__name__)

HEADER_LEN_BYTES = 8
METADATA_KEY = "__metadata__"

_HEADER_LEN = struct.Struct("<Q")

PathLike = Union[str, os.PathLike]
ByteChunk = Union[bytes, bytearray, memoryview]


def read_container(path: PathLike) -> Tuple[dict, int]:
    """Return ``(header, blob_offset)`` for the container at ``path``."""

    path = Path(path)
    file_size = path.stat().st_size
    if file_size < HEADER_LEN_BYTES:
        raise FormatError(f"{path.name}: file is {file_size} bytes, shorter than the {HEADER_LEN_BYTES}-byte length prefix")

    with path.open("rb") as fh:
        (header_len,) = _HEADER_LEN.unpack(fh.read(HEADER_LEN_BYTES))
        if header_len > file_size - HEADER_LEN_BYTES:
            raise FormatError(
                f"{path.name}: declared header length {header_len} exceeds remaining file size "
                f"{file_size - HEADER_LEN_BYTES}"
            )
        raw = fh.read(header_len)

    if len(raw) != header_len:
        raise FormatError(f"{path.name}: short read of header ({len(raw)} of {header_len} bytes)")

    try:
        header = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError(f"{path.name}: header is not valid UTF-8 JSON ({exc})") from exc

    if not isinstance(header, dict):
        raise FormatError(f"{path.name}: header must be a JSON object, got {type(header).__name__}")

    LOG.debug("Read container header from '%s' (%d bytes, %d entries)", path, header_len, len(header))
    return header, HEADER_LEN_BYTES + header_len


def encode_header(header: dict) -> bytes:
    return json.dumps(header, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def write_container(path: PathLike, header: dict, tensor_byte_stream: Iterable[ByteChunk]) -> int:
    """Write ``header`` followed by every chunk of ``tensor_byte_stream``.

    Chunks are written in the order supplied. Returns the number of tensor
    bytes written after the header.
    """

    path = Path(path)
    encoded = encode_header(header)

    written = 0
    with path.open("wb") as fh:
        fh.write(_HEADER_LEN.pack(len(encoded)))
        fh.write(encoded)
        for chunk in tensor_byte_stream:
            if not chunk:
                continue
            fh.write(chunk)
            written += len(chunk)

    LOG.debug("Wrote container '%s' (header %d bytes, data %d bytes)", path, len(encoded), written)
    return written


def read_range(path: PathLike, start: int, length: int) -> bytearray:
    """Read exactly ``length`` bytes at absolute file offset ``start``."""

    if start < 0 or length < 0:
        raise FormatError(f"invalid byte range start={start} length={length}")

    buf = bytearray(length)
    with Path(path).open("rb") as fh:
        fh.seek(start)
        view = memoryview(buf)
        filled = 0
        while filled < length:
            n = fh.readinto(view[filled:])
            if not n:
                break
            filled += n

    if filled != length:
        raise FormatError(f"{Path(path).name}: short read at offset {start} ({filled} of {length} bytes)")
    return buf


def blob_size(path: PathLike, blob_offset: int) -> int:
    """Size in bytes of the raw tensor region that follows the header."""

    return max(0, Path(path).stat().st_size - blob_offset)


__all__ = [
    "HEADER_LEN_BYTES",
    "METADATA_KEY",
    "read_container",
    "write_container",
    "encode_header",
    "read_range",
    "blob_size",
]
