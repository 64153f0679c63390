# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

import json
import struct

import pytest
import torch
from safetensors.torch import save_file
from shard_fixtures import write_shard

from fp8merge.errors import FormatError
from fp8merge.format.container import (
    HEADER_LEN_BYTES,
    encode_header,
    read_container,
    read_range,
    write_container,
)


def test_write_container_exact_layout(tmp_path):
    path = tmp_path / "out.safetensors"
    header = {"__metadata__": {"format": "pt"}, "a": {"dtype": "U8", "shape": [3], "data_offsets": [0, 3]}}

    written = write_container(path, header, [b"\x01\x02", b"", bytearray(b"\x03")])

    raw = path.read_bytes()
    encoded = json.dumps(header, separators=(",", ":")).encode("utf-8")
    assert written == 3
    assert raw[:8] == struct.pack("<Q", len(encoded))
    assert raw[8:8 + len(encoded)] == encoded
    assert raw[8 + len(encoded):] == b"\x01\x02\x03"


def test_read_container_returns_blob_offset(tmp_path):
    path = write_shard(tmp_path / "a.safetensors", {"x": ("U8", [2], b"\xaa\xbb")}, metadata={"format": "pt"})

    header, blob_offset = read_container(path)

    assert header["x"]["data_offsets"] == [0, 2]
    assert header["__metadata__"] == {"format": "pt"}
    assert read_range(path, blob_offset, 2) == bytearray(b"\xaa\xbb")
    (header_len,) = struct.unpack("<Q", path.read_bytes()[:HEADER_LEN_BYTES])
    assert blob_offset == HEADER_LEN_BYTES + header_len


def test_read_container_accepts_safetensors_files(tmp_path):
    path = tmp_path / "st.safetensors"
    save_file({"w": torch.arange(4, dtype=torch.float32)}, str(path))

    header, blob_offset = read_container(path)

    assert header["w"]["dtype"] == "F32"
    start, end = header["w"]["data_offsets"]
    raw = read_range(path, blob_offset + start, end - start)
    assert struct.unpack("<4f", raw) == (0.0, 1.0, 2.0, 3.0)


def test_non_ascii_names_survive(tmp_path):
    path = tmp_path / "u.safetensors"
    header = {"gewicht.ä": {"dtype": "U8", "shape": [1], "data_offsets": [0, 1]}}
    write_container(path, header, [b"\x00"])

    assert encode_header(header) == json.dumps(header, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    assert read_container(path)[0] == header


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        b"\x01\x02\x03",
        struct.pack("<Q", 100) + b"{}",
        struct.pack("<Q", 3) + b"{x}",
        struct.pack("<Q", 2) + b"\xff\xfe",
        struct.pack("<Q", 2) + b"[]",
    ],
    ids=["empty", "short-prefix", "header-too-long", "bad-json", "bad-utf8", "not-object"],
)
def test_read_container_rejects_malformed(tmp_path, payload):
    path = tmp_path / "bad.safetensors"
    path.write_bytes(payload)

    with pytest.raises(FormatError):
        read_container(path)


def test_read_range_short_read(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"abc")

    with pytest.raises(FormatError):
        read_range(path, 1, 5)
