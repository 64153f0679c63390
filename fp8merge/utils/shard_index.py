# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

"""Resolve every tensor of a sharded checkpoint to its exact byte location.

The top-level index names the shard of each tensor; each shard's own header
gives dtype, shape and byte range. Both are combined once, up front, into an
immutable :class:`DescriptorIndex` that later stages query in O(1).
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Optional, Tuple

from ..config import SCALE_INV_SUFFIX, MergeConfig
from ..errors import FormatError, MissingIndexError, MissingReferenceError, PartialScanError, ShapeMismatchError
from ..format.container import METADATA_KEY, blob_size, read_container, read_range
from ..quantization.dtype import element_size
from .logger import setup_logger


LOG = logging.getLogger(__name__)
log = setup_logger()

WeightMap = Mapping  # Mapping[str, str]: tensor name -> shard file name


@dataclass(frozen=True)
class TensorDescriptor:
    name: str
    dtype: str
    shape: Tuple[int, ...]
    # [start, end) relative to the shard's tensor blob
    byte_range: Tuple[int, int]
    shard: str
    blob_offset: int

    @property
    def num_bytes(self) -> int:
        return self.byte_range[1] - self.byte_range[0]

    @property
    def file_offset(self) -> int:
        return self.blob_offset + self.byte_range[0]

    @property
    def numel(self) -> int:
        return math.prod(self.shape)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def expected_bytes(self) -> Optional[int]:
        size = element_size(self.dtype)
        if size is None:
            return None
        return self.numel * size

    def header_entry(self) -> dict:
        return {
            "dtype": self.dtype,
            "shape": list(self.shape),
            "data_offsets": list(self.byte_range),
        }

    def read(self, root: Path) -> bytearray:
        return read_range(Path(root) / self.shard, self.file_offset, self.num_bytes)

    @classmethod
    def from_header(cls, name: str, entry, shard: str, blob_offset: int) -> "TensorDescriptor":
        if not isinstance(entry, dict):
            raise FormatError(f"{shard}: entry for `{name}` is not an object")

        dtype = entry.get("dtype")
        if not isinstance(dtype, str) or not dtype:
            raise FormatError(f"{shard}: entry for `{name}` has no dtype")

        shape = entry.get("shape")
        if not isinstance(shape, list) or not all(
            isinstance(d, int) and not isinstance(d, bool) and d >= 0 for d in shape
        ):
            raise FormatError(f"{shard}: entry for `{name}` has invalid shape {shape!r}")

        offsets = entry.get("data_offsets")
        if (
            not isinstance(offsets, list)
            or len(offsets) != 2
            or not all(isinstance(o, int) and not isinstance(o, bool) and o >= 0 for o in offsets)
        ):
            raise FormatError(f"{shard}: entry for `{name}` has invalid data_offsets {offsets!r}")

        return cls(
            name=name,
            dtype=dtype,
            shape=tuple(shape),
            byte_range=(offsets[0], offsets[1]),
            shard=shard,
            blob_offset=blob_offset,
        )


def check_descriptor(desc: TensorDescriptor, blob_len: Optional[int] = None) -> None:
    """Raise :class:`ShapeMismatchError` when ``desc`` violates its byte-range invariants."""

    start, end = desc.byte_range
    if end <= start:
        raise ShapeMismatchError(f"`{desc.name}` has empty or inverted byte range [{start}, {end})")

    if blob_len is not None and end > blob_len:
        raise ShapeMismatchError(
            f"`{desc.name}` byte range [{start}, {end}) runs past the {blob_len}-byte data region of `{desc.shard}`"
        )

    expected = desc.expected_bytes()
    if expected is not None and expected != desc.num_bytes:
        raise ShapeMismatchError(
            f"`{desc.name}` shape {list(desc.shape)} with dtype {desc.dtype} needs {expected} bytes, "
            f"byte range holds {desc.num_bytes}"
        )


@dataclass
class ShardScan:
    shard: str
    blob_offset: int
    blob_len: int
    tensors: Dict[str, TensorDescriptor] = field(default_factory=dict)
    # entries present in the header that could not be parsed
    invalid: Dict[str, str] = field(default_factory=dict)


class DescriptorIndex(Mapping):
    """Immutable name -> :class:`TensorDescriptor` lookup with scale resolution."""

    def __init__(
        self,
        resolved: Dict[str, TensorDescriptor],
        scanned: Optional[Dict[str, TensorDescriptor]] = None,
    ):
        self._resolved = MappingProxyType(dict(resolved))
        self._scanned = MappingProxyType(dict(scanned or {}))

    def __getitem__(self, name: str) -> TensorDescriptor:
        return self._resolved[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._resolved)

    def __len__(self) -> int:
        return len(self._resolved)

    def locate(self, name: str) -> Optional[TensorDescriptor]:
        """Find ``name`` among resolved tensors, then among every scanned shard header."""
        desc = self._resolved.get(name)
        if desc is None:
            desc = self._scanned.get(name)
        return desc

    def scale_for(self, name: str) -> TensorDescriptor:
        scale_name = name + SCALE_INV_SUFFIX
        desc = self.locate(scale_name)
        if desc is None:
            raise MissingReferenceError(f"Scale tensor `{scale_name}` for `{name}` not found in any shard")
        return desc


@dataclass(frozen=True)
class ResolvedModel:
    root: Path
    weight_map: WeightMap
    descriptors: DescriptorIndex
    shards: Tuple[str, ...]
    failed_shards: Mapping
    dropped: Mapping

    def read(self, desc: TensorDescriptor) -> bytearray:
        return desc.read(self.root)


class ShardIndexResolver:
    def __init__(self, root, config: Optional[MergeConfig] = None):
        self.root = Path(root)
        self.config = config or MergeConfig()

    @property
    def index_path(self) -> Path:
        return self.root / self.config.index_filename

    def load_weight_map(self) -> Dict[str, str]:
        try:
            with self.index_path.open("r", encoding="utf-8") as fh:
                index = json.load(fh)
        except OSError as exc:
            raise MissingIndexError(f"Could not open index `{self.index_path}`: {exc}") from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise FormatError(f"Index `{self.index_path}` is not valid JSON: {exc}") from exc

        weight_map = index.get("weight_map") if isinstance(index, dict) else None
        if not isinstance(weight_map, dict):
            raise FormatError(f"Index `{self.index_path}` has no `weight_map` object")

        for name, shard in weight_map.items():
            if not isinstance(shard, str):
                raise FormatError(f"Index `{self.index_path}` maps `{name}` to non-string shard {shard!r}")

        LOG.debug("Loaded weight map with %d entries from '%s'", len(weight_map), self.index_path)
        return dict(weight_map)

    def discover_shards(self) -> List[str]:
        suffix = self.config.shard_suffix
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_file() and p.suffix == suffix
        )

    def scan_shard(self, shard: str) -> ShardScan:
        path = self.root / shard
        try:
            header, blob_offset = read_container(path)
            blob_len = blob_size(path, blob_offset)
        except FormatError as exc:
            raise PartialScanError(shard, str(exc)) from exc
        except OSError as exc:
            raise PartialScanError(shard, f"could not read file ({exc})") from exc

        scan = ShardScan(shard=shard, blob_offset=blob_offset, blob_len=blob_len)
        for name, entry in header.items():
            if name == METADATA_KEY:
                continue
            try:
                scan.tensors[name] = TensorDescriptor.from_header(name, entry, shard, blob_offset)
            except FormatError as exc:
                scan.invalid[name] = str(exc)
                LOG.debug("Ignoring malformed header entry: %s", exc)

        LOG.debug("Scanned shard '%s': %d tensors, %d malformed", shard, len(scan.tensors), len(scan.invalid))
        return scan

    def resolve_model(self) -> ResolvedModel:
        weight_map = self.load_weight_map()
        shards = self.discover_shards()

        scans: Dict[str, ShardScan] = {}
        failed: Dict[str, str] = {}
        for shard in shards:
            try:
                scans[shard] = self.scan_shard(shard)
            except PartialScanError as exc:
                failed[shard] = exc.reason
                log.warn(str(exc))

        # every header tensor, first shard in sorted order wins
        scanned: Dict[str, TensorDescriptor] = {}
        for shard in shards:
            scan = scans.get(shard)
            if scan is None:
                continue
            for name, desc in scan.tensors.items():
                if name in scanned:
                    continue
                try:
                    check_descriptor(desc, scan.blob_len)
                except ShapeMismatchError as exc:
                    LOG.debug("Not indexing '%s' from '%s': %s", name, shard, exc)
                    continue
                scanned[name] = desc

        resolved: Dict[str, TensorDescriptor] = {}
        dropped: Dict[str, str] = {}
        for name in sorted(weight_map):
            shard = weight_map[name]
            try:
                resolved[name] = self._resolve_one(name, shard, scans, failed)
            except (MissingReferenceError, ShapeMismatchError, FormatError) as exc:
                dropped[name] = str(exc)
                log.warn(f"Resolve: dropping `{name}`: {exc}")

        LOG.debug(
            "Resolved %d of %d indexed tensors across %d shards (%d shards failed)",
            len(resolved),
            len(weight_map),
            len(scans),
            len(failed),
        )

        return ResolvedModel(
            root=self.root,
            weight_map=MappingProxyType({n: weight_map[n] for n in resolved}),
            descriptors=DescriptorIndex(resolved, scanned),
            shards=tuple(shards),
            failed_shards=MappingProxyType(failed),
            dropped=MappingProxyType(dropped),
        )

    def resolve(self) -> Tuple[WeightMap, DescriptorIndex]:
        resolved = self.resolve_model()
        return resolved.weight_map, resolved.descriptors

    @staticmethod
    def _resolve_one(
        name: str,
        shard: str,
        scans: Dict[str, ShardScan],
        failed: Dict[str, str],
    ) -> TensorDescriptor:
        if shard in failed:
            raise MissingReferenceError(f"shard `{shard}` could not be scanned ({failed[shard]})")

        scan = scans.get(shard)
        if scan is None:
            raise MissingReferenceError(f"shard `{shard}` not found in model directory")

        if name in scan.invalid:
            raise FormatError(scan.invalid[name])

        desc = scan.tensors.get(name)
        if desc is None:
            raise MissingReferenceError(f"shard `{shard}` header has no entry for `{name}`")

        check_descriptor(desc, scan.blob_len)
        return desc


__all__ = [
    "TensorDescriptor",
    "DescriptorIndex",
    "ResolvedModel",
    "ShardIndexResolver",
    "ShardScan",
    "WeightMap",
    "check_descriptor",
]
