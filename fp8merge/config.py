# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

from dataclasses import dataclass, field, fields
from typing import Any, Dict

from .utils.env import env_flag, env_int


SHARD_SUFFIX = ".safetensors"
INDEX_FILENAME = "model.safetensors.index.json"
MERGED_SHARD_FILENAME = "model.safetensors"
MERGED_INDEX_FILENAME = "model.safetensors.index.json"
CONFIG_FILENAME = "config.json"

DEFAULT_BLOCK_SIZE = 128
DEFAULT_METADATA = {"format": "pt"}

SCALE_INV_SUFFIX = "_scale_inv"

ENV_PREFIX = "FP8MERGE_"


@dataclass
class MergeConfig():
    # edge length of the square quantization tile
    block_size: int = DEFAULT_BLOCK_SIZE

    shard_suffix: str = SHARD_SUFFIX
    index_filename: str = INDEX_FILENAME
    output_shard_name: str = MERGED_SHARD_FILENAME
    output_index_name: str = MERGED_INDEX_FILENAME

    # written verbatim as the `__metadata__` entry of the merged header
    metadata: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_METADATA))

    # omit `*_scale_inv` tensors once their weight has been dequantized
    drop_consumed_scales: bool = False

    # decode fp8 bytes as e4m3 floats instead of unsigned integer codes
    decode_fp8: bool = False

    # copy tokenizer/config and other non-shard files next to the merged shard
    copy_aux_files: bool = False

    dry_run: bool = False
    overwrite: bool = True

    def __post_init__(self):
        if not isinstance(self.block_size, int) or self.block_size <= 0:
            raise ValueError(f"MergeConfig: `block_size` must be a positive integer, actual = `{self.block_size}`.")

        if not self.shard_suffix.startswith(".") or len(self.shard_suffix) < 2:
            raise ValueError(f"MergeConfig: `shard_suffix` must look like `.ext`, actual = `{self.shard_suffix}`.")

        for name in ("index_filename", "output_shard_name", "output_index_name"):
            value = getattr(self, name)
            if not value or "/" in value or "\\" in value:
                raise ValueError(f"MergeConfig: `{name}` must be a plain file name, actual = `{value}`.")

        if self.output_shard_name == self.output_index_name:
            raise ValueError("MergeConfig: `output_shard_name` and `output_index_name` must differ.")

        if self.metadata is None:
            self.metadata = {}
        for key, value in self.metadata.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValueError("MergeConfig: `metadata` must map strings to strings.")

    @classmethod
    def from_env(cls, **overrides: Any) -> "MergeConfig":
        """Build a config from `FP8MERGE_*` env vars; explicit kwargs win."""

        values: Dict[str, Any] = {}

        block_size = env_int(f"{ENV_PREFIX}BLOCK_SIZE")
        if block_size is not None:
            values["block_size"] = block_size

        for env_name, field_name in (
            ("DRY_RUN", "dry_run"),
            ("DROP_SCALES", "drop_consumed_scales"),
            ("DECODE_FP8", "decode_fp8"),
            ("COPY_AUX", "copy_aux_files"),
        ):
            values[field_name] = env_flag(f"{ENV_PREFIX}{env_name}", default=False)

        valid = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in valid:
                raise ValueError(f"MergeConfig: unknown option `{key}`.")
            if value is not None:
                values[key] = value

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


__all__ = [
    "MergeConfig",
    "SHARD_SUFFIX",
    "INDEX_FILENAME",
    "MERGED_SHARD_FILENAME",
    "MERGED_INDEX_FILENAME",
    "CONFIG_FILENAME",
    "DEFAULT_BLOCK_SIZE",
    "SCALE_INV_SUFFIX",
]
