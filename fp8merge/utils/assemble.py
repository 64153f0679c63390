# SPDX-FileCopyrightText: 2024-2025 ModelCloud.ai
# SPDX-FileCopyrightText: 2024-2025 qubitium@modelcloud.ai
# SPDX-License-Identifier: Apache-2.0
# Contact: qubitium@modelcloud.ai, x.com/qubitium

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple, Union

from ..config import MergeConfig
from ..errors import OutputError, ShapeMismatchError
from ..format.container import write_container
from .files import write_json
from .logger import setup_logger
from .plan import MergePlan, PlannedTensor


LOG = logging.getLogger(__name__)
log = setup_logger()

ByteProvider = Callable[[PlannedTensor], Union[bytes, bytearray, memoryview]]


class OutputAssembler:
    def __init__(self, output_dir, config: Optional[MergeConfig] = None):
        self.output_dir = Path(output_dir)
        self.config = config or MergeConfig()

    @property
    def shard_path(self) -> Path:
        return self.output_dir / self.config.output_shard_name

    @property
    def index_path(self) -> Path:
        return self.output_dir / self.config.output_index_name

    def _prepare(self) -> None:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputError(f"Could not create output directory `{self.output_dir}`: {exc}") from exc

        if not self.config.overwrite:
            for path in (self.shard_path, self.index_path):
                if path.exists():
                    raise OutputError(f"Output file `{path}` already exists")

    def _stream(self, plan: MergePlan, byte_provider: ByteProvider) -> Iterator[Union[bytes, bytearray, memoryview]]:
        if not len(plan):
            return

        pb = log.pb(range(len(plan))).manual().set(show_left_steps=False).title("Merging")
        pb.draw()
        try:
            for entry in plan:
                data = byte_provider(entry)
                # a short or long chunk would shift every later offset in the header
                if len(data) != entry.num_bytes:
                    raise ShapeMismatchError(
                        f"Tensor `{entry.name}` produced {len(data)} bytes, "
                        f"{entry.num_bytes} were planned at offsets {list(entry.data_offsets)}"
                    )
                yield data
                pb.subtitle(entry.name).next().draw()
        finally:
            pb.close()

    def write_shard(self, plan: MergePlan, byte_provider: ByteProvider) -> Path:
        path = self.shard_path
        try:
            written = write_container(path, plan.header(), self._stream(plan, byte_provider))
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise OutputError(f"Could not write merged shard `{path}`: {exc}") from exc
        except Exception:
            path.unlink(missing_ok=True)
            raise

        if written != plan.total_size:
            path.unlink(missing_ok=True)
            raise ShapeMismatchError(f"Merged shard holds {written} data bytes, plan expects {plan.total_size}")

        LOG.debug("Wrote merged shard '%s' with %d tensors", path, len(plan))
        return path

    def write_index(self, plan: MergePlan) -> Path:
        shard_name = self.config.output_shard_name
        payload = {
            "metadata": {"total_size": plan.total_size},
            "weight_map": {name: shard_name for name in plan.names()},
        }
        try:
            write_json(self.index_path, payload)
        except OSError as exc:
            raise OutputError(f"Could not write index `{self.index_path}`: {exc}") from exc
        return self.index_path

    def assemble(self, plan: MergePlan, byte_provider: ByteProvider) -> Tuple[Path, Path]:
        self._prepare()
        shard = self.write_shard(plan, byte_provider)
        index = self.write_index(plan)
        return shard, index


__all__ = ["OutputAssembler", "ByteProvider"]
