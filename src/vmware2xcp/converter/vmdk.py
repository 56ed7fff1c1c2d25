"""VMDK images read straight from an ESXi datastore.

Supported extents:

* ``VMFS``: flat, preallocated data file; opened as a full image.
* ``VMFSSPARSE``: COWD redo log written by snapshots on VMFS5; opened as a
  delta on top of the image of the previous snapshot.

SESparse (VMFS6 snapshots) and other extent types raise
UnsupportedDiskFormat.
"""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

from vmware2xcp.converter.disk import BLOCK_SIZE, SECTOR_SIZE, ZERO_BLOCK, DiskImage, pad_block
from vmware2xcp.errors import MissingParentImage, UnsupportedDiskFormat
from vmware2xcp.utils.logging import get_logger

if TYPE_CHECKING:
    from vmware2xcp.vmware.client import VSphereClient
    from vmware2xcp.vmware.inventory import DiskInfo

logger = get_logger(__name__)

_EXTENT_LINE = re.compile(
    r'^(?P<access>RW|RDONLY|NOACCESS)\s+(?P<sectors>\d+)\s+(?P<type>\w+)\s+"(?P<file>[^"]+)"'
)

COWD_MAGIC = 0x44574F43  # "COWD" little endian
COWD_HEADER_FORMAT = "<8I"
COWD_GT_ENTRIES = 4096


class RandomAccessFile(Protocol):
    def read(self, offset: int, length: int) -> bytes: ...

    def read_all(self) -> bytes: ...


@dataclass
class Extent:
    access: str
    sectors: int
    type: str
    file_name: str


@dataclass
class VmdkDescriptor:
    create_type: str
    extents: list[Extent]
    parent_file_name: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "VmdkDescriptor":
        create_type = ""
        parent = None
        extents = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            match = _EXTENT_LINE.match(line)
            if match:
                extents.append(Extent(
                    access=match.group("access"),
                    sectors=int(match.group("sectors")),
                    type=match.group("type").upper(),
                    file_name=match.group("file"),
                ))
                continue
            key, sep, value = line.partition("=")
            if not sep:
                continue
            key, value = key.strip(), value.strip().strip('"')
            if key == "createType":
                create_type = value
            elif key == "parentFileNameHint":
                parent = value
        if not extents:
            raise UnsupportedDiskFormat(f"VMDK descriptor without extent (createType={create_type!r})")
        return cls(create_type=create_type, extents=extents, parent_file_name=parent)

    @property
    def extent(self) -> Extent:
        if len(self.extents) > 1:
            raise UnsupportedDiskFormat(f"Split VMDK with {len(self.extents)} extents is not supported")
        return self.extents[0]


class FlatImage(DiskImage):
    """Preallocated extent: block N lives at byte N * BLOCK_SIZE.

    With ``thin`` the allocation table is built by reading every block once
    and dropping the all-zero ones, since a flat file has no metadata to say
    what is allocated.
    """

    def __init__(self, file: RandomAccessFile, capacity: int, thin: bool = False):
        super().__init__(capacity)
        self.file = file
        self.thin = thin
        self._allocated: Optional[set[int]] = None

    def read_block_allocation_table(self) -> None:
        if not self.thin:
            return
        logger.info(f"Scanning {self.num_blocks} blocks of {self.file!r} for allocated data")
        self._allocated = {
            index for index in range(self.num_blocks)
            if self.read_block(index) != ZERO_BLOCK
        }
        logger.info(f"{len(self._allocated)}/{self.num_blocks} blocks allocated")

    def contains_block(self, index: int) -> bool:
        if self._allocated is None:
            return 0 <= index < self.num_blocks
        return index in self._allocated

    def read_block(self, index: int) -> bytes:
        offset = index * BLOCK_SIZE
        length = min(BLOCK_SIZE, self.capacity - offset)
        return pad_block(self.file.read(offset, length))


class CowdDeltaImage(DiskImage):
    """vmfsSparse redo log on top of ``parent``.

    A grain directory points to grain tables of 4096 entries; each entry is
    the sector where the grain is stored in the redo log, 0 when the grain
    was never written since the snapshot (its data is in the parent).

    ``include_parent_blocks`` decides whether blocks only the parent carries
    are part of this image's allocation: True to materialize the whole disk,
    False to produce just the changes of this delta.
    """

    def __init__(
        self,
        file: RandomAccessFile,
        capacity: int,
        parent: DiskImage,
        include_parent_blocks: bool = True,
    ):
        super().__init__(capacity)
        self.file = file
        self.parent = parent
        self.include_parent_blocks = include_parent_blocks
        self._delta_blocks: set[int] = set()

        header = struct.unpack(COWD_HEADER_FORMAT, file.read(0, struct.calcsize(COWD_HEADER_FORMAT)))
        magic, _version, _flags, _sectors, grain_sectors, gd_offset, gd_entries, _free = header
        if magic != COWD_MAGIC:
            raise UnsupportedDiskFormat(f"{file!r} is not a COWD sparse extent (magic {magic:#x})")
        self.grain_size = grain_sectors * SECTOR_SIZE
        if self.grain_size <= 0 or BLOCK_SIZE % self.grain_size:
            raise UnsupportedDiskFormat(f"Unsupported COWD grain size {self.grain_size}")
        raw_gd = file.read(gd_offset * SECTOR_SIZE, gd_entries * 4)
        self.grain_directory = list(struct.unpack(f"<{gd_entries}I", raw_gd))

    @property
    def grains_per_block(self) -> int:
        return BLOCK_SIZE // self.grain_size

    def _grain_table(self, gd_index: int) -> Optional[list[int]]:
        if gd_index >= len(self.grain_directory) or self.grain_directory[gd_index] == 0:
            return None
        raw = self.file.read(self.grain_directory[gd_index] * SECTOR_SIZE, COWD_GT_ENTRIES * 4)
        return list(struct.unpack(f"<{COWD_GT_ENTRIES}I", raw))

    def _grain_offsets(self, index: int) -> list[int]:
        """Sector of every grain of block ``index`` (0 = not in this delta)."""
        first = index * self.grains_per_block
        offsets = []
        tables: dict[int, Optional[list[int]]] = {}
        for grain in range(first, first + self.grains_per_block):
            gd_index, gt_index = divmod(grain, COWD_GT_ENTRIES)
            if gd_index not in tables:
                tables[gd_index] = self._grain_table(gd_index)
            table = tables[gd_index]
            offsets.append(table[gt_index] if table else 0)
        return offsets

    def read_block_allocation_table(self) -> None:
        for gd_index, gt_sector in enumerate(self.grain_directory):
            if gt_sector == 0:
                continue
            table = self._grain_table(gd_index)
            for gt_index, entry in enumerate(table or []):
                if entry:
                    grain = gd_index * COWD_GT_ENTRIES + gt_index
                    self._delta_blocks.add(grain // self.grains_per_block)
        self._delta_blocks = {i for i in self._delta_blocks if i < self.num_blocks}
        logger.debug(f"{self.file!r}: {len(self._delta_blocks)} changed blocks")

    def contains_block(self, index: int) -> bool:
        if index in self._delta_blocks:
            return True
        return self.include_parent_blocks and self.parent.contains_block(index)

    def read_block(self, index: int) -> bytes:
        if index not in self._delta_blocks:
            return self.parent.read_block(index) if self.parent.contains_block(index) else ZERO_BLOCK

        # grains the delta does not carry keep the parent's content
        base = self.parent.read_block(index) if self.parent.contains_block(index) else ZERO_BLOCK
        block = bytearray(base)
        offsets = self._grain_offsets(index)
        run_start = 0
        while run_start < len(offsets):
            if offsets[run_start] == 0:
                run_start += 1
                continue
            # coalesce grains stored back to back into one read
            run_end = run_start + 1
            grain_sectors = self.grain_size // SECTOR_SIZE
            while (run_end < len(offsets) and offsets[run_end]
                   and offsets[run_end] == offsets[run_end - 1] + grain_sectors):
                run_end += 1
            length = (run_end - run_start) * self.grain_size
            data = self.file.read(offsets[run_start] * SECTOR_SIZE, length)
            start = run_start * self.grain_size
            block[start:start + len(data)] = data
            run_start = run_end
        return bytes(block)


class EsxiDiskOpener:
    """Opens the disks listed in VM metadata as DiskImage objects."""

    def __init__(self, client: "VSphereClient"):
        self.client = client

    def _descriptor(self, disk: "DiskInfo") -> VmdkDescriptor:
        text = self.client.datastore_file(disk.datastore, disk.file_path).read_all()
        return VmdkDescriptor.parse(text.decode("utf-8", errors="replace"))

    def _extent_file(self, disk: "DiskInfo", extent: Extent) -> RandomAccessFile:
        path = f"{disk.path}/{extent.file_name}" if disk.path else extent.file_name
        return self.client.datastore_file(disk.datastore, path)

    def open_full(self, disk: "DiskInfo", thin: bool = False) -> DiskImage:
        extent = self._descriptor(disk).extent
        if extent.type not in ("VMFS", "FLAT"):
            raise UnsupportedDiskFormat(f"{disk.file_path}: full disk with {extent.type} extent")
        logger.debug(f"Opening full disk {disk.file_path} ({extent.type}, thin={thin})")
        return FlatImage(self._extent_file(disk, extent), disk.capacity, thin=thin)

    def open_delta(
        self,
        disk: "DiskInfo",
        parent: Optional[DiskImage],
        include_parent_blocks: bool = True,
    ) -> DiskImage:
        if parent is None:
            raise MissingParentImage(f"Can't import delta {disk.file_path} without its parent image")
        extent = self._descriptor(disk).extent
        if extent.type != "VMFSSPARSE":
            raise UnsupportedDiskFormat(f"{disk.file_path}: delta with {extent.type} extent")
        logger.debug(f"Opening delta disk {disk.file_path}")
        image = CowdDeltaImage(self._extent_file(disk, extent), disk.capacity, parent,
                               include_parent_blocks=include_parent_blocks)
        image.read_block_allocation_table()
        return image
