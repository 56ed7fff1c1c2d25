"""Dynamic VHD stream writer.

Layout written, in order:

    footer copy (512) | dynamic header (1024) | BAT (padded to 512)
    | per allocated block: sector bitmap (512) + data (2 MiB) | footer (512)

Blocks are laid out in increasing index order right after the BAT, so the
BAT can be computed from the allocation alone before any data is read.
"""

from __future__ import annotations

import struct
import time
import uuid
from typing import TYPE_CHECKING, Iterator

from vmware2xcp.converter.disk import BLOCK_SIZE, SECTOR_SIZE, SizedStream

if TYPE_CHECKING:
    from vmware2xcp.converter.disk import DiskImage

FOOTER_FORMAT = ">8sIIQI4sI4sQQHBBII16sB427x"
HEADER_FORMAT = ">8sQQIIII16sII512s192s256x"

FOOTER_SIZE = struct.calcsize(FOOTER_FORMAT)   # 512
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)   # 1024

DISK_TYPE_DYNAMIC = 3
UNUSED_BAT_ENTRY = 0xFFFFFFFF
VHD_EPOCH = 946684800  # 2000-01-01T00:00:00Z

BITMAP_SIZE = SECTOR_SIZE  # 4096 sectors per block -> 512 bytes of bitmap
FULL_BITMAP = b"\xff" * BITMAP_SIZE


def checksum(data: bytes) -> int:
    return ~sum(data) & 0xFFFFFFFF


def geometry(size: int) -> tuple[int, int, int]:
    """CHS geometry, computed the way the VHD format defines it."""
    total_sectors = min(size // SECTOR_SIZE, 65535 * 16 * 255)
    if total_sectors >= 65535 * 16 * 63:
        sectors_per_track = 255
        heads = 16
        cylinder_times_heads = total_sectors // sectors_per_track
    else:
        sectors_per_track = 17
        cylinder_times_heads = total_sectors // sectors_per_track
        heads = max((cylinder_times_heads + 1023) // 1024, 4)
        if cylinder_times_heads >= heads * 1024 or heads > 16:
            sectors_per_track = 31
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track
        if cylinder_times_heads >= heads * 1024:
            sectors_per_track = 63
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track
    return cylinder_times_heads // heads, heads, sectors_per_track


def build_footer(size: int, unique_id: bytes, timestamp: int) -> bytes:
    cylinders, heads, sectors = geometry(size)
    fields = [
        b"conectix",
        2,                  # features: reserved bit always set
        0x00010000,         # format version
        FOOTER_SIZE,        # data offset: dynamic header follows the footer copy
        timestamp,
        b"v2xc",
        0x00010000,
        b"Wi2k",
        size,
        size,
        cylinders,
        heads,
        sectors,
        DISK_TYPE_DYNAMIC,
        0,
        unique_id,
        0,
    ]
    raw = struct.pack(FOOTER_FORMAT, *fields)
    fields[14] = checksum(raw)
    return struct.pack(FOOTER_FORMAT, *fields)


def build_header(max_table_entries: int, table_offset: int) -> bytes:
    fields = [
        b"cxsparse",
        0xFFFFFFFFFFFFFFFF,
        table_offset,
        0x00010000,
        max_table_entries,
        BLOCK_SIZE,
        0,
        bytes(16),
        0,
        0,
        bytes(512),
        bytes(192),
    ]
    raw = struct.pack(HEADER_FORMAT, *fields)
    fields[6] = checksum(raw)
    return struct.pack(HEADER_FORMAT, *fields)


def build_bat(allocated: list[int], num_blocks: int, first_block_offset: int) -> bytes:
    entries = [UNUSED_BAT_ENTRY] * num_blocks
    sector = first_block_offset // SECTOR_SIZE
    for index in allocated:
        entries[index] = sector
        sector += (BITMAP_SIZE + BLOCK_SIZE) // SECTOR_SIZE
    bat = struct.pack(f">{num_blocks}I", *entries)
    padding = -len(bat) % SECTOR_SIZE
    return bat + b"\xff" * padding


def bat_size(num_blocks: int) -> int:
    return num_blocks * 4 + (-(num_blocks * 4) % SECTOR_SIZE)


def vhd_size(num_blocks: int, allocated_count: int) -> int:
    """Byte length of the stream ``vhd_stream`` writes."""
    return (
        FOOTER_SIZE
        + HEADER_SIZE
        + bat_size(num_blocks)
        + allocated_count * (BITMAP_SIZE + BLOCK_SIZE)
        + FOOTER_SIZE
    )


def vhd_stream(image: "DiskImage") -> SizedStream:
    """Produce a dynamic VHD for ``image``.

    The allocation is read immediately; block data is read lazily, in a
    single pass, while the stream is consumed.
    """
    num_blocks = image.num_blocks
    allocated = list(image.allocated_blocks())
    return SizedStream(_vhd_chunks(image, allocated), vhd_size(num_blocks, len(allocated)))


def _vhd_chunks(image: "DiskImage", allocated: list[int]) -> Iterator[bytes]:
    size = image.capacity + (-image.capacity % SECTOR_SIZE)
    num_blocks = image.num_blocks

    footer = build_footer(size, uuid.uuid4().bytes, int(time.time()) - VHD_EPOCH)
    table_offset = FOOTER_SIZE + HEADER_SIZE

    yield footer
    yield build_header(num_blocks, table_offset)
    yield build_bat(allocated, num_blocks, table_offset + bat_size(num_blocks))
    for index in allocated:
        yield FULL_BITMAP
        yield image.read_block(index)
    yield footer
