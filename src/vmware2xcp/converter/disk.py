"""Block-addressed disk images.

Every image, whatever its on-disk format, is presented to the transfer code
as a sequence of fixed 2 MiB blocks (the VHD block size XAPI expects). An
image knows which blocks it carries data for and can return the content of
any block; from that it can be streamed either as the raw address space or
as a VHD container holding only the carried blocks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Iterator

BLOCK_SIZE = 2 * 1024 * 1024
SECTOR_SIZE = 512

ZERO_BLOCK = bytes(BLOCK_SIZE)


class DiskImage(ABC):
    """A disk image readable block by block."""

    def __init__(self, capacity: int):
        self.capacity = capacity

    @property
    def num_blocks(self) -> int:
        return (self.capacity + BLOCK_SIZE - 1) // BLOCK_SIZE

    def read_block_allocation_table(self) -> None:
        """Load whatever is needed for ``contains_block`` to answer.

        The default is an image where every block is allocated.
        """

    @abstractmethod
    def contains_block(self, index: int) -> bool:
        ...

    @abstractmethod
    def read_block(self, index: int) -> bytes:
        """Return exactly BLOCK_SIZE bytes, zero padded past the capacity."""

    def allocated_blocks(self) -> Iterator[int]:
        for index in range(self.num_blocks):
            if self.contains_block(index):
                yield index

    def raw_content(self) -> "SizedStream":
        """Stream the whole address space, capacity bytes long."""
        return SizedStream(self._raw_chunks(), self.capacity)

    def _raw_chunks(self) -> Iterator[bytes]:
        for index in range(self.num_blocks):
            data = self.read_block(index) if self.contains_block(index) else ZERO_BLOCK
            remaining = self.capacity - index * BLOCK_SIZE
            yield data[:remaining] if remaining < BLOCK_SIZE else data

    def stream(self) -> "SizedStream":
        """Stream a dynamic VHD holding only the blocks this image carries.

        The allocation is read up front since the VHD size depends on it.
        """
        from vmware2xcp.converter.vhd import vhd_stream

        return vhd_stream(self)


class SizedStream:
    """Chunks of a body whose total length is known before it is sent.

    ``len()`` hands the length to requests, which then sends a
    Content-Length instead of a chunked body.
    """

    def __init__(self, chunks: Iterable[bytes], size: int):
        self._chunks = chunks
        self.size = size

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._chunks)

    def __len__(self) -> int:
        return self.size


def pad_block(data: bytes) -> bytes:
    if len(data) < BLOCK_SIZE:
        return data + bytes(BLOCK_SIZE - len(data))
    return data
