"""Disk chain import, cold and warm.

Cold: the source is stopped (if needed), then every disk-node's whole chain
is imported, all nodes concurrently.

Warm: while the source still runs, every chain except its last, active
element is imported (the ESXi API cannot read an active disk). Once all
nodes are done the source is powered off and only the last element of each
chain is imported, as a delta on top of what is already in the VDI.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

from vmware2xcp.errors import CannotImportRunningSource, MissingDestinationDisk, MissingParentImage
from vmware2xcp.utils.aio import gather_settled
from vmware2xcp.utils.logging import get_logger
from vmware2xcp.xapi.client import VDI_FORMAT_RAW, VDI_FORMAT_VHD

if TYPE_CHECKING:
    from vmware2xcp.converter.disk import DiskImage, SizedStream
    from vmware2xcp.pipeline.provision import DestinationVdi
    from vmware2xcp.utils.tasks import MigrationContext
    from vmware2xcp.vmware.inventory import DiskInfo

logger = get_logger(__name__)


class DiskOpener(Protocol):
    def open_full(self, disk: "DiskInfo", thin: bool = False) -> "DiskImage": ...

    def open_delta(self, disk: "DiskInfo", parent: Optional["DiskImage"],
                   include_parent_blocks: bool = True) -> "DiskImage": ...


class ContentDestination(Protocol):
    def import_content(self, vdi_ref: str, stream: "SizedStream", fmt: str) -> int: ...


class PowerControl(Protocol):
    def power_off(self, vm_id: str) -> None: ...


@dataclass
class ImportOptions:
    thin: bool = False
    # image already written to the VDI, the first element of the chain is a delta on it
    parent: Optional["DiskImage"] = None
    # False: only write the blocks the chain changed on top of ``parent``
    include_parent_blocks: bool = True


class DiskImporter:
    """Materializes one chain and writes it into one VDI."""

    def __init__(self, opener: DiskOpener, destination: ContentDestination):
        self.opener = opener
        self.destination = destination

    async def open_chain(self, chain: list["DiskInfo"], options: ImportOptions) -> "DiskImage":
        if not chain:
            raise ValueError("Can't import an empty disk chain")
        image = options.parent
        for disk in chain:
            if disk.is_full:
                image = await asyncio.to_thread(self.opener.open_full, disk, options.thin)
                await asyncio.to_thread(image.read_block_allocation_table)
            else:
                if image is None:
                    raise MissingParentImage(
                        f"Can't import delta {disk.file_path} of disk {disk.node} without its parent image"
                    )
                include_parent_blocks = options.include_parent_blocks if image is options.parent else True
                image = await asyncio.to_thread(self.opener.open_delta, disk, image, include_parent_blocks)
        return image

    async def import_chain(
        self,
        chain: list["DiskInfo"],
        vdi: "DestinationVdi",
        options: ImportOptions,
    ) -> "DiskImage":
        """Import ``chain`` into ``vdi``; returns the last opened image."""
        image = await self.open_chain(chain, options)
        if options.thin or options.parent is not None:
            fmt, stream = VDI_FORMAT_VHD, await asyncio.to_thread(image.stream)
        else:
            # thick transfer of a plain disk: no transformation needed
            fmt, stream = VDI_FORMAT_RAW, image.raw_content()
        logger.debug(f"Disk {vdi.node}: writing {len(chain)} chain element(s) as {fmt}")
        await asyncio.to_thread(self.destination.import_content, vdi.ref, stream, fmt)
        return image


class DiskTransfer:
    """Cold and warm import of every disk-node of one source VM."""

    def __init__(
        self,
        importer: DiskImporter,
        source: PowerControl,
        vm_id: str,
        context: "MigrationContext",
        thin: bool = False,
    ):
        self.importer = importer
        self.source = source
        self.vm_id = vm_id
        self.context = context
        self.thin = thin

    async def _power_off_source(self) -> None:
        async with self.context.task("powering down source VM"):
            await asyncio.to_thread(self.source.power_off, self.vm_id)

    @staticmethod
    def _vdi_for(node: str, vdis: dict[str, "DestinationVdi"]) -> "DestinationVdi":
        vdi = vdis.get(node)
        if vdi is None:
            raise MissingDestinationDisk(f"Can't import disk {node} without its destination VDI")
        return vdi

    async def cold_import(
        self,
        chains: dict[str, list["DiskInfo"]],
        vdis: dict[str, "DestinationVdi"],
        is_running: bool,
        stop_source: bool,
    ) -> None:
        if is_running:
            if not stop_source:
                raise CannotImportRunningSource(
                    f"can't cold import disk from VM {self.vm_id} with stop_source disabled"
                )
            # the active disk can only be read once the VM is stopped
            await self._power_off_source()

        async def import_node(node: str, chain: list["DiskInfo"]) -> None:
            async with self.context.task(f"Cold import of disk {node}"):
                await self.importer.import_chain(chain, self._vdi_for(node, vdis), ImportOptions(thin=self.thin))

        await gather_settled(*(import_node(node, chain) for node, chain in chains.items()))

    async def warm_import(
        self,
        chains: dict[str, list["DiskInfo"]],
        vdis: dict[str, "DestinationVdi"],
        is_running: bool,
        stop_source: bool,
    ) -> None:
        if not is_running:
            return await self.cold_import(chains, vdis, is_running, stop_source)

        nodes = list(chains)

        async def pre_copy(node: str) -> Optional["DiskImage"]:
            chain = chains[node]
            async with self.context.task(f"Warm import of disk {node}"):
                if len(chain) == 1:
                    # no snapshot: nothing can be read while the VM runs
                    return None
                return await self.importer.import_chain(
                    chain[:-1], self._vdi_for(node, vdis), ImportOptions(thin=self.thin)
                )

        # every node must be pre-copied before the source goes down
        parents = await gather_settled(*(pre_copy(node) for node in nodes))

        if not stop_source:
            self.context.warning(
                f"Import from VM {self.vm_id} with stop_source disabled won't contain "
                f"the data of the last snapshot"
            )
            return

        await self._power_off_source()

        async def final_delta(node: str, parent: Optional["DiskImage"]) -> None:
            async with self.context.task(f"Transferring delta of disk {node}"):
                vdi = self._vdi_for(node, vdis)
                await self.importer.import_chain(
                    chains[node][-1:],
                    vdi,
                    ImportOptions(thin=self.thin, parent=parent, include_parent_blocks=False),
                )

        await gather_settled(*(final_delta(node, parent) for node, parent in zip(nodes, parents)))
