"""Destination VM and VDI creation on the XAPI side."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vmware2xcp.errors import MigrationError
from vmware2xcp.utils.aio import gather_settled
from vmware2xcp.utils.logging import get_logger
from vmware2xcp.xapi.templates import vbd_record, vdi_record, vif_record, vm_record

if TYPE_CHECKING:
    from vmware2xcp.pipeline.rollback import Rollback
    from vmware2xcp.utils.tasks import MigrationContext
    from vmware2xcp.vmware.inventory import DiskInfo, VmMetadata
    from vmware2xcp.xapi.client import XapiClient

logger = get_logger(__name__)

BLOCKED_OPERATIONS = ("start", "start_on")
IMPORT_IN_PROGRESS = "Esxi migration in progress..."
IMPORTING_PREFIX = "[Importing...] "


@dataclass
class DestinationVm:
    ref: str
    uuid: str
    name_label: str


@dataclass
class DestinationVdi:
    ref: str
    uuid: str
    node: str


def device_model(firmware: str) -> str:
    return "qemu-upstream-" + ("uefi" if firmware == "uefi" else "compat")


class DestinationProvisioner:
    """Creates the VM shell, its VIFs and one empty VDI per disk-node.

    Every creation pushes its undo onto the attempt's Rollback right away,
    so whatever exists when a later step fails gets destroyed.
    """

    def __init__(self, xapi: "XapiClient", context: "MigrationContext"):
        self.xapi = xapi
        self.context = context

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    async def create_vm(self, metadata: "VmMetadata", network_uuid: str, rollback: "Rollback") -> DestinationVm:
        xapi = self.xapi
        async with self.context.task("creating VM on XCP side"):
            record = vm_record(metadata.name_label, metadata.memory, metadata.n_cpus, "from esxi")
            vm_ref = await self._call(xapi.vm_create, record)
            rollback.push(f"destroy VM {metadata.name_label}", xapi.vm_destroy, vm_ref)

            # nobody may boot a half imported VM
            await gather_settled(*(
                self._call(xapi.update_blocked_operations, vm_ref, op, IMPORT_IN_PROGRESS)
                for op in BLOCKED_OPERATIONS
            ))
            await gather_settled(
                self._call(xapi.update_hvm_boot_param, vm_ref, "firmware", metadata.firmware),
                self._call(xapi.update_platform, vm_ref, "device-model", device_model(metadata.firmware)),
                self._call(xapi.set_name_label, vm_ref, IMPORTING_PREFIX + metadata.name_label),
            )

            vif_devices = await self._call(xapi.allowed_vif_devices, vm_ref)
            if len(vif_devices) < len(metadata.networks):
                raise MigrationError(
                    f"VM has {len(metadata.networks)} network adapters but only "
                    f"{len(vif_devices)} VIF slots are available"
                )
            network_ref = await self._call(xapi.get_by_uuid, "network", network_uuid)
            await gather_settled(*(
                self._call(xapi.vif_create, vif_record(vm_ref, network_ref, vif_devices[i], nic.mac_address))
                for i, nic in enumerate(metadata.networks)
            ))

            uuid = await self._call(xapi.get_uuid, "VM", vm_ref)
            logger.info(f"Created VM {uuid} with {len(metadata.networks)} VIF(s)")
            return DestinationVm(ref=vm_ref, uuid=uuid, name_label=metadata.name_label)

    async def create_vdis(
        self,
        vm: DestinationVm,
        chains: dict[str, list["DiskInfo"]],
        sr_uuid: str,
        rollback: "Rollback",
    ) -> dict[str, DestinationVdi]:
        xapi = self.xapi
        vdis: dict[str, DestinationVdi] = {}
        async with self.context.task("creating VDIs"):
            sr_ref = await self._call(xapi.get_by_uuid, "SR", sr_uuid)
            for index, (node, chain) in enumerate(chains.items()):
                newest = chain[-1]
                vdi_ref = await self._call(xapi.vdi_create, vdi_record(
                    sr_ref,
                    name_label="[ESXI]" + newest.name_label,
                    name_description="fromESXI" + newest.description_label,
                    virtual_size=newest.capacity,
                ))
                # pushed before attaching: an unattached VDI must go too
                rollback.push(f"destroy VDI of disk {node}", xapi.vdi_destroy, vdi_ref)

                await self._call(xapi.vbd_create, vbd_record(vm.ref, vdi_ref, bootable=index == 0))
                uuid = await self._call(xapi.get_uuid, "VDI", vdi_ref)
                vdis[node] = DestinationVdi(ref=vdi_ref, uuid=uuid, node=node)
                logger.info(f"Disk {node}: VDI {uuid} ({newest.capacity / 1024 ** 3:.1f} GiB)")
        return vdis

    async def finalize(self, vm: DestinationVm) -> None:
        """Restore the real name and allow the VM to start."""
        async with self.context.task("Finishing transfer"):
            await self._call(self.xapi.set_name_label, vm.ref, vm.name_label)
            await gather_settled(*(
                self._call(self.xapi.update_blocked_operations, vm.ref, op, None)
                for op in BLOCKED_OPERATIONS
            ))
