"""ESXi VM inventory collection and transferable metadata models."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from pyVmomi import vim

from vmware2xcp.utils.logging import get_logger
from vmware2xcp.vmware.client import VSphereClient

logger = get_logger(__name__)

_BACKING_FILE = re.compile(r"^\[(?P<datastore>[^\]]+)\]\s*(?P<path>.*)$")


@dataclass(frozen=True)
class DiskInfo:
    """One disk image as seen at a point of the snapshot history."""
    node: str                # disk-node, e.g. "scsi0:0"
    capacity: int            # bytes
    name_label: str
    description_label: str
    datastore: str
    path: str                # directory inside the datastore
    file_name: str           # descriptor file, e.g. "vm-000001.vmdk"
    is_full: bool            # False for a delta against the previous image

    @property
    def file_path(self) -> str:
        return f"{self.path}/{self.file_name}" if self.path else self.file_name


@dataclass(frozen=True)
class NICInfo:
    """Information about a VM network adapter."""
    mac_address: str
    network: str = ""
    adapter_type: str = ""


@dataclass(frozen=True)
class Snapshot:
    uid: str
    parent: Optional[str]
    disks: list[DiskInfo] = field(default_factory=list)
    name: str = ""


@dataclass(frozen=True)
class SnapshotTree:
    current: Optional[str]
    snapshots: list[Snapshot] = field(default_factory=list)

    def find(self, uid: Optional[str]) -> Optional[Snapshot]:
        for snapshot in self.snapshots:
            if snapshot.uid == uid:
                return snapshot
        return None


@dataclass(frozen=True)
class VmSummary:
    """Row of an inventory listing."""
    id: str
    name: str
    power_state: str
    cpu: int
    memory_mb: int
    num_disks: int
    num_snapshots: int = 0


@dataclass
class VmMetadata:
    """Everything needed to re-create a VM on the destination."""
    id: str
    name_label: str
    firmware: str                # "bios" | "uefi"
    memory: int                  # bytes
    n_cpus: int
    power_state: str             # vSphere power state name
    networks: list[NICInfo] = field(default_factory=list)
    disks: list[DiskInfo] = field(default_factory=list)
    snapshots: Optional[SnapshotTree] = None

    @property
    def is_running(self) -> bool:
        return self.power_state != "poweredOff"

    def model_dump(self) -> dict:
        """Serialize to dict for JSON output."""
        return {
            "id": self.id,
            "name_label": self.name_label,
            "firmware": self.firmware,
            "memory": self.memory,
            "n_cpus": self.n_cpus,
            "power_state": self.power_state,
            "networks": [{"mac": n.mac_address, "network": n.network, "type": n.adapter_type}
                         for n in self.networks],
            "disks": [{"node": d.node, "capacity": d.capacity, "file": d.file_path,
                       "datastore": d.datastore, "full": d.is_full} for d in self.disks],
            "snapshots": len(self.snapshots.snapshots) if self.snapshots else 0,
        }


class VMInventory:
    """Collects VM inventory from an ESXi host."""

    def __init__(self, client: VSphereClient):
        self.client = client

    def list_vms(self) -> list[VmSummary]:
        """Summaries of every VM on the host."""
        container = self.client.get_container_view([vim.VirtualMachine])
        vms = []

        for vm_obj in container.view:
            try:
                config = vm_obj.config
                devices = config.hardware.device if config else []
                vms.append(VmSummary(
                    id=vm_obj._moId,
                    name=vm_obj.name,
                    power_state=str(vm_obj.runtime.powerState),
                    cpu=config.hardware.numCPU if config else 0,
                    memory_mb=config.hardware.memoryMB if config else 0,
                    num_disks=sum(isinstance(d, vim.vm.device.VirtualDisk) for d in devices),
                    num_snapshots=len(self._walk_snapshots(vm_obj.snapshot.rootSnapshotList))
                    if vm_obj.snapshot else 0,
                ))
            except Exception as e:
                logger.warning(f"Error collecting info for VM: {e}")

        container.Destroy()
        logger.info(f"Collected inventory for {len(vms)} VMs")
        return vms

    def get_transferable_metadata(self, vm_id: str) -> VmMetadata:
        """Read the configuration, disks and snapshot tree of one VM."""
        vm = self.client.get_vm(vm_id)
        config = vm.config
        hardware = config.hardware

        metadata = VmMetadata(
            id=vm_id,
            name_label=vm.name,
            firmware="uefi" if getattr(config, "firmware", "bios") == "efi" else "bios",
            memory=hardware.memoryMB * 1024 * 1024,
            n_cpus=hardware.numCPU,
            power_state=str(vm.runtime.powerState),
            networks=self._extract_nics(hardware.device),
            disks=self._extract_disks(hardware.device),
        )

        if vm.snapshot and vm.snapshot.rootSnapshotList:
            snapshots = [
                Snapshot(
                    uid=tree.snapshot._moId,
                    parent=parent,
                    disks=self._extract_disks(tree.snapshot.config.hardware.device),
                    name=tree.name,
                )
                for tree, parent in self._walk_snapshots(vm.snapshot.rootSnapshotList)
            ]
            current = vm.snapshot.currentSnapshot._moId if vm.snapshot.currentSnapshot else None
            metadata.snapshots = SnapshotTree(current=current, snapshots=snapshots)

        logger.info(f"VM '{metadata.name_label}' ({vm_id}): {metadata.power_state}, "
                    f"{metadata.n_cpus} vCPU, {hardware.memoryMB}MB, "
                    f"{len(metadata.disks)} disk(s), "
                    f"{len(metadata.snapshots.snapshots) if metadata.snapshots else 0} snapshot(s)")
        return metadata

    def _walk_snapshots(self, snapshot_list, parent: Optional[str] = None) -> list[tuple]:
        """Flatten the snapshot tree into (tree node, parent uid) pairs."""
        nodes = []
        for tree in snapshot_list:
            nodes.append((tree, parent))
            if tree.childSnapshotList:
                nodes.extend(self._walk_snapshots(tree.childSnapshotList, tree.snapshot._moId))
        return nodes

    def _extract_disks(self, devices: list) -> list[DiskInfo]:
        """Extract disk descriptors from VM hardware devices."""
        disks = []
        controllers = {}

        # First pass: map controller keys to "scsi0", "ide1", ...
        for device in devices:
            if isinstance(device, vim.vm.device.VirtualSCSIController):
                controllers[device.key] = f"scsi{device.busNumber}"
            elif isinstance(device, vim.vm.device.VirtualNVMEController):
                controllers[device.key] = f"nvme{device.busNumber}"
            elif isinstance(device, vim.vm.device.VirtualIDEController):
                controllers[device.key] = f"ide{device.busNumber}"
            elif isinstance(device, vim.vm.device.VirtualSATAController):
                controllers[device.key] = f"sata{device.busNumber}"

        # Second pass: extract disk info
        for device in devices:
            if not isinstance(device, vim.vm.device.VirtualDisk):
                continue
            backing = device.backing
            match = _BACKING_FILE.match(getattr(backing, "fileName", "") or "")
            if match is None:
                logger.warning(f"Skipping disk {device.key}: no datastore backing (RDM?)")
                continue
            directory, _, file_name = match.group("path").rpartition("/")
            controller = controllers.get(device.controllerKey, f"ctrl{device.controllerKey}")
            label = device.deviceInfo.label if device.deviceInfo else f"disk-{device.key}"
            summary = device.deviceInfo.summary if device.deviceInfo else ""

            disks.append(DiskInfo(
                node=f"{controller}:{device.unitNumber}",
                capacity=device.capacityInBytes or device.capacityInKB * 1024,
                name_label=label,
                description_label=summary or label,
                datastore=match.group("datastore"),
                path=directory,
                file_name=file_name,
                is_full=getattr(backing, "parent", None) is None,
            ))

        return disks

    def _extract_nics(self, devices: list) -> list[NICInfo]:
        """Extract NIC information from VM hardware devices."""
        nics = []
        for device in devices:
            if isinstance(device, vim.vm.device.VirtualEthernetCard):
                adapter_type = type(device).__name__.rsplit(".", 1)[-1].replace("Virtual", "").lower()
                network = ""
                if hasattr(device.backing, "network") and device.backing.network:
                    network = device.backing.network.name
                elif hasattr(device.backing, "deviceName"):
                    network = device.backing.deviceName
                nics.append(NICInfo(
                    mac_address=device.macAddress or "",
                    network=network,
                    adapter_type=adapter_type,
                ))
        return nics
