"""Per-disk change chains built from a VM's snapshot history."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from vmware2xcp.errors import DiskTooLarge, MalformedSnapshotTree

if TYPE_CHECKING:
    from vmware2xcp.vmware.inventory import DiskInfo, SnapshotTree

MAX_DISK_SIZE = 2 * 1024 ** 4  # 2 TiB, VHD limit on the destination


def snapshot_lineage(snapshots: "SnapshotTree") -> list[list["DiskInfo"]]:
    """Disk lists from the root snapshot down to the current one.

    Raises MalformedSnapshotTree when the parent links loop, when a parent
    id is not part of the tree or when the current snapshot is unknown.
    """
    current = snapshots.find(snapshots.current)
    if current is None:
        raise MalformedSnapshotTree(f"Current snapshot {snapshots.current!r} is not in the snapshot tree")

    lineage = []
    seen: set[str] = set()
    while current is not None:
        if current.uid in seen:
            raise MalformedSnapshotTree(f"Snapshot {current.uid!r} is its own ancestor")
        seen.add(current.uid)
        lineage.append(current.disks)
        if current.parent is None:
            break
        parent = snapshots.find(current.parent)
        if parent is None:
            raise MalformedSnapshotTree(
                f"Snapshot {current.uid!r} references missing parent {current.parent!r}"
            )
        current = parent

    lineage.reverse()
    return lineage


def build_disk_chains(
    disks: list["DiskInfo"],
    snapshots: Optional["SnapshotTree"] = None,
) -> dict[str, list["DiskInfo"]]:
    """Group every disk image of the VM history by disk-node, oldest first.

    The current disks are the newest element of each chain. Nothing remote
    is touched, so a refusal here leaves both sides untouched.
    """
    chain: list[list["DiskInfo"]] = []
    if snapshots is not None and snapshots.current:
        chain = snapshot_lineage(snapshots)
    chain.append(disks)

    for layer in chain:
        for disk in layer:
            if disk.capacity > MAX_DISK_SIZE:
                raise DiskTooLarge(disk.node, disk.capacity, MAX_DISK_SIZE)

    chains_by_node: dict[str, list["DiskInfo"]] = {}
    for layer in chain:
        for disk in layer:
            chains_by_node.setdefault(disk.node, []).append(disk)
    return chains_by_node
