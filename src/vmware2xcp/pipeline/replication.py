"""One-shot delta replication of a XAPI VM to another SR.

The first pass snapshots the source and copies the snapshot to the target
SR (full copy). The snapshot is kept, tagged with the job id: a later pass
with the same job id finds it, takes a new snapshot and only streams the
difference between the two snapshots into the replica's VDIs. One snapshot
is retained per job.

The replica is tagged with the job id, SR and source VM so the caller can
find it, and created with ``start`` blocked.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from vmware2xcp.errors import MigrationError
from vmware2xcp.utils.logging import get_logger
from vmware2xcp.xapi.client import VDI_FORMAT_VHD

if TYPE_CHECKING:
    from vmware2xcp.xapi.client import XapiClient

logger = get_logger(__name__)

JOB_TAG = "vmware2xcp:replication:job"
SR_TAG = "vmware2xcp:replication:sr"
VM_TAG = "vmware2xcp:replication:vm"

REPLICA_BLOCKED = "Replication target, start it once the migration is complete"


@dataclass(frozen=True)
class ReplicationJob:
    """Single-use job description; the id is what ties both passes together."""
    job_id: str
    source_vm: str        # source VM uuid
    sr: str               # target SR uuid
    mode: str = "delta"
    retention: int = 1
    schedule: str = "one-time"

    @property
    def name(self) -> str:
        return f"Warm migration {self.job_id[:8]}"

    def tags(self) -> dict[str, str]:
        return {JOB_TAG: self.job_id, SR_TAG: self.sr, VM_TAG: self.source_vm}


def find_replication_targets(records: dict[str, dict], job: ReplicationJob) -> list[str]:
    """Refs of the VMs carrying every tag of ``job`` and a start block."""
    targets = []
    for ref, record in records.items():
        if record.get("is_a_snapshot") or record.get("is_a_template"):
            continue
        other = record.get("other_config") or {}
        if all(other.get(key) == value for key, value in job.tags().items()) \
                and "start" in (record.get("blocked_operations") or {}):
            targets.append(ref)
    return targets


class DeltaReplicationRunner:
    """Runs one replication pass of ``job`` through ``xapi``."""

    def __init__(self, xapi: "XapiClient", job: ReplicationJob):
        self.xapi = xapi
        self.job = job

    def run(self) -> int:
        """Replicate once; returns the number of bytes transferred."""
        xapi = self.xapi
        source_ref = xapi.get_by_uuid("VM", self.job.source_vm)
        source_name = xapi.call("VM.get_name_label", source_ref)

        previous = self._retained_snapshot(source_ref)
        target = self._replica() if previous else None

        snapshot_ref = xapi.snapshot_vm(source_ref, f"[{self.job.name}] {source_name}")
        xapi.update_other_config(snapshot_ref, JOB_TAG, self.job.job_id)
        try:
            if previous is None or target is None:
                logger.info(f"{self.job.name}: full copy of '{source_name}'")
                transferred = self._full_copy(snapshot_ref, source_name)
            else:
                logger.info(f"{self.job.name}: delta copy of '{source_name}'")
                transferred = self._delta_copy(snapshot_ref, previous, target)
        except Exception:
            # keep the previous snapshot as the base of the next attempt
            self._destroy_snapshot(snapshot_ref)
            raise

        if previous is not None:
            self._destroy_snapshot(previous)
        logger.info(f"{self.job.name}: {transferred / 1024 ** 2:.1f} MiB transferred")
        return transferred

    def forget(self) -> None:
        """Drop the retained snapshot; later runs will copy everything again."""
        source_ref = self.xapi.get_by_uuid("VM", self.job.source_vm)
        previous = self._retained_snapshot(source_ref)
        if previous is not None:
            self._destroy_snapshot(previous)

    def _retained_snapshot(self, source_ref: str) -> Optional[str]:
        for snapshot_ref in self.xapi.call("VM.get_snapshots", source_ref):
            other = self.xapi.call("VM.get_other_config", snapshot_ref)
            if other.get(JOB_TAG) == self.job.job_id:
                return snapshot_ref
        return None

    def _replica(self) -> Optional[str]:
        targets = find_replication_targets(self.xapi.get_all_vm_records(), self.job)
        if len(targets) > 1:
            raise MigrationError(f"{self.job.name}: {len(targets)} replicas found, expected one")
        return targets[0] if targets else None

    def _full_copy(self, snapshot_ref: str, source_name: str) -> int:
        xapi = self.xapi
        sr_ref = xapi.get_by_uuid("SR", self.job.sr)
        replica_ref = xapi.copy_vm(snapshot_ref, source_name, sr_ref)
        xapi.call("VM.set_is_a_template", replica_ref, False)
        for key, value in self.job.tags().items():
            xapi.update_other_config(replica_ref, key, value)
        for op in ("start", "start_on"):
            xapi.update_blocked_operations(replica_ref, op, REPLICA_BLOCKED)
        return sum(int(vdi["virtual_size"]) for vdi in xapi.vm_disks(replica_ref).values())

    def _delta_copy(self, snapshot_ref: str, previous_ref: str, replica_ref: str) -> int:
        xapi = self.xapi
        current = xapi.vm_disks(snapshot_ref)
        base = xapi.vm_disks(previous_ref)
        replica = xapi.vm_disks(replica_ref)
        transferred = 0
        for device, vdi in current.items():
            if device not in replica:
                raise MigrationError(f"{self.job.name}: replica has no disk at position {device}")
            base_ref = base[device]["ref"] if device in base else None
            stream = xapi.export_content(vdi["ref"], VDI_FORMAT_VHD, base=base_ref)
            transferred += xapi.import_content(replica[device]["ref"], stream, VDI_FORMAT_VHD)
        return transferred

    def _destroy_snapshot(self, snapshot_ref: str) -> None:
        for vdi in self.xapi.vm_disks(snapshot_ref).values():
            self.xapi.vdi_destroy(vdi["ref"])
        self.xapi.vm_destroy(snapshot_ref)
