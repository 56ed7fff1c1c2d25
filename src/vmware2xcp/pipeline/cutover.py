"""Warm migration between SRs through a replication job run twice.

1. replicate while the source runs (full copy)
2. stop the source and block its start
3. replicate again with the same job id (only what changed)
4. find the replica by its tags, unblock it, optionally start it
5. optionally destroy the source, only once the replica started
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from vmware2xcp.errors import AmbiguousTarget, TargetNotFound
from vmware2xcp.pipeline.replication import DeltaReplicationRunner, ReplicationJob, find_replication_targets
from vmware2xcp.utils.aio import gather_settled
from vmware2xcp.utils.logging import get_logger

if TYPE_CHECKING:
    from vmware2xcp.utils.tasks import MigrationContext
    from vmware2xcp.xapi.client import XapiClient

logger = get_logger(__name__)

SOURCE_BLOCKED = (
    "This VM has been migrated somewhere else and might not be up to date, "
    "check twice before starting it."
)


class ReplicationRunner(Protocol):
    def run(self) -> int: ...

    def forget(self) -> None: ...


class ReplicationCutover:
    """Runs the replication-based warm migration of one XAPI VM."""

    def __init__(
        self,
        xapi: "XapiClient",
        context: "MigrationContext",
        runner_factory: Optional[Callable[[ReplicationJob], ReplicationRunner]] = None,
    ):
        self.xapi = xapi
        self.context = context
        self.runner_factory = runner_factory or (lambda job: DeltaReplicationRunner(xapi, job))

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    async def _replicate(self, job: ReplicationJob, name: str) -> int:
        # a runner is single use, the job id carries the state between passes
        async with self.context.task(name):
            return await self._call(self.runner_factory(job).run)

    async def _stop_source(self, source_ref: str) -> None:
        async with self.context.task("stopping source VM"):
            try:
                await self._call(self.xapi.clean_shutdown, source_ref)
            except Exception as e:
                logger.warning(f"Clean shutdown failed ({e}), forcing it")
                await self._call(self.xapi.hard_shutdown, source_ref)
            await gather_settled(*(
                self._call(self.xapi.update_blocked_operations, source_ref, op, SOURCE_BLOCKED)
                for op in ("start", "start_on")
            ))

    async def find_target(self, job: ReplicationJob) -> str:
        records = await self._call(self.xapi.get_all_vm_records)
        targets = find_replication_targets(records, job)
        if not targets:
            raise TargetNotFound(f"Vm target of warm migration not found for {job.source_vm} on SR {job.sr}")
        if len(targets) > 1:
            raise AmbiguousTarget(f"Multiple target of warm migration found for {job.source_vm} on SR {job.sr}")
        return targets[0]

    async def warm_migrate(
        self,
        source_vm: str,
        sr: str,
        start_destination: bool = True,
        delete_source: bool = False,
    ) -> str:
        """Migrate VM ``source_vm`` to SR ``sr``; returns the new VM uuid."""
        job = ReplicationJob(job_id=str(uuid.uuid4()), source_vm=source_vm, sr=sr)
        source_ref = await self._call(self.xapi.get_by_uuid, "VM", source_vm)

        full = await self._replicate(job, "initial replication")
        await self._stop_source(source_ref)
        # the source is stopped: nothing changes after this pass
        delta = await self._replicate(job, "replicating changes since the initial copy")
        logger.info(f"Transferred {full / 1024 ** 2:.1f} MiB live, {delta / 1024 ** 2:.1f} MiB during cutover")

        target_ref = await self.find_target(job)
        async with self.context.task("unlocking migrated VM"):
            await gather_settled(*(
                self._call(self.xapi.update_blocked_operations, target_ref, op, None)
                for op in ("start", "start_on")
            ))
        target_uuid = await self._call(self.xapi.get_uuid, "VM", target_ref)

        if start_destination:
            async with self.context.task("starting migrated VM"):
                await self._call(self.xapi.start_vm, target_ref)
            if delete_source:
                async with self.context.task("destroying source VM"):
                    await self._call(self.runner_factory(job).forget)
                    for vdi in (await self._call(self.xapi.vm_disks, source_ref)).values():
                        await self._call(self.xapi.vdi_destroy, vdi["ref"])
                    await self._call(self.xapi.vm_destroy, source_ref)
        elif delete_source:
            self.context.warning("Source VM kept: it is only destroyed after the migrated VM started")

        return target_uuid
