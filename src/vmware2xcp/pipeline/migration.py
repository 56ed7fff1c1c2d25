"""Migration pipeline orchestrator: coordinates all migration stages."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from vmware2xcp.config import AppConfig, VMMigrationPlan
from vmware2xcp.pipeline.chain import build_disk_chains
from vmware2xcp.pipeline.provision import DestinationProvisioner, DestinationVdi, DestinationVm
from vmware2xcp.pipeline.rollback import Rollback
from vmware2xcp.pipeline.state import MigrationState, MigrationStateStore
from vmware2xcp.pipeline.transfer import DiskImporter, DiskTransfer
from vmware2xcp.utils.logging import add_file_handler, get_logger, remove_file_handler
from vmware2xcp.utils.tasks import MigrationContext

if TYPE_CHECKING:
    from vmware2xcp.vmware.inventory import DiskInfo, VmMetadata

logger = get_logger(__name__)


@dataclass
class MigrationResult:
    """Result of a migration execution."""
    success: bool
    migration_id: str
    vm_id: str
    vm_uuid: Optional[str] = None
    duration: str = ""
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    completed_stages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rollback_failures: list[str] = field(default_factory=list)


@dataclass
class _Attempt:
    """Live objects of one run, handed from stage to stage."""
    context: MigrationContext
    rollback: Rollback
    thin: bool
    stop_source: bool
    metadata: Optional["VmMetadata"] = None
    chains: dict[str, list["DiskInfo"]] = field(default_factory=dict)
    vm: Optional[DestinationVm] = None
    vdis: dict[str, DestinationVdi] = field(default_factory=dict)


class MigrationPipeline:
    """Orchestrates the full ESXi → XCP-ng migration of one VM.

    Stages (executed in order):
    1. connect       — log in to ESXi and XAPI
    2. inventory     — read the VM configuration, disks and snapshot tree
    3. build_chains  — per disk-node chains, size ceiling check
    4. create_vm     — VM shell with start blocked, VIFs
    5. create_vdis   — one empty VDI per disk-node, attached
    6. import_disks  — cold or warm transfer
    7. finalize      — restore the name, unblock start

    Anything created from stage 4 on is destroyed if a later stage fails.
    The remote clients can be injected; otherwise they are built from the
    configuration during ``connect``.
    """

    STAGES = [
        "connect",
        "inventory",
        "build_chains",
        "create_vm",
        "create_vdis",
        "import_disks",
        "finalize",
    ]

    def __init__(
        self,
        config: AppConfig,
        *,
        source: Any = None,
        inventory: Any = None,
        opener: Any = None,
        xapi: Any = None,
    ):
        self.config = config
        self.state_store = MigrationStateStore(config.transfer.work_dir)
        self.source = source
        self.inventory = inventory
        self.opener = opener
        self.xapi = xapi
        self._owned_clients: list[Any] = []

    def run_sync(self, plan: VMMigrationPlan) -> MigrationResult:
        return asyncio.run(self.run(plan))

    async def run(self, plan: VMMigrationPlan) -> MigrationResult:
        """Execute a full migration for a single VM.

        Args:
            plan: Migration plan with VM id, SR, network and mode

        Returns:
            MigrationResult with success status and details
        """
        migration_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        thin, stop_source = plan.resolve(self.config.transfer)

        state = MigrationState(
            migration_id=migration_id,
            vm_id=plan.vm_id,
            mode=plan.mode,
            started_at=datetime.now(),
        )
        self.state_store.save(state)
        attempt = _Attempt(
            context=MigrationContext(f"migration {migration_id}"),
            rollback=Rollback(),
            thin=thin,
            stop_source=stop_source,
        )
        log_handler = add_file_handler(self.config.transfer.work_dir / "logs" / f"{migration_id}.log")

        logger.info(f"[bold]Starting {plan.mode} migration {migration_id}[/bold]: "
                    f"VM {plan.vm_id} → SR {plan.sr} (thin={thin}, stop_source={stop_source})")
        try:
            for stage_name in self.STAGES:
                state.current_stage = stage_name
                self.state_store.save(state)
                try:
                    await self._execute_stage(stage_name, plan, state, attempt)
                except Exception as e:
                    return await self._fail(stage_name, e, state, attempt, start_time)
                except BaseException as e:
                    # cancelled or interrupted: clean the destination, then let it propagate
                    await self._fail(stage_name, e, state, attempt, start_time)
                    raise
                state.completed_stages.append(stage_name)
                state.warnings = list(attempt.context.warnings)
                self.state_store.save(state)

            # success: everything created now belongs to the pool
            attempt.rollback.discard()
            elapsed = time.time() - start_time
            state.finished_at = datetime.now()
            state.warnings = list(attempt.context.warnings)
            self.state_store.save(state)
            logger.info(f"[bold green]Migration {migration_id} complete in {elapsed:.0f}s[/bold green]")
            return MigrationResult(
                success=True,
                migration_id=migration_id,
                vm_id=plan.vm_id,
                vm_uuid=attempt.vm.uuid if attempt.vm else None,
                duration=f"{elapsed:.0f}s",
                completed_stages=list(state.completed_stages),
                warnings=list(attempt.context.warnings),
            )
        finally:
            self._disconnect()
            remove_file_handler(log_handler)

    async def _fail(
        self,
        stage_name: str,
        error: BaseException,
        state: MigrationState,
        attempt: _Attempt,
        start_time: float,
    ) -> MigrationResult:
        message = str(error) or type(error).__name__
        logger.error(f"[red]✗ Stage {stage_name} failed: {message}[/red]")
        rollback_failures = await attempt.rollback.unwind()
        elapsed = time.time() - start_time
        state.error = message
        state.finished_at = datetime.now()
        state.warnings = list(attempt.context.warnings)
        state.artifacts["rolled_back"] = True
        if rollback_failures:
            state.artifacts["rollback_failures"] = rollback_failures
        self.state_store.save(state)
        return MigrationResult(
            success=False,
            migration_id=state.migration_id,
            vm_id=state.vm_id,
            failed_stage=stage_name,
            error=message,
            duration=f"{elapsed:.0f}s",
            completed_stages=list(state.completed_stages),
            warnings=list(attempt.context.warnings),
            rollback_failures=rollback_failures,
        )

    async def dry_run(self, plan: VMMigrationPlan) -> dict[str, list["DiskInfo"]]:
        """Read the VM and build its chains without creating anything."""
        context = MigrationContext("dry run")
        try:
            await self._stage_connect(plan, None, context)
            async with context.task(f"get metadata of {plan.vm_id}"):
                metadata = await asyncio.to_thread(self.inventory.get_transferable_metadata, plan.vm_id)
            chains = build_disk_chains(metadata.disks, metadata.snapshots)
        finally:
            self._disconnect()

        thin, stop_source = plan.resolve(self.config.transfer)
        logger.info(f"[yellow]DRY RUN for VM '{metadata.name_label}'[/yellow] ({plan.mode}, thin={thin})")
        if metadata.is_running and plan.mode == "cold" and not stop_source:
            logger.warning("VM is running: a cold migration needs --stop-source")
        for node, chain in chains.items():
            logger.info(f"  {node}: {' → '.join(d.file_name for d in chain)}")
        return chains

    async def _execute_stage(self, stage: str, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        """Execute a single pipeline stage."""
        handler = getattr(self, f"_stage_{stage}", None)
        if handler is None:
            raise NotImplementedError(f"Stage '{stage}' not implemented yet")
        await handler(plan, state, attempt)

    # ─── Stage implementations ───────────────────────────────────────

    async def _stage_connect(self, plan: VMMigrationPlan, state: Optional[MigrationState], attempt) -> None:
        context = attempt.context if isinstance(attempt, _Attempt) else attempt
        if self.source is None:
            from vmware2xcp.vmware.client import VSphereClient

            esxi = self.config.esxi
            if esxi is None:
                raise ValueError("No ESXi connection configured (esxi section or ESXI_HOST)")
            async with context.task(f"connecting to {esxi.host}"):
                client = VSphereClient()
                pw = esxi.password.get_secret_value() if esxi.password else ""
                await asyncio.to_thread(client.connect, esxi.host, esxi.username, pw, esxi.port, esxi.insecure)
            self.source = client
            self._owned_clients.append(client)
        if self.inventory is None:
            from vmware2xcp.vmware.inventory import VMInventory

            self.inventory = VMInventory(self.source)
        if self.opener is None:
            from vmware2xcp.converter.vmdk import EsxiDiskOpener

            self.opener = EsxiDiskOpener(self.source)
        if self.xapi is None:
            from vmware2xcp.xapi.client import XapiClient

            cfg = self.config.xapi
            pw = cfg.password.get_secret_value() if cfg.password else ""
            async with context.task(f"connecting to {cfg.url}"):
                xapi = XapiClient(cfg.url, cfg.username, pw, insecure=cfg.insecure)
                await asyncio.to_thread(xapi.login)
            self.xapi = xapi
            self._owned_clients.append(xapi)

    def _disconnect(self) -> None:
        while self._owned_clients:
            client = self._owned_clients.pop()
            if hasattr(client, "logout"):
                client.logout()
            else:
                client.disconnect()
        self.source = self.inventory = self.opener = self.xapi = None

    async def _stage_inventory(self, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        async with attempt.context.task(f"get metadata of {plan.vm_id}"):
            attempt.metadata = await asyncio.to_thread(self.inventory.get_transferable_metadata, plan.vm_id)
        state.artifacts["vm"] = attempt.metadata.model_dump()

    async def _stage_build_chains(self, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        metadata = attempt.metadata
        async with attempt.context.task(f"build disks and snapshots chains for {plan.vm_id}"):
            attempt.chains = build_disk_chains(metadata.disks, metadata.snapshots)
        state.artifacts["chains"] = {
            node: [disk.file_path for disk in chain] for node, chain in attempt.chains.items()
        }

    async def _stage_create_vm(self, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        provisioner = DestinationProvisioner(self.xapi, attempt.context)
        attempt.vm = await provisioner.create_vm(attempt.metadata, plan.network, attempt.rollback)
        state.artifacts["vm_uuid"] = attempt.vm.uuid

    async def _stage_create_vdis(self, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        provisioner = DestinationProvisioner(self.xapi, attempt.context)
        attempt.vdis = await provisioner.create_vdis(attempt.vm, attempt.chains, plan.sr, attempt.rollback)
        state.artifacts["vdis"] = {node: vdi.uuid for node, vdi in attempt.vdis.items()}

    async def _stage_import_disks(self, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        transfer = DiskTransfer(
            DiskImporter(self.opener, self.xapi),
            self.source,
            plan.vm_id,
            attempt.context,
            thin=attempt.thin,
        )
        do_import = transfer.warm_import if plan.mode == "warm" else transfer.cold_import
        await do_import(attempt.chains, attempt.vdis, attempt.metadata.is_running, attempt.stop_source)

    async def _stage_finalize(self, plan: VMMigrationPlan, state: MigrationState, attempt: _Attempt) -> None:
        await DestinationProvisioner(self.xapi, attempt.context).finalize(attempt.vm)
