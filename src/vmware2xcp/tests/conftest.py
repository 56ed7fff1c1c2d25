"""Shared in-memory stand-ins for ESXi and the XAPI pool."""

import itertools
import struct
import threading
import time

import pytest

from vmware2xcp.converter.disk import BLOCK_SIZE, DiskImage, SizedStream, pad_block
from vmware2xcp.errors import XapiError


# ═══════════════════════════════════════════════════════════════════
#  Disk images
# ═══════════════════════════════════════════════════════════════════

class FakeImage(DiskImage):
    """Full image whose content is a dict of block index → bytes."""

    def __init__(self, capacity, blocks, name="", full=False):
        super().__init__(capacity)
        self.blocks = dict(blocks)
        self.name = name
        self.full = full

    def contains_block(self, index):
        return self.full or index in self.blocks

    def read_block(self, index):
        return pad_block(self.blocks.get(index, b""))


class FakeDeltaImage(DiskImage):
    """Delta replacing whole blocks of its parent."""

    def __init__(self, capacity, blocks, parent, include_parent_blocks=True, name=""):
        super().__init__(capacity)
        self.blocks = dict(blocks)
        self.parent = parent
        self.include_parent_blocks = include_parent_blocks
        self.name = name

    def contains_block(self, index):
        if index in self.blocks:
            return True
        return self.include_parent_blocks and self.parent.contains_block(index)

    def read_block(self, index):
        if index in self.blocks:
            return pad_block(self.blocks[index])
        return self.parent.read_block(index)


class FakeOpener:
    """Opens DiskInfo by file name from ``files`` (file name → block dict)."""

    def __init__(self):
        self.files = {}
        self.opened = []   # (kind, file_name, include_parent_blocks)

    def open_full(self, disk, thin=False):
        self.opened.append(("full", disk.file_name, None))
        return FakeImage(disk.capacity, self.files.get(disk.file_name, {}), disk.file_name, full=not thin)

    def open_delta(self, disk, parent, include_parent_blocks=True):
        self.opened.append(("delta", disk.file_name, include_parent_blocks))
        return FakeDeltaImage(disk.capacity, self.files.get(disk.file_name, {}), parent,
                              include_parent_blocks, disk.file_name)


class EventLog:
    """Ordered, timestamped record shared by the fakes of one test."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def add(self, *event):
        with self._lock:
            self.events.append((time.monotonic(),) + event)

    def kinds(self):
        return [e[1] for e in self.events]


class FakeDestination:
    """Collects imported streams; optional per-VDI delay to shuffle timing."""

    def __init__(self, log):
        self.log = log
        self.imports = []   # (vdi_ref, fmt, data, start, end)
        self.delays = {}

    def import_content(self, vdi_ref, stream, fmt):
        start = time.monotonic()
        self.log.add("import_start", vdi_ref, fmt)
        time.sleep(self.delays.get(vdi_ref, 0))
        data = b"".join(stream)
        assert len(data) == len(stream)
        end = time.monotonic()
        self.imports.append((vdi_ref, fmt, data, start, end))
        self.log.add("import_end", vdi_ref, fmt)
        return len(data)


class FakeSource:
    def __init__(self, log):
        self.log = log
        self.powered_off = []

    def power_off(self, vm_id):
        self.powered_off.append(vm_id)
        self.log.add("power_off", vm_id)


def parse_vhd(data):
    """Block index → block data of a dynamic VHD produced by vhd_stream."""
    assert data[:8] == b"conectix"
    assert data[-512:] == data[:512]
    header = data[512:1536]
    assert header[:8] == b"cxsparse"
    table_offset, = struct.unpack(">Q", header[16:24])
    max_entries, block_size = struct.unpack(">II", header[28:36])
    bat = struct.unpack(f">{max_entries}I", data[table_offset:table_offset + 4 * max_entries])
    blocks = {}
    for index, sector in enumerate(bat):
        if sector == 0xFFFFFFFF:
            continue
        start = sector * 512 + 512   # skip the sector bitmap
        blocks[index] = data[start:start + block_size]
    return blocks


# ═══════════════════════════════════════════════════════════════════
#  XAPI pool
# ═══════════════════════════════════════════════════════════════════

class FakeXapi:
    """A tiny XAPI pool: VMs, VDIs, VBDs and VIFs kept in dicts.

    ``fail(method, exc, when=None)`` makes ``method`` raise ``exc`` when
    ``when(*args)`` is true (always when omitted).
    """

    def __init__(self):
        self.calls = []
        self.vms = {}
        self.vdis = {}
        self.vbds = {}
        self.vifs = {}
        self.srs = {"OpaqueRef:sr-a": "sr-a", "OpaqueRef:sr-b": "sr-b"}
        self.networks = {"OpaqueRef:net-1": "net-1"}
        self.imports = []
        self.vif_slots = [str(i) for i in range(7)]
        self._failures = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ── Test helpers ─────────────────────────────────────────────

    def fail(self, method, exc, when=None):
        self._failures.append((method, exc, when))

    def calls_to(self, method):
        return [args for name, args in self.calls if name == method]

    def _record(self, method, *args):
        with self._lock:
            self.calls.append((method, args))
        for name, exc, when in self._failures:
            if name == method and (when is None or when(*args)):
                raise exc

    def _ref(self, kind):
        n = next(self._ids)
        return f"OpaqueRef:{kind}-{n}", f"{kind}-uuid-{n}"

    def add_vm(self, name, disks, power_state="Running", sr="OpaqueRef:sr-a"):
        """Create a VM with ``disks`` (userdevice → block dict); returns (ref, uuid)."""
        ref, uuid = self._ref("vm")
        self.vms[ref] = self._vm(uuid, name, power_state=power_state)
        for device, blocks in disks.items():
            vdi_ref = self._new_vdi(sr, f"{name} {device}", 4 * BLOCK_SIZE, blocks)
            self._attach(ref, vdi_ref, device)
        return ref, uuid

    def _vm(self, uuid, name, **extra):
        record = {
            "uuid": uuid,
            "name_label": name,
            "blocked_operations": {},
            "other_config": {},
            "HVM_boot_params": {},
            "platform": {},
            "is_a_snapshot": False,
            "is_a_template": False,
            "power_state": "Halted",
            "snapshots": [],
        }
        record.update(extra)
        return record

    def _new_vdi(self, sr_ref, name, virtual_size, blocks=None):
        ref, uuid = self._ref("vdi")
        self.vdis[ref] = {"uuid": uuid, "name_label": name, "SR": sr_ref,
                          "virtual_size": virtual_size, "blocks": dict(blocks or {})}
        return ref

    def _attach(self, vm_ref, vdi_ref, device=None):
        if device is None:
            used = [int(v["userdevice"]) for v in self.vbds.values() if v["VM"] == vm_ref]
            device = str(max(used) + 1 if used else 0)
        ref, _ = self._ref("vbd")
        self.vbds[ref] = {"VM": vm_ref, "VDI": vdi_ref, "userdevice": device}
        return ref

    def _table(self, cls):
        return {"VM": self.vms, "VDI": self.vdis, "SR": None, "network": None}[cls]

    # ── XapiClient surface ───────────────────────────────────────

    def get_by_uuid(self, cls, uuid):
        self._record("get_by_uuid", cls, uuid)
        if cls in ("SR", "network"):
            table = self.srs if cls == "SR" else self.networks
            for ref, value in table.items():
                if value == uuid:
                    return ref
        else:
            for ref, record in self._table(cls).items():
                if record["uuid"] == uuid:
                    return ref
        raise XapiError(f"{cls}.get_by_uuid", ["UUID_INVALID", cls, uuid])

    def get_uuid(self, cls, ref):
        self._record("get_uuid", cls, ref)
        return self._table(cls)[ref]["uuid"]

    def call(self, method, *args):
        self._record(method, *args)
        if method == "VM.get_name_label":
            return self.vms[args[0]]["name_label"]
        if method == "VM.get_snapshots":
            return list(self.vms[args[0]]["snapshots"])
        if method == "VM.get_other_config":
            return dict(self.vms[args[0]]["other_config"])
        if method == "VM.set_is_a_template":
            self.vms[args[0]]["is_a_template"] = args[1]
            return None
        raise XapiError(method, ["MESSAGE_METHOD_UNKNOWN", method])

    def vm_create(self, record):
        self._record("vm_create", record)
        ref, uuid = self._ref("vm")
        self.vms[ref] = self._vm(uuid, record["name_label"])
        return ref

    def vm_destroy(self, vm_ref):
        self._record("vm_destroy", vm_ref)
        del self.vms[vm_ref]
        for vm in self.vms.values():
            if vm_ref in vm["snapshots"]:
                vm["snapshots"].remove(vm_ref)
        for table in (self.vbds, self.vifs):
            for ref in [r for r, rec in table.items() if rec["VM"] == vm_ref]:
                del table[ref]

    def get_all_vm_records(self):
        self._record("get_all_vm_records")
        return {ref: dict(record) for ref, record in self.vms.items()}

    def set_name_label(self, vm_ref, name_label):
        self._record("set_name_label", vm_ref, name_label)
        self.vms[vm_ref]["name_label"] = name_label

    def update_blocked_operations(self, vm_ref, operation, reason):
        self._record("update_blocked_operations", vm_ref, operation, reason)
        blocked = self.vms[vm_ref]["blocked_operations"]
        blocked.pop(operation, None)
        if reason is not None:
            blocked[operation] = reason

    def update_hvm_boot_param(self, vm_ref, key, value):
        self._record("update_hvm_boot_param", vm_ref, key, value)
        self.vms[vm_ref]["HVM_boot_params"][key] = value

    def update_platform(self, vm_ref, key, value):
        self._record("update_platform", vm_ref, key, value)
        self.vms[vm_ref]["platform"][key] = value

    def update_other_config(self, ref, key, value, cls="VM"):
        self._record("update_other_config", ref, key, value)
        self._table(cls)[ref]["other_config"][key] = value

    def allowed_vif_devices(self, vm_ref):
        self._record("allowed_vif_devices", vm_ref)
        return list(self.vif_slots)

    def clean_shutdown(self, vm_ref):
        self._record("clean_shutdown", vm_ref)
        self.vms[vm_ref]["power_state"] = "Halted"

    def hard_shutdown(self, vm_ref):
        self._record("hard_shutdown", vm_ref)
        self.vms[vm_ref]["power_state"] = "Halted"

    def start_vm(self, vm_ref):
        self._record("start_vm", vm_ref)
        if "start" in self.vms[vm_ref]["blocked_operations"]:
            raise XapiError("VM.start", ["OPERATION_BLOCKED", vm_ref, "start"])
        self.vms[vm_ref]["power_state"] = "Running"

    def _clone(self, vm_ref, name, sr_ref=None, **extra):
        source = self.vms[vm_ref]
        ref, uuid = self._ref("vm")
        self.vms[ref] = self._vm(uuid, name, other_config=dict(source["other_config"]),
                                 blocked_operations=dict(source["blocked_operations"]), **extra)
        for device, vdi in self.vm_disks(vm_ref).items():
            copy_ref = self._new_vdi(sr_ref or vdi["SR"], vdi["name_label"], vdi["virtual_size"], vdi["blocks"])
            self._attach(ref, copy_ref, device)
        return ref

    def snapshot_vm(self, vm_ref, name):
        self._record("snapshot_vm", vm_ref, name)
        ref = self._clone(vm_ref, name, is_a_snapshot=True, snapshot_of=vm_ref)
        self.vms[vm_ref]["snapshots"].append(ref)
        return ref

    def copy_vm(self, vm_ref, name, sr_ref):
        self._record("copy_vm", vm_ref, name, sr_ref)
        # copying a snapshot gives a template
        return self._clone(vm_ref, name, sr_ref, is_a_template=True)

    def vm_disks(self, vm_ref):
        disks = {}
        for vbd in self.vbds.values():
            if vbd["VM"] == vm_ref and vbd["VDI"] in self.vdis:
                disks[vbd["userdevice"]] = dict(self.vdis[vbd["VDI"]], ref=vbd["VDI"])
        return disks

    def vdi_create(self, record):
        self._record("vdi_create", record)
        return self._new_vdi(record["SR"], record["name_label"], record["virtual_size"])

    def vdi_destroy(self, vdi_ref):
        self._record("vdi_destroy", vdi_ref)
        del self.vdis[vdi_ref]

    def vbd_create(self, record):
        self._record("vbd_create", record)
        device = None if record["userdevice"] == "autodetect" else record["userdevice"]
        return self._attach(record["VM"], record["VDI"], device)

    def vif_create(self, record):
        self._record("vif_create", record)
        ref, _ = self._ref("vif")
        self.vifs[ref] = dict(record)
        return ref

    def import_content(self, vdi_ref, stream, fmt):
        data = b"".join(stream)
        assert len(data) == len(stream)
        self._record("import_content", vdi_ref, fmt)
        self.imports.append((vdi_ref, fmt, data))
        return len(data)

    def export_content(self, vdi_ref, fmt="vhd", base=None):
        """Each block as index + 512 bytes; only blocks differing from ``base``."""
        self._record("export_content", vdi_ref, fmt, base)
        blocks = self.vdis[vdi_ref]["blocks"]
        base_blocks = self.vdis[base]["blocks"] if base else {}
        chunks = [
            struct.pack(">I", index) + blocks[index].ljust(512, b"\0")
            for index in sorted(blocks)
            if base_blocks.get(index) != blocks[index]
        ]
        return SizedStream(iter(chunks), sum(len(chunk) for chunk in chunks))


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture
def event_log():
    return EventLog()


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def destination(event_log):
    return FakeDestination(event_log)


@pytest.fixture
def source(event_log):
    return FakeSource(event_log)


@pytest.fixture
def xapi():
    return FakeXapi()


@pytest.fixture
def read_vhd():
    return parse_vhd


@pytest.fixture
def make_disk():
    from vmware2xcp.vmware.inventory import DiskInfo

    def _make(node, file_name, is_full=True, capacity=3 * BLOCK_SIZE, label="Hard disk 1"):
        return DiskInfo(
            node=node,
            capacity=capacity,
            name_label=label,
            description_label="",
            datastore="datastore1",
            path="web01",
            file_name=file_name,
            is_full=is_full,
        )

    return _make
