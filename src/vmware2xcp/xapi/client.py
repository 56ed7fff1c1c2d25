"""XAPI operations for VM provisioning, disk import and replication.

Talks JSON-RPC 2.0 to the pool master at ``/jsonrpc`` and uses the HTTP
handlers ``/import_raw_vdi`` and ``/export_raw_vdi`` for disk content.
Every RPC failure surfaces as XapiError; nothing is retried here.
"""

from __future__ import annotations

import itertools
import tempfile
from typing import Any, Iterable, Iterator, Optional

import requests

from vmware2xcp.converter.disk import SizedStream
from vmware2xcp.errors import XapiError
from vmware2xcp.utils.logging import get_logger

logger = get_logger(__name__)

VDI_FORMAT_RAW = "raw"
VDI_FORMAT_VHD = "vhd"

STREAM_CHUNK_SIZE = 1024 * 1024


class XapiClient:
    """Session-holding JSON-RPC client for one XAPI pool."""

    def __init__(self, url: str, username: str, password: str, insecure: bool = False):
        self.url = url.rstrip("/")
        self.username = username
        self._password = password
        self.session = requests.Session()
        self.session.verify = not insecure
        self.session.headers.update({"Content-Type": "application/json"})
        self._session_id: Optional[str] = None
        self._ids = itertools.count(1)

    @property
    def session_id(self) -> str:
        if self._session_id is None:
            raise ConnectionError("Not logged in to XAPI. Call login() first.")
        return self._session_id

    def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        try:
            resp = self.session.post(f"{self.url}/jsonrpc", json=payload)
        except requests.ConnectionError as e:
            raise ConnectionError(f"XAPI endpoint {self.url} unreachable: {e}") from e
        if not resp.ok:
            logger.error(f"XAPI HTTP error {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        body = resp.json()
        if "error" in body:
            error = body["error"]
            description = [error.get("message", "")] + list(error.get("data") or [])
            raise XapiError(method, description)
        return body.get("result")

    def login(self) -> None:
        self._session_id = self._rpc(
            "session.login_with_password",
            [self.username, self._password, "1.0", "vmware2xcp"],
        )
        logger.info(f"Logged in to XAPI {self.url} as {self.username}")

    def logout(self) -> None:
        if self._session_id is None:
            return
        try:
            self._rpc("session.logout", [self._session_id])
        except Exception as e:
            logger.warning(f"Error during XAPI logout: {e}")
        finally:
            self._session_id = None

    def call(self, method: str, *args: Any) -> Any:
        logger.debug(f"XAPI {method}")
        return self._rpc(method, [self.session_id, *args])

    def get_by_uuid(self, cls: str, uuid: str) -> str:
        return self.call(f"{cls}.get_by_uuid", uuid)

    def get_uuid(self, cls: str, ref: str) -> str:
        return self.call(f"{cls}.get_uuid", ref)

    # ── VMs ──────────────────────────────────────────────────────

    def vm_create(self, record: dict) -> str:
        return self.call("VM.create", record)

    def vm_destroy(self, vm_ref: str) -> None:
        self.call("VM.destroy", vm_ref)

    def vm_record(self, vm_ref: str) -> dict:
        return self.call("VM.get_record", vm_ref)

    def get_all_vm_records(self) -> dict[str, dict]:
        return self.call("VM.get_all_records")

    def set_name_label(self, vm_ref: str, name_label: str) -> None:
        self.call("VM.set_name_label", vm_ref, name_label)

    def update_blocked_operations(self, vm_ref: str, operation: str, reason: Optional[str]) -> None:
        """Block ``operation`` with ``reason``, or unblock it when reason is None."""
        self.call("VM.remove_from_blocked_operations", vm_ref, operation)
        if reason is not None:
            self.call("VM.add_to_blocked_operations", vm_ref, operation, reason)

    def update_hvm_boot_param(self, vm_ref: str, key: str, value: str) -> None:
        self.call("VM.remove_from_HVM_boot_params", vm_ref, key)
        self.call("VM.add_to_HVM_boot_params", vm_ref, key, value)

    def update_platform(self, vm_ref: str, key: str, value: str) -> None:
        self.call("VM.remove_from_platform", vm_ref, key)
        self.call("VM.add_to_platform", vm_ref, key, value)

    def update_other_config(self, ref: str, key: str, value: str, cls: str = "VM") -> None:
        self.call(f"{cls}.remove_from_other_config", ref, key)
        self.call(f"{cls}.add_to_other_config", ref, key, value)

    def allowed_vif_devices(self, vm_ref: str) -> list[str]:
        return self.call("VM.get_allowed_VIF_devices", vm_ref)

    def clean_shutdown(self, vm_ref: str) -> None:
        self.call("VM.clean_shutdown", vm_ref)

    def hard_shutdown(self, vm_ref: str) -> None:
        self.call("VM.hard_shutdown", vm_ref)

    def start_vm(self, vm_ref: str) -> None:
        self.call("VM.start", vm_ref, False, False)

    def snapshot_vm(self, vm_ref: str, name: str) -> str:
        return self.call("VM.snapshot", vm_ref, name)

    def copy_vm(self, vm_ref: str, name: str, sr_ref: str) -> str:
        return self.call("VM.copy", vm_ref, name, sr_ref)

    def vm_disks(self, vm_ref: str) -> dict[str, dict]:
        """VDI records of a VM's disks keyed by VBD userdevice."""
        disks = {}
        for vbd_ref in self.call("VM.get_VBDs", vm_ref):
            vbd = self.call("VBD.get_record", vbd_ref)
            if vbd["type"] != "Disk" or vbd["empty"]:
                continue
            vdi = self.call("VDI.get_record", vbd["VDI"])
            vdi["ref"] = vbd["VDI"]
            disks[vbd["userdevice"]] = vdi
        return disks

    # ── Disks and interfaces ────────────────────────────────────

    def vdi_create(self, record: dict) -> str:
        return self.call("VDI.create", record)

    def vdi_destroy(self, vdi_ref: str) -> None:
        self.call("VDI.destroy", vdi_ref)

    def vbd_create(self, record: dict) -> str:
        return self.call("VBD.create", record)

    def vif_create(self, record: dict) -> str:
        return self.call("VIF.create", record)

    # ── Disk content ─────────────────────────────────────────────

    def import_content(self, vdi_ref: str, stream: SizedStream, fmt: str) -> int:
        """Push ``stream`` into a VDI. Returns the number of bytes sent.

        The stream is consumed exactly once while the request is in flight.
        ``/import_raw_vdi`` rejects chunked bodies, so the length is always
        sent as Content-Length.
        """
        size = len(stream)
        sent = 0

        def counted() -> Iterator[bytes]:
            nonlocal sent
            for chunk in stream:
                sent += len(chunk)
                yield chunk

        logger.info(f"Importing {size / (1024 ** 2):.1f} MiB of {fmt} content into VDI {vdi_ref}")
        resp = self.session.put(
            f"{self.url}/import_raw_vdi",
            params={"session_id": self.session_id, "vdi": vdi_ref, "format": fmt},
            data=SizedStream(counted(), size),
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(size)},
        )
        if not resp.ok:
            logger.error(f"VDI import failed {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        if sent != size:
            raise XapiError("import_raw_vdi", [f"sent {sent} bytes, announced {size}"])
        logger.info(f"Imported {sent / (1024 ** 2):.1f} MiB into VDI {vdi_ref}")
        return sent

    def export_content(self, vdi_ref: str, fmt: str = VDI_FORMAT_VHD, base: Optional[str] = None) -> SizedStream:
        """Stream a VDI, as a difference against ``base`` when given.

        The length comes from the response's Content-Length. Without one the
        body is spooled to a temporary file first, to learn it.
        """
        params = {"session_id": self.session_id, "vdi": vdi_ref, "format": fmt}
        if base is not None:
            params["base"] = base
        resp = self.session.get(f"{self.url}/export_raw_vdi", params=params, stream=True)
        if not resp.ok:
            logger.error(f"VDI export failed {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        chunks = resp.iter_content(chunk_size=STREAM_CHUNK_SIZE)
        length = resp.headers.get("Content-Length")
        if length is not None:
            return SizedStream(chunks, int(length))
        return self._spool(chunks)

    @staticmethod
    def _spool(chunks: Iterable[bytes]) -> SizedStream:
        spool = tempfile.TemporaryFile(prefix="vdi-export-")
        try:
            for chunk in chunks:
                spool.write(chunk)
            size = spool.tell()
            spool.seek(0)
        except BaseException:
            spool.close()
            raise
        logger.debug(f"Spooled {size} bytes of VDI export without Content-Length")

        def replay() -> Iterator[bytes]:
            with spool:
                yield from iter(lambda: spool.read(STREAM_CHUNK_SIZE), b"")

        return SizedStream(replay(), size)

    def __enter__(self):
        self.login()
        return self

    def __exit__(self, *args):
        self.logout()
