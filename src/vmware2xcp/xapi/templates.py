"""Record templates for objects created through XAPI.

VM.create, VDI.create, VBD.create and VIF.create want every writable field
of the record, even the ones we do not care about.
"""

from __future__ import annotations

import copy

HVM_VM_TEMPLATE = {
    "actions_after_crash": "restart",
    "actions_after_reboot": "restart",
    "actions_after_shutdown": "destroy",
    "affinity": "OpaqueRef:NULL",
    "appliance": "OpaqueRef:NULL",
    "blocked_operations": {},
    "HVM_boot_params": {"order": "cdn"},
    "HVM_boot_policy": "BIOS order",
    "HVM_shadow_multiplier": 1.0,
    "is_a_template": False,
    "memory_overhead": 0,
    "name_description": "",
    "other_config": {
        "vgpu_pci": "",
        "base_template_name": "Other install media",
        "install-methods": "cdrom,nfs,http,ftp",
    },
    "PCI_bus": "",
    "platform": {
        "timeoffset": "0",
        "nx": "true",
        "acpi": "1",
        "apic": "true",
        "pae": "true",
        "hpet": "true",
        "viridian": "true",
    },
    "protection_policy": "OpaqueRef:NULL",
    "PV_args": "",
    "PV_bootloader": "",
    "PV_bootloader_args": "",
    "PV_kernel": "",
    "PV_legacy_args": "",
    "PV_ramdisk": "",
    "recommendations": "",
    "shutdown_delay": 0,
    "start_delay": 0,
    "tags": [],
    "user_version": 1,
    "VCPUs_params": {},
    "xenstore_data": {},
}


def vm_record(name_label: str, memory: int, n_cpus: int, name_description: str = "") -> dict:
    record = copy.deepcopy(HVM_VM_TEMPLATE)
    record.update({
        "memory_dynamic_max": memory,
        "memory_dynamic_min": memory,
        "memory_static_max": memory,
        "memory_static_min": memory,
        "name_description": name_description,
        "name_label": name_label,
        "VCPUs_at_startup": n_cpus,
        "VCPUs_max": n_cpus,
    })
    return record


def vdi_record(sr_ref: str, name_label: str, name_description: str, virtual_size: int) -> dict:
    return {
        "name_label": name_label,
        "name_description": name_description,
        "SR": sr_ref,
        "virtual_size": virtual_size,
        "type": "user",
        "sharable": False,
        "read_only": False,
        "other_config": {},
        "xenstore_data": {},
        "sm_config": {},
        "tags": [],
    }


def vbd_record(vm_ref: str, vdi_ref: str, userdevice: str = "autodetect", bootable: bool = False) -> dict:
    return {
        "VM": vm_ref,
        "VDI": vdi_ref,
        "userdevice": userdevice,
        "bootable": bootable,
        "mode": "RW",
        "type": "Disk",
        "empty": False,
        "other_config": {},
        "qos_algorithm_type": "",
        "qos_algorithm_params": {},
    }


def vif_record(vm_ref: str, network_ref: str, device: str, mac: str) -> dict:
    return {
        "device": device,
        "network": network_ref,
        "VM": vm_ref,
        "MAC": mac,
        "MTU": 1500,
        "other_config": {},
        "qos_algorithm_type": "",
        "qos_algorithm_params": {},
    }
