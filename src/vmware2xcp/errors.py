"""Errors raised by the migration engine.

Everything derives from MigrationError so the CLI and the pipeline can tell
domain failures from programming errors. Connection failures use the builtin
ConnectionError, like the remote clients do.
"""

from __future__ import annotations


class MigrationError(RuntimeError):
    """Base class for migration failures."""


class DiskTooLarge(MigrationError):
    def __init__(self, node: str, capacity: int, limit: int):
        self.node = node
        self.capacity = capacity
        self.limit = limit
        super().__init__(
            f"Can't migrate disks larger than 2TiB: disk {node} is {capacity} bytes (limit {limit})"
        )


class MalformedSnapshotTree(MigrationError):
    """The snapshot parent links loop or point outside the tree."""


class MissingParentImage(MigrationError):
    """A delta disk was reached without the image it is based on."""


class MissingDestinationDisk(MigrationError):
    """No destination VDI exists for a disk-node that has data to import."""


class CannotImportRunningSource(MigrationError):
    """Cold import of a running VM was requested without permission to stop it."""


class TargetNotFound(MigrationError):
    """No destination VM carries the replication job tags."""


class AmbiguousTarget(MigrationError):
    """Several destination VMs carry the replication job tags."""


class UnsupportedDiskFormat(MigrationError):
    """A VMDK extent type the codec does not understand."""


class XapiError(MigrationError):
    """A XAPI call returned an error."""

    def __init__(self, method: str, description: list | str):
        self.method = method
        self.description = description if isinstance(description, list) else [description]
        super().__init__(f"XAPI call {method} failed: {', '.join(map(str, self.description))}")

    @property
    def code(self) -> str:
        return str(self.description[0]) if self.description else ""
