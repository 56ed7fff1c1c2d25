"""Tests for disk chain construction from the snapshot tree."""

import pytest


def _snapshot(uid, parent, disks):
    from vmware2xcp.vmware.inventory import Snapshot
    return Snapshot(uid=uid, parent=parent, disks=disks, name=uid)


# ═══════════════════════════════════════════════════════════════════
#  Chain Building
# ═══════════════════════════════════════════════════════════════════

class TestBuildDiskChains:
    def test_no_snapshots(self, make_disk):
        from vmware2xcp.pipeline.chain import build_disk_chains
        disks = [make_disk("scsi0:0", "web01.vmdk"), make_disk("scsi0:1", "web01_1.vmdk")]
        chains = build_disk_chains(disks)
        assert list(chains) == ["scsi0:0", "scsi0:1"]
        assert chains["scsi0:0"] == [disks[0]]
        assert chains["scsi0:1"] == [disks[1]]

    def test_linear_history_oldest_first(self, make_disk):
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        base = make_disk("scsi0:0", "web01.vmdk")
        d1 = make_disk("scsi0:0", "web01-000001.vmdk", is_full=False)
        current = make_disk("scsi0:0", "web01-000002.vmdk", is_full=False)
        tree = SnapshotTree(current="s2", snapshots=[
            _snapshot("s1", None, [base]),
            _snapshot("s2", "s1", [d1]),
        ])
        chains = build_disk_chains([current], tree)
        assert chains == {"scsi0:0": [base, d1, current]}

    def test_only_current_branch_is_followed(self, make_disk):
        """Snapshots on another branch are not part of the chain."""
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        base = make_disk("scsi0:0", "a.vmdk")
        other = make_disk("scsi0:0", "b.vmdk", is_full=False)
        mine = make_disk("scsi0:0", "c.vmdk", is_full=False)
        current = make_disk("scsi0:0", "d.vmdk", is_full=False)
        tree = SnapshotTree(current="s3", snapshots=[
            _snapshot("s1", None, [base]),
            _snapshot("s2", "s1", [other]),
            _snapshot("s3", "s1", [mine]),
        ])
        chains = build_disk_chains([current], tree)
        assert [d.file_name for d in chains["scsi0:0"]] == ["a.vmdk", "c.vmdk", "d.vmdk"]

    def test_disk_added_after_snapshot(self, make_disk):
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        base = make_disk("scsi0:0", "web01.vmdk")
        tree = SnapshotTree(current="s1", snapshots=[_snapshot("s1", None, [base])])
        current = [
            make_disk("scsi0:0", "web01-000001.vmdk", is_full=False),
            make_disk("scsi0:1", "data.vmdk"),
        ]
        chains = build_disk_chains(current, tree)
        assert len(chains["scsi0:0"]) == 2
        assert [d.file_name for d in chains["scsi0:1"]] == ["data.vmdk"]

    def test_tree_without_current_snapshot(self, make_disk):
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        disk = make_disk("scsi0:0", "web01.vmdk")
        chains = build_disk_chains([disk], SnapshotTree(current=None, snapshots=[]))
        assert chains == {"scsi0:0": [disk]}


# ═══════════════════════════════════════════════════════════════════
#  Refusals
# ═══════════════════════════════════════════════════════════════════

class TestChainErrors:
    def test_disk_over_2tib(self, make_disk):
        from vmware2xcp.errors import DiskTooLarge
        from vmware2xcp.pipeline.chain import MAX_DISK_SIZE, build_disk_chains
        disk = make_disk("scsi0:1", "big.vmdk", capacity=MAX_DISK_SIZE + 1)
        with pytest.raises(DiskTooLarge) as exc:
            build_disk_chains([make_disk("scsi0:0", "ok.vmdk"), disk])
        assert exc.value.node == "scsi0:1"

    def test_exactly_2tib_is_accepted(self, make_disk):
        from vmware2xcp.pipeline.chain import MAX_DISK_SIZE, build_disk_chains
        disk = make_disk("scsi0:0", "edge.vmdk", capacity=MAX_DISK_SIZE)
        assert build_disk_chains([disk])["scsi0:0"] == [disk]

    def test_oversize_disk_in_snapshot(self, make_disk):
        from vmware2xcp.errors import DiskTooLarge
        from vmware2xcp.pipeline.chain import MAX_DISK_SIZE, build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        old = make_disk("scsi0:0", "old.vmdk", capacity=MAX_DISK_SIZE * 2)
        tree = SnapshotTree(current="s1", snapshots=[_snapshot("s1", None, [old])])
        with pytest.raises(DiskTooLarge):
            build_disk_chains([make_disk("scsi0:0", "new.vmdk", is_full=False)], tree)

    def test_cycle(self, make_disk):
        from vmware2xcp.errors import MalformedSnapshotTree
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        tree = SnapshotTree(current="s1", snapshots=[
            _snapshot("s1", "s2", []),
            _snapshot("s2", "s1", []),
        ])
        with pytest.raises(MalformedSnapshotTree):
            build_disk_chains([make_disk("scsi0:0", "x.vmdk")], tree)

    def test_missing_parent(self, make_disk):
        from vmware2xcp.errors import MalformedSnapshotTree
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        tree = SnapshotTree(current="s1", snapshots=[_snapshot("s1", "gone", [])])
        with pytest.raises(MalformedSnapshotTree):
            build_disk_chains([make_disk("scsi0:0", "x.vmdk")], tree)

    def test_unknown_current(self, make_disk):
        from vmware2xcp.errors import MalformedSnapshotTree
        from vmware2xcp.pipeline.chain import build_disk_chains
        from vmware2xcp.vmware.inventory import SnapshotTree
        tree = SnapshotTree(current="s9", snapshots=[_snapshot("s1", None, [])])
        with pytest.raises(MalformedSnapshotTree):
            build_disk_chains([make_disk("scsi0:0", "x.vmdk")], tree)
