import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from swarm.identity import Identity, Snapshot, mint_identity
from swarm.snapshot_format import SecretCodec, decode_snapshot, parse_timestamp
from swarm.snapshot_store import FileSnapshotStore, StoreWriteError


def _worker(n: int) -> Identity:
    return Identity(public_key=f"0x{n:040x}", secret=f"{n:064x}", created_at=1000.0 + n, slot=n)


class SnapshotStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.store = FileSnapshotStore(self.dir)

    def tearDown(self):
        self._tmp.cleanup()

    def test_append_then_list_newest_first(self):
        self.store.append(Snapshot(created_at=100.0, workers=(_worker(1),)))
        self.store.append(Snapshot(created_at=300.0, workers=(_worker(3),)))
        self.store.append(Snapshot(created_at=200.0, workers=(_worker(2),)))

        snapshots = self.store.list_all()
        self.assertEqual([s.created_at for s in snapshots], [300.0, 200.0, 100.0])
        self.assertEqual(snapshots[0].workers[0].public_key, _worker(3).public_key)
        self.assertEqual(self.store.latest().created_at, 300.0)

    def test_same_millisecond_gets_distinct_file(self):
        first = self.store.append(Snapshot(created_at=500.0, workers=(_worker(1),)))
        second = self.store.append(Snapshot(created_at=500.0, workers=(_worker(2),)))
        self.assertNotEqual(first, second)
        self.assertEqual(Path(first).name, "workers-500000.json")
        self.assertEqual(Path(second).name, "workers-500000-1.json")
        self.assertEqual(len(self.store.list_all()), 2)

    def test_name_taken_by_concurrent_writer_is_not_overwritten(self):
        real_link = os.link
        competitor = self.dir / "workers-500000.json"

        def _racing_link(src, dst):
            # another writer claims the name between our choice and our publish
            if Path(dst) == competitor and not competitor.exists():
                competitor.write_text('{"schema_version": 2, "created_at": 500.0, "workers": []}',
                                      encoding="utf-8")
            return real_link(src, dst)

        with mock.patch("swarm.snapshot_store.os.link", side_effect=_racing_link):
            location = self.store.append(Snapshot(created_at=500.0, workers=(_worker(1),)))

        self.assertEqual(Path(location).name, "workers-500000-1.json")
        self.assertEqual(json.loads(competitor.read_text(encoding="utf-8"))["workers"], [])
        self.assertEqual(len(self.store.list_all()), 2)
        self.assertFalse([p for p in os.listdir(self.dir) if p.endswith(".tmp")])

    def test_corrupt_file_is_skipped(self):
        for i in range(3):
            self.store.append(Snapshot(created_at=100.0 + i, workers=(_worker(i),)))
        (self.dir / "workers-999.json").write_text("{not json", encoding="utf-8")

        self.assertEqual(len(self.store.list_all()), 3)

    def test_unrelated_files_ignored(self):
        self.store.append(Snapshot(created_at=100.0, workers=(_worker(1),)))
        (self.dir / "notes.txt").write_text("hello", encoding="utf-8")
        self.assertEqual(len(self.store.list_all()), 1)

    def test_failed_write_raises_and_leaves_no_temp_file(self):
        with mock.patch("swarm.snapshot_store.os.link", side_effect=OSError("disk full")):
            with self.assertRaises(StoreWriteError):
                self.store.append(Snapshot(created_at=100.0, workers=(_worker(1),)))
        self.assertEqual(os.listdir(self.dir), [])
        self.assertEqual(self.store.list_all(), [])

    def test_describe_has_no_secrets(self):
        worker = mint_identity(slot=0)
        self.store.append(Snapshot(created_at=100.0, workers=(worker,)))
        described = self.store.describe()
        self.assertEqual(len(described), 1)
        self.assertEqual(described[0]["workers"], 1)
        self.assertNotIn(worker.secret, json.dumps(described))

    def test_encrypted_secrets_round_trip(self):
        store = FileSnapshotStore(self.dir, codec=SecretCodec("hunter2"))
        worker = mint_identity(slot=0)
        location = store.append(Snapshot(created_at=100.0, workers=(worker,)))

        on_disk = Path(location).read_text(encoding="utf-8")
        self.assertNotIn(worker.secret, on_disk)
        self.assertEqual(store.list_all()[0].workers[0].secret, worker.secret)

    def test_wrong_passphrase_skips_file(self):
        FileSnapshotStore(self.dir, codec=SecretCodec("right")).append(
            Snapshot(created_at=100.0, workers=(mint_identity(slot=0),))
        )
        self.assertEqual(FileSnapshotStore(self.dir, codec=SecretCodec("wrong")).list_all(), [])

    def test_legacy_file_is_read(self):
        legacy = {
            "timestamp": 1_700_000_000_000,
            "mainWallet": {"publicKey": "0xowner", "privateKey": "aa" * 32},
            "subWallets": [
                {"publicKey": "0xw0", "privateKey": "bb" * 32},
                {"publicKey": "0xw1", "privateKey": "cc" * 32, "index": 7},
            ],
            "metadata": {"createdBy": "volume-bot"},
        }
        (self.dir / "wallets-1700000000000.json").write_text(json.dumps(legacy), encoding="utf-8")

        snap = self.store.list_all()[0]
        self.assertEqual(snap.created_at, 1_700_000_000.0)
        self.assertEqual(snap.owner.public_key, "0xowner")
        self.assertEqual([w.slot for w in snap.workers], [0, 7])
        self.assertEqual(snap.schema_version, 1)
        self.assertEqual(snap.origin, "volume-bot")


class SnapshotFormatTests(unittest.TestCase):
    def test_parse_timestamp_units(self):
        self.assertEqual(parse_timestamp(1_700_000_000), 1_700_000_000.0)
        self.assertEqual(parse_timestamp(1_700_000_000_000), 1_700_000_000.0)
        self.assertEqual(parse_timestamp("1970-01-01T00:01:40Z"), 100.0)
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp("yesterday"))

    def test_missing_timestamp_uses_fallback(self):
        snap = decode_snapshot({"subWallets": []}, fallback_created_at=42.0)
        self.assertEqual(snap.created_at, 42.0)
        self.assertEqual(snap.schema_version, 0)
        self.assertEqual(snap.origin, "legacy")


if __name__ == "__main__":
    unittest.main()
