import tempfile
import unittest
from pathlib import Path

from swarm.config import INSTANT_PACING, LIMITS
from swarm.identity import Snapshot, mint_identity
from swarm.ledger import from_wei, to_wei
from swarm.recovery import RecoveryEngine
from swarm.snapshot_store import FileSnapshotStore

from fakes import TOKEN, FakeLedger, FakeSwapper, new_owner_key


class RecoveryEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = FileSnapshotStore(Path(self._tmp.name))
        self.workers = [mint_identity(slot=i) for i in range(3)]
        self.store.append(Snapshot(created_at=100.0, workers=tuple(self.workers)))
        self.owner_key, self.owner_address = new_owner_key()
        self.ledger = FakeLedger()
        self.swapper = FakeSwapper(self.ledger)
        self.engine = RecoveryEngine(
            self.store, self.ledger, swapper=self.swapper, pacing=INSTANT_PACING,
        )

    def tearDown(self):
        self._tmp.cleanup()

    async def test_nothing_to_recover_is_success(self):
        result = await self.engine.recover_all(self.owner_key)
        self.assertTrue(result.success)
        self.assertEqual(result.recovered_amount, 0.0)
        self.assertEqual(self.ledger.transfers, [])

    async def test_invalid_owner_key_fails_before_any_call(self):
        self.ledger.balances[self.workers[0].public_key] = to_wei(0.01)
        result = await self.engine.recover_all("not-a-key")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Invalid owner private key")
        self.assertEqual(self.ledger.transfers, [])

    async def test_one_worker_failing_does_not_stop_the_rest(self):
        a, b, c = self.workers
        for w in self.workers:
            self.ledger.balances[w.public_key] = to_wei(0.01)
        self.ledger.fail_balance_for.add(b.public_key)

        result = await self.engine.recover_all(self.owner_key)

        self.assertTrue(result.success)
        senders = [t[0] for t in self.ledger.transfers]
        self.assertEqual(senders, [a.public_key, c.public_key])
        self.assertTrue(all(t[1] == self.owner_address for t in self.ledger.transfers))
        expected = 2 * from_wei(to_wei(0.01) - self.ledger.fee_wei)
        self.assertAlmostEqual(result.recovered_amount, expected)
        self.assertEqual(len(result.transaction_ids), 2)
        self.assertTrue(result.outcomes[1].error)

    async def test_dust_is_left_alone(self):
        self.ledger.balances[self.workers[0].public_key] = LIMITS.DUST_THRESHOLD_WEI
        result = await self.engine.recover_all(self.owner_key)
        self.assertTrue(result.success)
        self.assertEqual(self.ledger.transfers, [])

    async def test_reserves_fee_floor_when_gas_is_cheap(self):
        self.ledger.fee_wei = 1
        self.ledger.balances[self.workers[0].public_key] = to_wei(0.001)
        await self.engine.recover_all(self.owner_key)
        self.assertEqual(self.ledger.transfers[0][2], to_wei(0.001) - LIMITS.SWEEP_FEE_FLOOR_WEI)

    async def test_asset_hint_liquidates_before_sweep(self):
        worker = self.workers[0]
        self.ledger.token_balances[worker.public_key] = to_wei(0.002)

        result = await self.engine.recover_all(self.owner_key, TOKEN)

        self.assertEqual(self.swapper.calls, [(worker.public_key, "release", to_wei(0.002))])
        self.assertTrue(result.outcomes[0].liquidated)
        self.assertEqual(self.ledger.transfers[0][2], to_wei(0.002) - self.ledger.fee_wei)

    async def test_failed_liquidation_still_sweeps(self):
        worker = self.workers[0]
        self.ledger.token_balances[worker.public_key] = 500
        self.ledger.balances[worker.public_key] = to_wei(0.01)
        self.swapper.fail.add((worker.public_key, "release"))

        result = await self.engine.recover_all(self.owner_key, TOKEN)

        self.assertFalse(result.outcomes[0].liquidated)
        self.assertEqual(len(self.ledger.transfers), 1)

    async def test_unconfirmed_sweep_is_not_counted(self):
        worker = self.workers[0]
        self.ledger.balances[worker.public_key] = to_wei(0.01)
        self.ledger.unconfirmed.add(f"0x{1:064x}")

        result = await self.engine.recover_all(self.owner_key)

        self.assertTrue(result.success)
        self.assertEqual(result.recovered_amount, 0.0)
        self.assertIn("not confirmed", result.outcomes[0].error)

    async def test_workers_from_every_snapshot_are_swept(self):
        extra = mint_identity(slot=0)
        self.store.append(Snapshot(created_at=200.0, workers=(extra,)))
        self.ledger.balances[extra.public_key] = to_wei(0.01)
        self.ledger.balances[self.workers[2].public_key] = to_wei(0.01)

        await self.engine.recover_all(self.owner_key)

        self.assertEqual(
            {t[0] for t in self.ledger.transfers},
            {extra.public_key, self.workers[2].public_key},
        )


if __name__ == "__main__":
    unittest.main()
