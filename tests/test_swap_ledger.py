import unittest
from unittest import mock

from web3.exceptions import TimeExhausted

from swarm.config import INSTANT_PACING, LIMITS
from swarm.identity import mint_identity
from swarm.ledger import LedgerError, LedgerGateway, from_wei, to_wei
from swarm.swap import NATIVE_ASSET, SwapError, SwapExecutor, SwapQuote, SwapVenue

from fakes import TOKEN, FakeLedger

SPENDER = "0x" + "22" * 20
ROUTER = "0x" + "33" * 20


def _quote(taker: str, input_asset=NATIVE_ASSET, output_asset=TOKEN, spender=None) -> SwapQuote:
    return SwapQuote(
        input_asset=input_asset,
        output_asset=output_asset,
        in_amount=1000,
        out_amount=5000,
        taker=taker,
        transaction={"to": ROUTER, "data": "0xdeadbeef", "value": "1000", "gas": "210000"},
        allowance_spender=spender,
    )


class SwapVenueTests(unittest.TestCase):
    def setUp(self):
        self.venue = SwapVenue("https://api.example.org/", 8453, api_key="k")
        self.worker = mint_identity(slot=0)

    def test_build_swap_returns_unsigned_fields(self):
        payload = self.venue.build_swap(_quote(self.worker.public_key), self.worker)
        self.assertEqual(payload, {"to": ROUTER, "data": "0xdeadbeef", "value": 1000, "gas": 210000})

    def test_build_swap_rejects_other_signer(self):
        other = mint_identity(slot=1)
        with self.assertRaises(SwapError):
            self.venue.build_swap(_quote(self.worker.public_key), other)

    def test_headers_carry_version_and_key(self):
        self.assertEqual(self.venue.base_url, "https://api.example.org")
        self.assertEqual(self.venue._headers(), {"0x-version": "v2", "0x-api-key": "k"})


class SwapExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.worker = mint_identity(slot=0)
        self.ledger = FakeLedger()
        self.venue = mock.Mock(spec=SwapVenue)
        self.venue.build_swap.side_effect = SwapVenue("https://x", 8453).build_swap
        self.executor = SwapExecutor(self.venue, self.ledger)

    async def test_buy_with_native_skips_allowance(self):
        self.venue.quote = mock.AsyncMock(return_value=_quote(self.worker.public_key))

        result = await self.executor.swap(self.worker, NATIVE_ASSET, TOKEN, 1000)

        self.assertTrue(result.success)
        self.assertEqual(result.out_amount, 5000)
        self.assertEqual(result.fee, 0.00001)
        self.assertEqual(self.ledger.approvals, [])
        self.assertEqual(self.ledger.payloads[0][1]["to"], ROUTER)

    async def test_sell_token_approves_spender_first(self):
        self.venue.quote = mock.AsyncMock(
            return_value=_quote(self.worker.public_key, TOKEN, NATIVE_ASSET, spender=SPENDER)
        )

        result = await self.executor.swap(self.worker, TOKEN, NATIVE_ASSET, 1000)

        self.assertTrue(result.success)
        self.assertEqual(self.ledger.approvals, [(self.worker.public_key, TOKEN, SPENDER, 1000)])

    async def test_no_quote_is_a_failed_result(self):
        self.venue.quote = mock.AsyncMock(return_value=None)
        result = await self.executor.swap(self.worker, NATIVE_ASSET, TOKEN, 1000)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "No quote received from venue")
        self.assertEqual(self.ledger.payloads, [])

    async def test_venue_error_never_raises(self):
        self.venue.quote = mock.AsyncMock(side_effect=SwapError("Quote request failed: reset"))
        result = await self.executor.swap(self.worker, NATIVE_ASSET, TOKEN, 1000)
        self.assertFalse(result.success)
        self.assertIn("reset", result.error)

    async def test_unconfirmed_swap_fails(self):
        self.venue.quote = mock.AsyncMock(return_value=_quote(self.worker.public_key))
        self.ledger.unconfirmed.add(f"0x{1:064x}")
        result = await self.executor.swap(self.worker, NATIVE_ASSET, TOKEN, 1000)
        self.assertFalse(result.success)
        self.assertIn("not confirmed", result.error)


class LedgerGatewayTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = LedgerGateway("http://localhost:8545", 8453, pacing=INSTANT_PACING)
        self.w3 = mock.MagicMock()
        self.gateway._w3 = self.w3

    def test_wei_conversion(self):
        self.assertEqual(to_wei(0.001), 10**15)
        self.assertEqual(from_wei(10**18), 1.0)

    async def test_confirm_retries_timeouts(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = [
            TimeExhausted("slow"),
            {"status": 1},
        ]
        self.assertTrue(await self.gateway.confirm("0xabc"))
        self.assertEqual(self.w3.eth.wait_for_transaction_receipt.call_count, 2)

    async def test_confirm_revert_is_final(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
        self.assertFalse(await self.gateway.confirm("0xabc"))
        self.assertEqual(self.w3.eth.wait_for_transaction_receipt.call_count, 1)

    async def test_confirm_gives_up_after_retries(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
        self.assertFalse(await self.gateway.confirm("0xabc"))
        self.assertEqual(
            self.w3.eth.wait_for_transaction_receipt.call_count,
            INSTANT_PACING.CONFIRM_RETRIES + 1,
        )

    async def test_fee_paid_includes_l1_fee(self):
        self.w3.eth.get_transaction_receipt.return_value = {
            "gasUsed": 100_000,
            "effectiveGasPrice": 10**9,
            "l1Fee": hex(10**12),
        }
        self.assertAlmostEqual(await self.gateway.fee_paid("0xabc"), from_wei(10**14 + 10**12))

    async def test_fee_paid_falls_back(self):
        self.w3.eth.get_transaction_receipt.side_effect = ValueError("not found")
        self.assertEqual(await self.gateway.fee_paid("0xabc"), LIMITS.FALLBACK_FEE)

    async def test_balance_read_failure_raises_ledger_error(self):
        self.w3.eth.get_balance.side_effect = ConnectionError("down")
        with self.assertRaises(LedgerError):
            await self.gateway.get_balance("0x" + "44" * 20)

    async def test_get_balances_reports_zero_for_unreadable(self):
        good, bad = "0x" + "44" * 20, "0x" + "55" * 20

        def _balance(address):
            if address.lower() == good:
                return 10**18
            raise ConnectionError("down")

        self.w3.eth.get_balance.side_effect = _balance
        balances = await self.gateway.get_balances([good, bad])
        self.assertEqual(balances, {good: 1.0, bad: 0.0})

    async def test_transfer_fee_estimate(self):
        self.w3.eth.gas_price = 10**9
        self.assertEqual(await self.gateway.estimate_transfer_fee(), int(21_000 * 10**9 * 1.2))

    async def test_submit_transfer_rejects_non_positive(self):
        with self.assertRaises(LedgerError):
            await self.gateway.submit_transfer(mint_identity(slot=0), "0x" + "44" * 20, 0)


if __name__ == "__main__":
    unittest.main()
