"""In-memory stand-ins for the chain and the swap venue."""

from eth_account import Account

from swarm.ledger import LedgerError
from swarm.swap import NATIVE_ASSET, SwapResult

TOKEN = "0x" + "11" * 20


def new_owner_key() -> tuple[str, str]:
    account = Account.create()
    return account.key.hex(), account.address


class FakeLedger:
    """Balances in wei, moved instantly. Every transfer is recorded."""

    def __init__(self, balances=None, fee_wei=21_000 * 10**9):
        self.balances: dict[str, int] = dict(balances or {})
        self.token_balances: dict[str, int] = {}
        self.fee_wei = fee_wei
        self.transfers: list[tuple[str, str, int]] = []
        self.payloads: list[tuple[str, dict]] = []
        self.approvals: list[tuple[str, str, str, int]] = []
        self.fail_balance_for: set[str] = set()
        self.stale_balances: dict[str, int] = {}     # reported instead of the real balance
        self.unconfirmed: set[str] = set()
        self._tx = 0

    def _next_tx(self) -> str:
        self._tx += 1
        return f"0x{self._tx:064x}"

    async def get_balance(self, address):
        if address in self.fail_balance_for:
            raise LedgerError(f"Balance read failed for {address[:10]}...: rpc down")
        if address in self.stale_balances:
            return self.stale_balances[address]
        return self.balances.get(address, 0)

    async def get_token_balance(self, token, owner):
        return self.token_balances.get(owner, 0)

    async def get_balances(self, addresses):
        return {a: self.balances.get(a, 0) / 10**18 for a in addresses}

    async def estimate_transfer_fee(self):
        return self.fee_wei

    async def submit_transfer(self, sender, to, amount_wei):
        if self.balances.get(sender.public_key, 0) < amount_wei:
            raise LedgerError("insufficient funds for transfer")
        self.balances[sender.public_key] -= amount_wei
        self.balances[to] = self.balances.get(to, 0) + amount_wei
        self.transfers.append((sender.public_key, to, amount_wei))
        return self._next_tx()

    async def submit_payload(self, sender, payload):
        self.payloads.append((sender.public_key, payload))
        return self._next_tx()

    async def ensure_allowance(self, owner, token, spender, amount):
        self.approvals.append((owner.public_key, token, spender, amount))
        return self._next_tx()

    async def confirm(self, tx_hash, timeout=None):
        return tx_hash not in self.unconfirmed

    async def fee_paid(self, tx_hash):
        return 0.00001

    def get_status(self):
        return {"rpc_url": "memory", "chain_id": 8453, "tx_count": self._tx, "last_error": ""}


class FakeSwapper:
    """Swaps ETH and token 1:1 against the fake ledger's balances."""

    def __init__(self, ledger: FakeLedger):
        self.ledger = ledger
        self.calls: list[tuple[str, str, int]] = []
        self.fail: set[tuple[str, str]] = set()     # (public_key, "acquire" | "release")

    async def swap(self, identity, input_asset, output_asset, amount):
        direction = "acquire" if input_asset == NATIVE_ASSET else "release"
        key = identity.public_key
        self.calls.append((key, direction, amount))
        if (key, direction) in self.fail:
            return SwapResult(success=False, in_amount=amount, error="No quote received from venue")

        eth, tokens = self.ledger.balances, self.ledger.token_balances
        if direction == "acquire":
            eth[key] = eth.get(key, 0) - amount
            tokens[key] = tokens.get(key, 0) + amount
        else:
            tokens[key] = tokens.get(key, 0) - amount
            eth[key] = eth.get(key, 0) + amount
        return SwapResult(
            success=True,
            tx_hash=self.ledger._next_tx(),
            in_amount=amount,
            out_amount=amount,
            fee=0.00001,
        )
