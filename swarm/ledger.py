"""
Ledger Gateway - On-Chain Balance & Transfer Layer

Everything the swarm does on-chain goes through here: balance reads,
ETH transfers, signing + submitting swap transactions, receipts.

Design:
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Embedded minimal ERC20 ABI — only what we call
- Gas estimation + 20% buffer, nonce from chain ('pending')
- confirm() retries a couple of times on timeouts; a revert is final
- Amounts are wei (int) in and out; ETH floats only for display
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from .config import PACING, LIMITS, Pacing
from .identity import Identity

logger = logging.getLogger("swarm.ledger")

TRANSFER_GAS = 21_000
GAS_BUFFER = 1.2
DEFAULT_SWAP_GAS = 400_000

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class LedgerError(Exception):
    """A chain call failed (RPC down, tx rejected, reverted)."""
    pass


def to_wei(amount_eth: float) -> int:
    return int(Web3.to_wei(Decimal(str(amount_eth)), "ether"))


def from_wei(amount_wei: int) -> float:
    return float(Web3.from_wei(amount_wei, "ether"))


class LedgerGateway:
    """
    Usage:
        ledger = LedgerGateway("https://mainnet.base.org", 8453)
        wei = await ledger.get_balance(address)
        tx = await ledger.submit_transfer(worker, owner_address, wei - fee)
        ok = await ledger.confirm(tx)
    """

    def __init__(self, rpc_url: str, chain_id: int, pacing: Pacing = PACING):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.pacing = pacing
        self._w3: Optional[Web3] = None
        self._tx_count: int = 0
        self._last_error: str = ""

    def _web3(self) -> Web3:
        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": 30}))
        return self._w3

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    # ============================================================
    # READS
    # ============================================================

    async def get_balance(self, address: str) -> int:
        w3 = self._web3()
        try:
            return await self._run(w3.eth.get_balance, Web3.to_checksum_address(address))
        except Exception as e:
            self._last_error = f"balance {address[:10]}: {e}"
            raise LedgerError(f"Balance read failed for {address[:10]}...: {e}") from e

    async def get_token_balance(self, token: str, owner: str) -> int:
        w3 = self._web3()
        contract = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        try:
            return await self._run(
                contract.functions.balanceOf(Web3.to_checksum_address(owner)).call
            )
        except Exception as e:
            raise LedgerError(f"Token balance read failed for {owner[:10]}...: {e}") from e

    async def get_balances(self, addresses: list[str]) -> dict[str, float]:
        """ETH balances, one RPC at a time. An unreadable wallet shows 0."""
        balances: dict[str, float] = {}
        for address in addresses:
            try:
                balances[address] = from_wei(await self.get_balance(address))
            except LedgerError as e:
                logger.warning(str(e))
                balances[address] = 0.0
        return balances

    async def estimate_transfer_fee(self) -> int:
        w3 = self._web3()
        try:
            gas_price = await self._run(lambda: w3.eth.gas_price)
        except Exception as e:
            raise LedgerError(f"Gas price read failed: {e}") from e
        return int(TRANSFER_GAS * gas_price * GAS_BUFFER)

    # ============================================================
    # WRITES
    # ============================================================

    async def submit_transfer(self, sender: Identity, to: str, amount_wei: int) -> str:
        """Sign + send a plain ETH transfer. Returns the tx hash (0x-hex)."""
        if amount_wei <= 0:
            raise LedgerError(f"Transfer amount must be positive, got {amount_wei}")
        tx = {
            "to": Web3.to_checksum_address(to),
            "value": int(amount_wei),
            "gas": TRANSFER_GAS,
        }
        return await self._sign_and_send(sender, tx, estimate_gas=False)

    async def submit_payload(self, sender: Identity, payload: dict) -> str:
        """Sign + send a prepared transaction (swap calldata from the venue)."""
        tx = {
            "to": Web3.to_checksum_address(payload["to"]),
            "data": payload.get("data", "0x"),
            "value": int(payload.get("value", 0) or 0),
        }
        if payload.get("gas"):
            tx["gas"] = int(int(payload["gas"]) * GAS_BUFFER)
        return await self._sign_and_send(sender, tx, estimate_gas="gas" not in tx)

    async def ensure_allowance(self, owner: Identity, token: str, spender: str, amount: int) -> Optional[str]:
        """Approve `spender` for `amount` if needed. Returns the approve tx hash, or None if already enough."""
        w3 = self._web3()
        contract = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        spender_cs = Web3.to_checksum_address(spender)
        try:
            current = await self._run(
                contract.functions.allowance(Web3.to_checksum_address(owner.public_key), spender_cs).call
            )
        except Exception as e:
            raise LedgerError(f"Allowance read failed for {owner.short}...: {e}") from e
        if current >= amount:
            return None

        def _build():
            return contract.functions.approve(spender_cs, int(amount)).build_transaction({
                "from": Web3.to_checksum_address(owner.public_key),
                "chainId": self.chain_id,
            })

        try:
            built = await self._run(_build)
        except Exception as e:
            raise LedgerError(f"Approve build failed for {owner.short}...: {e}") from e
        tx = {"to": built["to"], "data": built["data"], "value": 0}
        tx_hash = await self._sign_and_send(owner, tx, estimate_gas=True)
        if not await self.confirm(tx_hash):
            raise LedgerError(f"Approve not confirmed: {tx_hash}")
        logger.info(f"Approved {spender_cs[:10]}... to spend token from {owner.short}...")
        return tx_hash

    async def _sign_and_send(self, sender: Identity, tx: dict, estimate_gas: bool) -> str:
        w3 = self._web3()
        sender_address = Web3.to_checksum_address(sender.public_key)

        def _execute():
            tx["from"] = sender_address
            tx["nonce"] = w3.eth.get_transaction_count(sender_address, "pending")
            tx["gasPrice"] = w3.eth.gas_price
            tx["chainId"] = self.chain_id
            if estimate_gas:
                try:
                    tx["gas"] = int(w3.eth.estimate_gas(tx) * GAS_BUFFER)
                except Exception as gas_err:
                    logger.warning(f"Gas estimation failed, using default {DEFAULT_SWAP_GAS}: {gas_err}")
                    tx["gas"] = DEFAULT_SWAP_GAS
            signed = w3.eth.account.sign_transaction(tx, sender.secret)
            return w3.eth.send_raw_transaction(signed.raw_transaction)

        try:
            tx_hash = await self._run(_execute)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self._last_error = error
            raise LedgerError(f"Submit from {sender.short}... failed: {error}") from e

        self._tx_count += 1
        return Web3.to_hex(tx_hash)

    # ============================================================
    # CONFIRMATION & RECEIPTS
    # ============================================================

    async def confirm(self, tx_hash: str, timeout: Optional[float] = None) -> bool:
        """
        Wait for the receipt. True on status 1, False on revert or when
        every retry timed out.
        """
        w3 = self._web3()
        timeout = timeout if timeout is not None else self.pacing.CONFIRM_TIMEOUT
        attempts = self.pacing.CONFIRM_RETRIES + 1

        for attempt in range(1, attempts + 1):
            try:
                receipt = await self._run(
                    lambda: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
                )
                if receipt["status"] == 1:
                    return True
                logger.warning(f"TX reverted: {tx_hash}")
                self._last_error = f"reverted {tx_hash}"
                return False
            except (TimeExhausted, TransactionNotFound, TimeoutError, OSError) as e:
                logger.warning(f"Confirm {tx_hash[:14]}... attempt {attempt}/{attempts}: {type(e).__name__}")
                if attempt < attempts:
                    await asyncio.sleep(self.pacing.CONFIRM_RETRY_DELAY)

        self._last_error = f"unconfirmed {tx_hash}"
        return False

    async def fee_paid(self, tx_hash: str) -> float:
        """ETH actually paid for a mined tx (L2 execution + L1 data fee when reported)."""
        w3 = self._web3()
        try:
            receipt = await self._run(w3.eth.get_transaction_receipt, tx_hash)
            gas_used = receipt.get("gasUsed", 0)
            gas_price = receipt.get("effectiveGasPrice", 0)
            l1_fee = receipt.get("l1Fee", 0) or 0
            if isinstance(l1_fee, str):
                l1_fee = int(l1_fee, 16)
            return from_wei(gas_used * gas_price + l1_fee)
        except Exception as e:
            logger.debug(f"Fee lookup failed for {tx_hash[:14]}...: {e}")
            return LIMITS.FALLBACK_FEE

    def get_status(self) -> dict:
        return {
            "rpc_url": self.rpc_url,
            "chain_id": self.chain_id,
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
