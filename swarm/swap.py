"""
Swap Venue — quote-then-execute against an aggregator HTTP API.

The venue only prices and builds; signing + submission reuse the ledger
gateway's path so nonces stay in one place. Wire format follows the 0x
v2 allowance-holder endpoint (native ETH = 0xEeee...EEeE).

Flow per swap:
  quote(sell, buy, amount, taker) → approve spender if selling a token
  → build_swap(quote, signer) → ledger.submit_payload → ledger.confirm
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from .identity import Identity
from .ledger import LedgerError

logger = logging.getLogger("swarm.swap")

NATIVE_ASSET = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
REQUEST_TIMEOUT = 15


class SwapError(Exception):
    pass


@dataclass
class SwapQuote:
    input_asset: str
    output_asset: str
    in_amount: int
    out_amount: int
    taker: str
    transaction: dict = field(default_factory=dict)
    allowance_spender: Optional[str] = None


@dataclass
class SwapResult:
    success: bool
    tx_hash: str = ""
    in_amount: int = 0
    out_amount: int = 0
    fee: float = 0.0                # ETH paid for the swap tx
    error: str = ""


class SwapVenue:
    def __init__(self, base_url: str, chain_id: int, api_key: str = "", slippage_bps: int = 100):
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.api_key = api_key
        self.slippage_bps = slippage_bps

    def _headers(self) -> dict:
        headers = {"0x-version": "v2"}
        if self.api_key:
            headers["0x-api-key"] = self.api_key
        return headers

    async def quote(self, input_asset: str, output_asset: str, amount: int, taker: str) -> Optional[SwapQuote]:
        """Firm quote for selling `amount` of input. None when the venue has no route."""
        if amount <= 0:
            return None
        params = {
            "chainId": str(self.chain_id),
            "sellToken": input_asset,
            "buyToken": output_asset,
            "sellAmount": str(int(amount)),
            "taker": taker,
            "slippageBps": str(self.slippage_bps),
        }
        url = f"{self.base_url}/swap/allowance-holder/quote"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    params=params,
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
                ) as resp:
                    if resp.status != 200:
                        body = (await resp.text())[:200]
                        logger.warning(f"Quote HTTP {resp.status}: {body}")
                        return None
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise SwapError(f"Quote request failed: {e}") from e

        if not data or data.get("liquidityAvailable") is False or not data.get("transaction"):
            return None

        allowance = (data.get("issues") or {}).get("allowance") or {}
        return SwapQuote(
            input_asset=input_asset,
            output_asset=output_asset,
            in_amount=int(data.get("sellAmount", amount)),
            out_amount=int(data.get("buyAmount", 0)),
            taker=taker,
            transaction=data["transaction"],
            allowance_spender=allowance.get("spender"),
        )

    def build_swap(self, quote: SwapQuote, signer: Identity) -> dict:
        """Unsigned tx fields for the signer. The ledger adds nonce/gas price/chain id and signs."""
        if quote.taker.lower() != signer.public_key.lower():
            raise SwapError(f"Quote was priced for {quote.taker[:10]}..., not {signer.short}...")
        tx = quote.transaction
        if not tx.get("to") or not tx.get("data"):
            raise SwapError("Quote transaction missing to/data")
        return {
            "to": tx["to"],
            "data": tx["data"],
            "value": int(tx.get("value", 0) or 0),
            "gas": int(tx["gas"]) if tx.get("gas") else None,
        }


class SwapExecutor:
    """One swap, end to end. Never raises — failures come back in SwapResult."""

    def __init__(self, venue: SwapVenue, ledger):
        self.venue = venue
        self.ledger = ledger

    async def swap(self, identity: Identity, input_asset: str, output_asset: str, amount: int) -> SwapResult:
        try:
            quote = await self.venue.quote(input_asset, output_asset, amount, identity.public_key)
            if quote is None:
                return SwapResult(success=False, in_amount=amount, error="No quote received from venue")

            if input_asset != NATIVE_ASSET and quote.allowance_spender:
                await self.ledger.ensure_allowance(identity, input_asset, quote.allowance_spender, amount)

            payload = self.venue.build_swap(quote, identity)
            if payload.get("gas") is None:
                payload.pop("gas")
            tx_hash = await self.ledger.submit_payload(identity, payload)

            if not await self.ledger.confirm(tx_hash):
                return SwapResult(success=False, tx_hash=tx_hash, in_amount=amount,
                                  error=f"Swap not confirmed: {tx_hash}")

            fee = await self.ledger.fee_paid(tx_hash)
            return SwapResult(
                success=True,
                tx_hash=tx_hash,
                in_amount=quote.in_amount,
                out_amount=quote.out_amount,
                fee=fee,
            )
        except (SwapError, LedgerError) as e:
            return SwapResult(success=False, in_amount=amount, error=str(e))
        except Exception as e:
            logger.warning(f"Unexpected swap failure for {identity.short}...: {type(e).__name__}: {e}")
            return SwapResult(success=False, in_amount=amount, error=f"{type(e).__name__}: {e}")
