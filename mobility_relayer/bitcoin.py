"""
Bitcoin blockchain interaction via an Esplora-compatible explorer API.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger()

SATS_PER_BTC = 100_000_000
FEE_TIERS = ("fastestFee", "halfHourFee", "hourFee", "economyFee", "minimumFee")


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to an exact BTC amount for display."""
    return Decimal(sats) / SATS_PER_BTC


@dataclass
class TxOutput:
    """Transaction output."""

    vout: int
    value_sats: int
    script_pubkey: str
    address: Optional[str]


@dataclass
class BitcoinTx:
    """Parsed Bitcoin transaction."""

    txid: str
    confirmed: bool
    block_height: Optional[int]
    confirmations: int
    outputs: list[TxOutput] = field(default_factory=list)

    def value_to(self, address: str) -> int:
        """Total value (sats) of outputs paying the address."""
        return sum(o.value_sats for o in self.outputs if o.address == address)


@dataclass
class AddressUtxo:
    """UTXO for an address."""

    txid: str
    vout: int
    value_sats: int
    confirmed: bool
    block_height: Optional[int]


@dataclass
class VerificationResult:
    """Outcome of a deposit confirmation check."""

    verified: bool
    confirmations: int = 0
    amount_sats: int = 0
    block_height: Optional[int] = None
    error: Optional[str] = None


class BitcoinApiClient:
    """
    Async client for an Esplora-compatible explorer (blockstream.info, mempool.space)
    plus a mempool.space-style fee recommendation endpoint.
    """

    def __init__(
        self,
        base_url: str,
        fee_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.fee_url = fee_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> httpx.Response:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}{path}")
        response.raise_for_status()
        return response

    async def get_block_tip_height(self) -> int:
        """Get current block height."""
        response = await self._get("/blocks/tip/height")
        return int(response.text)

    async def get_tx(self, txid: str) -> dict[str, Any]:
        """Get transaction details."""
        response = await self._get(f"/tx/{txid}")
        return response.json()

    async def get_tx_hex(self, txid: str) -> str:
        """Get raw transaction hex."""
        response = await self._get(f"/tx/{txid}/hex")
        return response.text.strip()

    async def get_address_utxos(self, address: str) -> list[AddressUtxo]:
        """Get UTXOs for an address."""
        response = await self._get(f"/address/{address}/utxo")

        utxos = []
        for item in response.json():
            status = item.get("status", {})
            utxos.append(
                AddressUtxo(
                    txid=item["txid"],
                    vout=item["vout"],
                    value_sats=item["value"],
                    confirmed=status.get("confirmed", False),
                    block_height=status.get("block_height"),
                )
            )
        return utxos

    async def get_recommended_fees(self) -> dict[str, Any]:
        """Get recommended fee rates (sat/vB) keyed by tier."""
        if not self.fee_url:
            raise ValueError("No fee endpoint configured")
        client = await self._get_client()
        response = await client.get(self.fee_url)
        response.raise_for_status()
        return response.json()

    async def get_fee_rate(self, tier: str = "hourFee") -> int:
        """Fee rate for a tier, rounded up to a whole sat/byte (minimum 1)."""
        if tier not in FEE_TIERS:
            raise ValueError(f"Unknown fee tier: {tier}")
        fees = await self.get_recommended_fees()
        rate = fees.get(tier)
        if rate is None:
            raise ValueError(f"Fee tier {tier} missing from response")
        return max(1, math.ceil(float(rate)))

    async def broadcast(self, raw_tx_hex: str) -> str:
        """Broadcast a raw transaction; returns the txid."""
        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}/tx",
            content=raw_tx_hex,
            headers={"Content-Type": "text/plain"},
        )
        if response.status_code >= 400:
            logger.error("broadcast_rejected", status=response.status_code, body=response.text)
        response.raise_for_status()
        return response.text.strip()

    def parse_tx(self, tx_data: dict[str, Any], current_height: int) -> BitcoinTx:
        """Parse transaction data into BitcoinTx."""
        status = tx_data.get("status", {})
        confirmed = bool(status.get("confirmed", False))
        block_height = status.get("block_height")

        confirmations = 0
        if confirmed and block_height is not None:
            confirmations = max(0, current_height - block_height + 1)

        outputs = [
            TxOutput(
                vout=i,
                value_sats=int(vout.get("value", 0)),
                script_pubkey=vout.get("scriptpubkey", ""),
                address=vout.get("scriptpubkey_address"),
            )
            for i, vout in enumerate(tx_data.get("vout", []))
        ]

        return BitcoinTx(
            txid=tx_data.get("txid", ""),
            confirmed=confirmed,
            block_height=block_height,
            confirmations=confirmations,
            outputs=outputs,
        )

    async def verify_transaction(
        self,
        txid: str,
        min_confirmations: int,
        custody_address: Optional[str] = None,
    ) -> VerificationResult:
        """
        Check that a transaction is confirmed deeply enough.

        The reported amount is the value paid to custody_address; without one
        it is the sum of all outputs.

        Returns:
            VerificationResult; verified is False with an error message on failure
        """
        try:
            tx_data = await self.get_tx(txid)
            current_height = await self.get_block_tip_height()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return VerificationResult(verified=False, error=f"Transaction {txid} not found")
            logger.error("tx_lookup_failed", txid=txid, error=str(e))
            return VerificationResult(verified=False, error=f"Transaction lookup failed: {e}")
        except httpx.HTTPError as e:
            logger.error("tx_lookup_failed", txid=txid, error=str(e))
            return VerificationResult(verified=False, error=f"Transaction lookup failed: {e}")

        tx = self.parse_tx(tx_data, current_height)

        if not tx.confirmed:
            return VerificationResult(
                verified=False, error=f"Transaction {txid} is not confirmed"
            )

        if tx.confirmations < min_confirmations:
            return VerificationResult(
                verified=False,
                confirmations=tx.confirmations,
                block_height=tx.block_height,
                error=(
                    f"Insufficient confirmations: {tx.confirmations} "
                    f"(required {min_confirmations})"
                ),
            )

        if custody_address:
            amount = tx.value_to(custody_address)
            if amount <= 0:
                return VerificationResult(
                    verified=False,
                    confirmations=tx.confirmations,
                    block_height=tx.block_height,
                    error=f"Transaction {txid} does not pay {custody_address}",
                )
        else:
            amount = sum(o.value_sats for o in tx.outputs)

        logger.info(
            "tx_verified",
            txid=txid,
            confirmations=tx.confirmations,
            amount_sats=amount,
        )
        return VerificationResult(
            verified=True,
            confirmations=tx.confirmations,
            amount_sats=amount,
            block_height=tx.block_height,
        )
