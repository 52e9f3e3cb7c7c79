"""
Relayer Bitcoin wallet: UTXO selection, fee estimation, signing and broadcast.

Single-key P2PKH wallet derived from a WIF private key. The wallet address
receives change and is the default custody address for deposits.
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

import httpx
import structlog
from coincurve import PrivateKey

from .address import (
    address_to_script_pubkey,
    decode_wif,
    hash160,
    p2pkh_address,
    p2pkh_script,
)
from .bitcoin import BitcoinApiClient
from .errors import (
    AmountOutOfRangeError,
    ConfigurationError,
    InsufficientBalanceError,
    RelayerError,
    VerificationError,
)
from .transaction import (
    Transaction,
    TxIn,
    TxOut,
    parse_tx_outputs,
    raw_txid,
    sign_p2pkh_inputs,
)

logger = structlog.get_logger()

# Linear size model for a P2PKH spend (bytes)
INPUT_SIZE = 148
OUTPUT_SIZE = 34
TX_OVERHEAD = 10
ASSUMED_OUTPUTS = 2

DUST_THRESHOLD = 546
SAFETY_BUFFER = 1000

MIN_WITHDRAWAL_SATS = 10_000
MAX_WITHDRAWAL_SATS = 1_000_000_000


@dataclass
class Utxo:
    """Spendable output owned by the wallet."""

    txid: str
    vout: int
    value: int
    confirmed: bool = True
    raw_tx: Optional[bytes] = None


@dataclass
class CoinSelection:
    """Inputs chosen for a payout and the resulting fee and remainder."""

    inputs: list[Utxo]
    total: int
    fee: int
    change: int

    @property
    def has_change(self) -> bool:
        """Remainders at or below the dust threshold are absorbed into the fee."""
        return self.change > DUST_THRESHOLD


@dataclass
class SendResult:
    """Outcome of a payout attempt."""

    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


def estimate_tx_size(num_inputs: int, num_outputs: int = ASSUMED_OUTPUTS) -> int:
    """Estimated serialized size in bytes."""
    return num_inputs * INPUT_SIZE + num_outputs * OUTPUT_SIZE + TX_OVERHEAD


def select_utxos(
    utxos: list[Utxo],
    amount: int,
    fee_rate: int,
    safety_buffer: int = SAFETY_BUFFER,
) -> CoinSelection:
    """
    Pick outputs smallest first until they cover amount + fee + safety_buffer.

    The fee is re-estimated after every added input. If all outputs together
    still cannot cover amount + fee, InsufficientBalanceError is raised.
    """
    selected: list[Utxo] = []
    accumulated = 0
    fee = 0

    for utxo in sorted(utxos, key=lambda u: u.value):
        selected.append(utxo)
        accumulated += utxo.value
        fee = estimate_tx_size(len(selected)) * fee_rate
        if accumulated >= amount + fee + safety_buffer:
            break

    if accumulated < amount + fee:
        raise InsufficientBalanceError(required=amount + fee, available=accumulated)

    return CoinSelection(
        inputs=selected,
        total=accumulated,
        fee=fee,
        change=accumulated - amount - fee,
    )


class UtxoCache:
    """
    Short-lived UTXO snapshot.

    get() returns only a snapshot younger than the TTL; last_good keeps the
    most recent snapshot as a fallback until invalidate() drops it.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._utxos: Optional[list[Utxo]] = None
        self._fetched_at = 0.0

    def get(self) -> Optional[list[Utxo]]:
        if self._utxos is None:
            return None
        if self._clock() - self._fetched_at > self.ttl:
            return None
        return list(self._utxos)

    @property
    def last_good(self) -> Optional[list[Utxo]]:
        return list(self._utxos) if self._utxos is not None else None

    def set(self, utxos: list[Utxo]) -> None:
        self._utxos = list(utxos)
        self._fetched_at = self._clock()

    def invalidate(self) -> None:
        self._utxos = None
        self._fetched_at = 0.0


class BitcoinWallet:
    """Relayer hot wallet used for withdrawal payouts."""

    def __init__(
        self,
        api: BitcoinApiClient,
        private_key_wif: str,
        network: str = "testnet",
        fee_tier: str = "hourFee",
        default_fee_rate: int = 10,
        cache_ttl: float = 60.0,
        balance_safety_multiplier: float = 1.2,
        min_amount: int = MIN_WITHDRAWAL_SATS,
        max_amount: int = MAX_WITHDRAWAL_SATS,
    ):
        if not private_key_wif:
            raise ConfigurationError("MASTER_BITCOIN_PRIVATE_KEY is not set")

        secret, compressed, key_network = decode_wif(private_key_wif)
        if key_network != network:
            raise ConfigurationError(
                f"Bitcoin private key is for {key_network}, expected {network}"
            )

        self.api = api
        self.network = network
        self.fee_tier = fee_tier
        self.default_fee_rate = default_fee_rate
        self.balance_safety_multiplier = balance_safety_multiplier
        self.min_amount = min_amount
        self.max_amount = max_amount

        self._key = PrivateKey(secret)
        self._compressed = compressed
        pubkey = self._key.public_key.format(compressed=compressed)
        self.pubkey_hash = hash160(pubkey)
        self.address = p2pkh_address(self.pubkey_hash, network)
        self.script_pubkey = p2pkh_script(self.pubkey_hash)

        self._cache = UtxoCache(ttl=cache_ttl)
        self._send_lock = asyncio.Lock()

    async def get_utxos(self, force_refresh: bool = False) -> list[Utxo]:
        """
        Confirmed UTXOs for the wallet address.

        Uses the cached snapshot while fresh. If the explorer is unreachable
        the last good snapshot is returned; with no snapshot the error propagates.
        """
        if not force_refresh:
            cached = self._cache.get()
            if cached is not None:
                return cached

        try:
            fetched = await self.api.get_address_utxos(self.address)
        except httpx.HTTPError as e:
            fallback = self._cache.last_good
            if fallback is None:
                raise
            logger.warning("utxo_fetch_failed_using_cache", error=str(e), count=len(fallback))
            return fallback

        utxos = [
            Utxo(txid=u.txid, vout=u.vout, value=u.value_sats, confirmed=u.confirmed)
            for u in fetched
            if u.confirmed
        ]
        self._cache.set(utxos)
        logger.debug("utxos_refreshed", address=self.address, count=len(utxos))
        return utxos

    async def get_balance(self, force_refresh: bool = False) -> int:
        """Sum of confirmed UTXO values in satoshis."""
        utxos = await self.get_utxos(force_refresh=force_refresh)
        return sum(u.value for u in utxos)

    async def estimate_fee_rate(self) -> int:
        """Recommended fee rate in sat/byte, or the configured default on failure."""
        try:
            rate = await self.api.get_fee_rate(self.fee_tier)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "fee_estimate_failed_using_default",
                error=str(e),
                default_fee_rate=self.default_fee_rate,
            )
            return self.default_fee_rate
        return rate

    def required_balance(self, amount: int) -> int:
        """Balance needed before a payout of amount is attempted."""
        return int(Decimal(amount) * Decimal(str(self.balance_safety_multiplier)))

    async def has_sufficient_balance(self, amount: int) -> bool:
        balance = await self.get_balance()
        return balance >= self.required_balance(amount)

    def validate_amount(self, amount: int) -> None:
        if amount < self.min_amount or amount > self.max_amount:
            raise AmountOutOfRangeError(
                f"Withdrawal amount {amount} outside allowed range "
                f"[{self.min_amount}, {self.max_amount}] sats"
            )

    async def _verify_parents(self, inputs: list[Utxo]) -> None:
        """Check each input against its raw parent transaction before signing."""
        for utxo in inputs:
            if utxo.raw_tx is None:
                utxo.raw_tx = bytes.fromhex(await self.api.get_tx_hex(utxo.txid))

            if raw_txid(utxo.raw_tx) != utxo.txid:
                raise VerificationError(f"Parent transaction {utxo.txid} does not match its id")

            outputs = parse_tx_outputs(utxo.raw_tx)
            if utxo.vout >= len(outputs):
                raise VerificationError(f"Parent transaction {utxo.txid} has no output {utxo.vout}")

            parent_output = outputs[utxo.vout]
            if parent_output.value != utxo.value or parent_output.script_pubkey != self.script_pubkey:
                raise VerificationError(
                    f"Output {utxo.txid}:{utxo.vout} does not match the wallet UTXO"
                )

    def build_transaction(
        self, selection: CoinSelection, destination_script: bytes, amount: int
    ) -> Transaction:
        """Assemble and sign the payout transaction."""
        tx = Transaction(
            inputs=[TxIn(txid=u.txid, vout=u.vout) for u in selection.inputs],
            outputs=[TxOut(value=amount, script_pubkey=destination_script)],
        )
        if selection.has_change:
            tx.outputs.append(TxOut(value=selection.change, script_pubkey=self.script_pubkey))

        sign_p2pkh_inputs(tx, self._key, self.script_pubkey, compressed=self._compressed)
        return tx

    async def send(self, to_address: str, amount: int) -> str:
        """
        Pay amount satoshis to to_address.

        Returns:
            Broadcast transaction id

        Raises:
            AmountOutOfRangeError, InvalidAddressError, InsufficientBalanceError,
            VerificationError, httpx.HTTPError
        """
        self.validate_amount(amount)
        destination_script = address_to_script_pubkey(to_address, self.network)

        # One payout at a time so concurrent sends cannot pick the same outputs
        async with self._send_lock:
            # Pre-flight on the cached view; selection needs a fresh one
            balance = await self.get_balance()
            required = self.required_balance(amount)
            if balance < required:
                raise InsufficientBalanceError(required=required, available=balance)

            utxos = await self.get_utxos(force_refresh=True)
            fee_rate = await self.estimate_fee_rate()
            selection = select_utxos(utxos, amount, fee_rate)
            await self._verify_parents(selection.inputs)

            tx = self.build_transaction(selection, destination_script, amount)
            txid = await self.api.broadcast(tx.to_hex())
            self._cache.invalidate()

        logger.info(
            "payout_broadcast",
            txid=txid,
            to_address=to_address,
            amount=amount,
            fee=selection.fee + (0 if selection.has_change else selection.change),
            inputs=len(selection.inputs),
            change=selection.change if selection.has_change else 0,
        )
        return txid

    async def process_withdrawal(self, to_address: str, amount: int) -> SendResult:
        """send() with failures reported in the result instead of raised."""
        try:
            txid = await self.send(to_address, amount)
        except (RelayerError, httpx.HTTPError) as e:
            logger.error(
                "payout_failed",
                to_address=to_address,
                amount=amount,
                error=str(e),
            )
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, tx_hash=txid)
