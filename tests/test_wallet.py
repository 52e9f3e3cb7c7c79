"""
Tests for the payout wallet: coin selection, balance checks and sending.
"""

import httpx
import pytest

from mobility_relayer.address import address_to_script_pubkey, encode_wif
from mobility_relayer.errors import (
    AmountOutOfRangeError,
    ConfigurationError,
    InsufficientBalanceError,
    InvalidAddressError,
    VerificationError,
)
from mobility_relayer.transaction import parse_tx_outputs, raw_txid
from mobility_relayer.wallet import (
    BitcoinWallet,
    CoinSelection,
    Utxo,
    UtxoCache,
    estimate_tx_size,
    select_utxos,
)

DEST_ADDRESS = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"


def _utxos(*values: int) -> list[Utxo]:
    return [Utxo(txid=f"{i:064x}", vout=0, value=v) for i, v in enumerate(values)]


class TestCoinSelection:
    """Smallest-first selection with a safety buffer."""

    def test_size_model(self):
        assert estimate_tx_size(1) == 148 + 68 + 10
        assert estimate_tx_size(3) == 3 * 148 + 68 + 10

    def test_stops_once_amount_fee_and_buffer_covered(self):
        selection = select_utxos(_utxos(300_000, 5_000, 100_000, 20_000), 50_000, 10)

        assert [u.value for u in selection.inputs] == [5_000, 20_000, 100_000]
        assert selection.total == 125_000
        assert selection.fee == estimate_tx_size(3) * 10
        assert selection.change == 125_000 - 50_000 - 5_220

    def test_covers_without_buffer(self):
        # 10,000 covers 9,000 + fee 226 but not the 1,000 buffer
        selection = select_utxos(_utxos(10_000), 9_000, 1)

        assert selection.total == 10_000
        assert selection.change == 774

    def test_insufficient(self):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            select_utxos(_utxos(1_000, 2_000), 50_000, 1)

        assert exc_info.value.available == 3_000
        assert exc_info.value.required == 50_000 + estimate_tx_size(2)

    def test_dust_change_boundary(self):
        assert not CoinSelection(inputs=[], total=0, fee=0, change=546).has_change
        assert CoinSelection(inputs=[], total=0, fee=0, change=547).has_change


class TestUtxoCache:
    def test_ttl_and_last_good(self):
        now = [0.0]
        cache = UtxoCache(ttl=60.0, clock=lambda: now[0])
        cache.set(_utxos(1_000))

        now[0] = 30.0
        assert cache.get() is not None

        now[0] = 61.0
        assert cache.get() is None
        assert [u.value for u in cache.last_good] == [1_000]

        cache.invalidate()
        assert cache.last_good is None


class TestWalletSetup:
    def test_wrong_network_key(self, fake_bitcoin_api):
        with pytest.raises(ConfigurationError):
            BitcoinWallet(fake_bitcoin_api, encode_wif(b"\x11" * 32, "mainnet"), network="testnet")

    def test_missing_key(self, fake_bitcoin_api):
        with pytest.raises(ConfigurationError):
            BitcoinWallet(fake_bitcoin_api, "", network="testnet")

    def test_address_is_testnet_p2pkh(self, wallet):
        assert wallet.address[0] in "mn"
        assert address_to_script_pubkey(wallet.address, "testnet") == wallet.script_pubkey


class TestBalance:
    """Balance reads and the pre-flight check."""

    @pytest.mark.asyncio
    async def test_only_confirmed_utxos_count(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 40_000)
        fake_bitcoin_api.fund(wallet.script_pubkey, 9_000, confirmed=False)

        assert await wallet.get_balance() == 40_000

    @pytest.mark.asyncio
    async def test_preflight_requires_120_percent(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 600_000)

        assert wallet.required_balance(500_000) == 600_000
        assert await wallet.has_sufficient_balance(500_000)
        assert not await wallet.has_sufficient_balance(500_001)

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 40_000)

        await wallet.get_utxos()
        await wallet.get_utxos()

        assert fake_bitcoin_api.utxo_calls == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_last_good_snapshot(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 40_000)
        await wallet.get_utxos()

        fake_bitcoin_api.fail_utxos = True
        utxos = await wallet.get_utxos(force_refresh=True)

        assert [u.value for u in utxos] == [40_000]

    @pytest.mark.asyncio
    async def test_fetch_error_without_snapshot_propagates(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fail_utxos = True
        with pytest.raises(httpx.HTTPError):
            await wallet.get_utxos()

    @pytest.mark.asyncio
    async def test_fee_rate_fallback(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fail_fees = True
        assert await wallet.estimate_fee_rate() == wallet.default_fee_rate


class TestSend:
    """End-to-end payout construction."""

    @pytest.mark.asyncio
    async def test_pays_destination_and_returns_change(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)

        txid = await wallet.send(DEST_ADDRESS, 100_000)

        assert len(fake_bitcoin_api.broadcasts) == 1
        outputs = parse_tx_outputs(bytes.fromhex(fake_bitcoin_api.broadcasts[0]))
        fee = estimate_tx_size(1) * 10
        assert outputs[0].value == 100_000
        assert outputs[0].script_pubkey == address_to_script_pubkey(DEST_ADDRESS, "testnet")
        assert outputs[1].value == 1_000_000 - 100_000 - fee
        assert outputs[1].script_pubkey == wallet.script_pubkey
        assert len(txid) == 64

    @pytest.mark.asyncio
    async def test_dust_change_goes_to_fee(self, wallet, fake_bitcoin_api):
        fee = estimate_tx_size(1) * 10
        fake_bitcoin_api.fund(wallet.script_pubkey, 100_000 + fee + 546)

        # drop the pre-flight margin so the buffer is the only shortfall
        wallet.balance_safety_multiplier = 1.0
        await wallet.send(DEST_ADDRESS, 100_000)

        outputs = parse_tx_outputs(bytes.fromhex(fake_bitcoin_api.broadcasts[0]))
        assert [o.value for o in outputs] == [100_000]

    @pytest.mark.asyncio
    async def test_cache_invalidated_after_broadcast(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)

        await wallet.send(DEST_ADDRESS, 100_000)
        calls = fake_bitcoin_api.utxo_calls
        await wallet.get_utxos()

        assert fake_bitcoin_api.utxo_calls == calls + 1

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 110_000)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await wallet.send(DEST_ADDRESS, 100_000)

        assert exc_info.value.required == 120_000
        assert exc_info.value.available == 110_000
        assert fake_bitcoin_api.broadcasts == []

    @pytest.mark.asyncio
    async def test_preflight_uses_cached_balance(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 110_000)
        await wallet.get_utxos()
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await wallet.send(DEST_ADDRESS, 100_000)

        assert exc_info.value.available == 110_000
        assert fake_bitcoin_api.utxo_calls == 1

    @pytest.mark.asyncio
    async def test_selection_refreshes_utxos(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)
        await wallet.get_utxos()

        await wallet.send(DEST_ADDRESS, 100_000)

        assert fake_bitcoin_api.utxo_calls == 2

    @pytest.mark.asyncio
    async def test_amount_bounds(self, wallet):
        with pytest.raises(AmountOutOfRangeError):
            await wallet.send(DEST_ADDRESS, 9_999)
        with pytest.raises(AmountOutOfRangeError):
            await wallet.send(DEST_ADDRESS, 1_000_000_001)

    @pytest.mark.asyncio
    async def test_invalid_destination(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)
        with pytest.raises(InvalidAddressError):
            await wallet.send("1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa", 100_000)

    @pytest.mark.asyncio
    async def test_parent_mismatch_blocks_broadcast(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)
        fake_bitcoin_api.utxos[0].value_sats = 2_000_000

        with pytest.raises(VerificationError):
            await wallet.send(DEST_ADDRESS, 100_000)

        assert fake_bitcoin_api.broadcasts == []

    @pytest.mark.asyncio
    async def test_process_withdrawal_reports_failure(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 110_000)

        result = await wallet.process_withdrawal(DEST_ADDRESS, 100_000)

        assert not result.success
        assert result.tx_hash is None
        assert "Insufficient balance" in result.error

    @pytest.mark.asyncio
    async def test_process_withdrawal_success(self, wallet, fake_bitcoin_api):
        fake_bitcoin_api.fund(wallet.script_pubkey, 1_000_000)

        result = await wallet.process_withdrawal(DEST_ADDRESS, 100_000)

        assert result.success
        assert result.tx_hash == raw_txid(bytes.fromhex(fake_bitcoin_api.broadcasts[0]))
