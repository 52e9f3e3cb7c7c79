"""
Tests for the deposit workflow and collateral attestation.
"""

from typing import Any

import httpx
import pytest

from mobility_relayer.bitcoin import BitcoinApiClient
from mobility_relayer.collateral import CollateralAttestationClient
from mobility_relayer.db import STATUS_COMPLETED, STATUS_FAILED
from mobility_relayer.deposit import DepositOrchestrator
from mobility_relayer.errors import ConfigurationError, DepositError
from mobility_relayer.sui import OwnedObject, SuiRPCError

CUSTODY = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
SENDER = "mfWxJ45yp2SFn7UciZyNpvDKrzbhyfKrY8"
TXID = "3a27d218da4e70f27dd197160b1278f056145a316a60af5c41cddb032787b13e"


def _esplora(block_height: int, tip: int, value: int = 1_000_000) -> BitcoinApiClient:
    tx: dict[str, Any] = {
        "txid": TXID,
        "status": {"confirmed": True, "block_height": block_height},
        "vout": [
            {"value": value, "scriptpubkey_address": CUSTODY},
            {"value": 25_000, "scriptpubkey_address": SENDER},
        ],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/blocks/tip/height"):
            return httpx.Response(200, text=str(tip))
        if request.url.path.endswith(f"/tx/{TXID}"):
            return httpx.Response(200, json=tx)
        return httpx.Response(404, text="Transaction not found")

    return BitcoinApiClient(
        "https://blockstream.info/testnet/api", transport=httpx.MockTransport(handler)
    )


def _attestation(fake_sui, **kwargs) -> CollateralAttestationClient:
    params = dict(
        package_id="0xpkg",
        module_name="attest_btc_deposit",
        relayer_registry_id="0xrelayers",
        witness_registry_id="0xwitness",
        settle_delay=0,
    )
    params.update(kwargs)
    return CollateralAttestationClient(fake_sui, **params)


class TestCollateralAttestation:
    @pytest.mark.asyncio
    async def test_creates_proof_when_missing(self, fake_sui):
        attestation = _attestation(fake_sui)

        result = await attestation.attest_deposit("0xabc", TXID, 1_000_000)

        assert result.created
        assert [name for name, _ in fake_sui.move_calls] == [
            "create_collateral_proof",
            "attest_btc_deposit",
        ]
        assert fake_sui.move_calls[0][1] == ["0xwitness", "0xabc"]
        assert fake_sui.move_calls[1][1] == [
            "0xrelayers",
            result.proof_id,
            list(bytes.fromhex(TXID)),
            "1000000",
        ]

    @pytest.mark.asyncio
    async def test_reuses_existing_proof(self, fake_sui):
        fake_sui.owned["0xabc"] = [
            OwnedObject("0xcoin", "0x2::coin::Coin<0x2::sui::SUI>"),
            OwnedObject("0xexisting", "0xpkg::attest_btc_deposit::CollateralProof"),
        ]
        attestation = _attestation(fake_sui)

        result = await attestation.attest_deposit("0xabc", TXID, 5_000)

        assert not result.created
        assert result.proof_id == "0xexisting"
        assert [name for name, _ in fake_sui.move_calls] == ["attest_btc_deposit"]

    @pytest.mark.asyncio
    async def test_finds_created_proof_by_owner_lookup(self, fake_sui):
        fake_sui.report_created = False
        attestation = _attestation(fake_sui)

        proof_id = await attestation.create_collateral_proof("0xabc")

        assert proof_id == fake_sui.owned["0xabc"][0].object_id

    @pytest.mark.asyncio
    async def test_missing_registry_ids(self, fake_sui):
        with pytest.raises(ConfigurationError):
            await _attestation(fake_sui, relayer_registry_id=None).attest_deposit("0xabc", TXID, 1)
        with pytest.raises(ConfigurationError):
            await _attestation(fake_sui, witness_registry_id=None).create_collateral_proof("0xabc")


class TestDepositOrchestrator:
    """End-to-end deposit processing."""

    @pytest.mark.asyncio
    async def test_confirmed_deposit_is_attested(self, db, fake_sui):
        # block 100, tip 102 -> 3 confirmations
        orchestrator = DepositOrchestrator(
            db, _esplora(100, 102), _attestation(fake_sui), CUSTODY, min_confirmations=2
        )

        result = await orchestrator.process_deposit("0xabc", SENDER, TXID)

        assert result.status == STATUS_COMPLETED
        assert result.collateral_created is True
        assert result.amount_sats == 1_000_000
        assert result.hash == "digest2"
        assert fake_sui.move_calls[-1][1][3] == "1000000"

        stored = db.get_transaction(result.id)
        assert stored.status == STATUS_COMPLETED
        assert stored.chain_tx_digest == "digest2"
        assert stored.bitcoin_tx_hash == TXID
        assert stored.payload == {
            "chainAddress": "0xabc",
            "bitcoinAddress": SENDER,
            "bitcoinTxHash": TXID,
        }

    @pytest.mark.asyncio
    async def test_insufficient_confirmations_marks_failed(self, db, fake_sui):
        orchestrator = DepositOrchestrator(
            db, _esplora(100, 100), _attestation(fake_sui), CUSTODY, min_confirmations=2
        )

        with pytest.raises(DepositError) as exc_info:
            await orchestrator.process_deposit("0xabc", SENDER, TXID)

        stored = db.get_transaction(exc_info.value.record_id)
        assert stored.status == STATUS_FAILED
        assert stored.error_message == "Insufficient confirmations: 1 (required 2)"
        assert fake_sui.move_calls == []

    @pytest.mark.asyncio
    async def test_attestation_failure_marks_failed(self, db, fake_sui):
        fake_sui.fail_move_calls = True
        orchestrator = DepositOrchestrator(
            db, _esplora(100, 110), _attestation(fake_sui), CUSTODY
        )

        with pytest.raises(DepositError) as exc_info:
            await orchestrator.process_deposit("0xabc", SENDER, TXID)

        assert isinstance(exc_info.value.__cause__, SuiRPCError)
        stored = db.get_transaction(exc_info.value.record_id)
        assert stored.status == STATUS_FAILED
        assert "Transaction rejected" in stored.error_message

    @pytest.mark.asyncio
    async def test_no_custody_address(self, db, fake_sui):
        orchestrator = DepositOrchestrator(
            db, _esplora(100, 110), _attestation(fake_sui), custody_address=None
        )

        with pytest.raises(DepositError):
            await orchestrator.process_deposit("0xabc", SENDER, TXID)

        records, total = db.list_transactions()
        assert total == 1
        assert records[0].status == STATUS_FAILED
