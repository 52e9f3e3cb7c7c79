"""
Shared fixtures: a temporary SQLite store and in-memory chain fakes.
"""

import json
from typing import Any, Optional

import httpx
import pytest

from mobility_relayer.address import encode_wif
from mobility_relayer.bitcoin import AddressUtxo
from mobility_relayer.db import RelayerDatabase
from mobility_relayer.sui import EventPage, ExecutionResult, OwnedObject, SuiRPCError
from mobility_relayer.transaction import Transaction, TxIn, TxOut, raw_txid
from mobility_relayer.wallet import BitcoinWallet, SendResult

WALLET_SECRET = bytes.fromhex("11" * 32)


class FakeBitcoinApi:
    """Explorer stand-in serving a fixed UTXO set and recording broadcasts."""

    def __init__(self, fee_rate: int = 10):
        self.fee_rate = fee_rate
        self.utxos: list[AddressUtxo] = []
        self.parents: dict[str, str] = {}
        self.broadcasts: list[str] = []
        self.utxo_calls = 0
        self.fail_utxos = False
        self.fail_fees = False

    def fund(self, script_pubkey: bytes, value: int, confirmed: bool = True) -> str:
        """Add a parent transaction paying script_pubkey and expose its output as a UTXO."""
        parent = Transaction(
            inputs=[TxIn(txid=f"{len(self.parents) + 1:064x}", vout=0)],
            outputs=[TxOut(value=value, script_pubkey=script_pubkey)],
        )
        self.parents[parent.txid] = parent.to_hex()
        self.utxos.append(
            AddressUtxo(
                txid=parent.txid,
                vout=0,
                value_sats=value,
                confirmed=confirmed,
                block_height=100 if confirmed else None,
            )
        )
        return parent.txid

    async def get_address_utxos(self, address: str) -> list[AddressUtxo]:
        self.utxo_calls += 1
        if self.fail_utxos:
            raise httpx.ConnectError("explorer unreachable")
        return list(self.utxos)

    async def get_fee_rate(self, tier: str = "hourFee") -> int:
        if self.fail_fees:
            raise httpx.ConnectError("fee endpoint unreachable")
        return self.fee_rate

    async def get_tx_hex(self, txid: str) -> str:
        return self.parents[txid]

    async def broadcast(self, raw_tx_hex: str) -> str:
        self.broadcasts.append(raw_tx_hex)
        return raw_txid(bytes.fromhex(raw_tx_hex))

    async def close(self) -> None:
        return


class FakeSuiClient:
    """Sui fullnode stand-in with scripted event pages and Move call results."""

    def __init__(self) -> None:
        self.pages: dict[Optional[str], EventPage] = {}
        self.query_calls: list[Optional[dict[str, Any]]] = []
        self.owned: dict[str, list[OwnedObject]] = {}
        self.move_calls: list[tuple[str, list[Any]]] = []
        self.fail_queries = False
        self.fail_move_calls = False
        self.report_created = True

    @staticmethod
    def _key(cursor: Optional[dict[str, Any]]) -> Optional[str]:
        return json.dumps(cursor, sort_keys=True) if cursor else None

    def add_page(self, cursor: Optional[dict[str, Any]], page: EventPage) -> None:
        self.pages[self._key(cursor)] = page

    async def query_events(
        self,
        event_type: str,
        cursor: Optional[dict[str, Any]] = None,
        limit: int = 50,
        descending: bool = False,
    ) -> EventPage:
        self.query_calls.append(cursor)
        if self.fail_queries:
            raise httpx.ConnectError("fullnode unreachable")
        return self.pages.get(self._key(cursor), EventPage())

    async def get_owned_objects(self, owner: str) -> list[OwnedObject]:
        return list(self.owned.get(owner, []))

    async def move_call(
        self,
        package_id: str,
        module: str,
        function: str,
        arguments: list[Any],
        type_arguments: Optional[list[str]] = None,
    ) -> ExecutionResult:
        self.move_calls.append((function, arguments))
        if self.fail_move_calls:
            raise SuiRPCError(-32002, "Transaction rejected")

        digest = f"digest{len(self.move_calls)}"
        if function == "create_collateral_proof":
            owner = arguments[1]
            proof = OwnedObject(
                object_id=f"0xproof{len(self.move_calls)}",
                object_type=f"{package_id}::{module}::CollateralProof",
            )
            self.owned.setdefault(owner, []).append(proof)
            created = [proof] if self.report_created else []
            return ExecutionResult(digest=digest, created_objects=created)
        return ExecutionResult(digest=digest)

    async def close(self) -> None:
        return


class FakeSender:
    """Payout sender returning scripted results per destination address."""

    def __init__(self, results: Optional[dict[str, Any]] = None):
        self.results = results or {}
        self.calls: list[tuple[str, int]] = []

    async def process_withdrawal(self, to_address: str, amount: int) -> SendResult:
        self.calls.append((to_address, amount))
        result = self.results.get(to_address, SendResult(success=True, tx_hash="ab" * 32))
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def db(tmp_path) -> RelayerDatabase:
    database = RelayerDatabase(f"sqlite:///{tmp_path / 'relayer.db'}")
    yield database
    database.close()


@pytest.fixture
def fake_bitcoin_api() -> FakeBitcoinApi:
    return FakeBitcoinApi()


@pytest.fixture
def fake_sui() -> FakeSuiClient:
    return FakeSuiClient()


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def wallet(fake_bitcoin_api) -> BitcoinWallet:
    return BitcoinWallet(
        fake_bitcoin_api,  # type: ignore[arg-type]
        encode_wif(WALLET_SECRET, "testnet"),
        network="testnet",
    )
