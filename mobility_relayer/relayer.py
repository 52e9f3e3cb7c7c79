"""
Relayer composition: wires clients, stores and background loops from settings.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from .bitcoin import BitcoinApiClient
from .collateral import CollateralAttestationClient
from .config import Settings
from .db import RelayerDatabase
from .deposit import DepositOrchestrator
from .listener import (
    WITHDRAW_EVENT_NAME,
    CursorHealthMonitor,
    PollState,
    SeenEventCache,
    WithdrawalEventListener,
)
from .sui import SuiClient, SuiKeypair, SuiRPCConfig
from .wallet import BitcoinWallet
from .withdrawal import WithdrawalPayoutProcessor, WithdrawalStateMachine

logger = structlog.get_logger()


@dataclass
class CycleResult:
    """Outcome of a single ingest + payout cycle."""

    events: int
    payouts_completed: int


class Relayer:
    """
    The relayer core:
    1. Verifies Bitcoin deposits and attests them as collateral on Sui
    2. Ingests WithdrawRequest events and attests them
    3. Pays out withdrawals that reached the attestation threshold
    """

    def __init__(
        self,
        settings: Settings,
        database: Optional[RelayerDatabase] = None,
        bitcoin_client: Optional[BitcoinApiClient] = None,
        sui_client: Optional[SuiClient] = None,
        wallet: Optional[BitcoinWallet] = None,
    ):
        self.settings = settings

        self.db = database or RelayerDatabase(settings.database_url)
        self.bitcoin = bitcoin_client or BitcoinApiClient(
            settings.resolved_bitcoin_api_url,
            fee_url=settings.resolved_fee_api_url,
        )

        if sui_client is None:
            keypair = None
            if settings.relayer_private_key:
                keypair = SuiKeypair.from_secret_key(settings.relayer_private_key)
            else:
                logger.warning("sui_signer_not_configured", detail="collateral attestation disabled")
            sui_client = SuiClient(
                SuiRPCConfig(url=settings.resolved_sui_rpc_url, gas_budget=settings.sui_gas_budget),
                keypair=keypair,
            )
        self.sui = sui_client

        if wallet is None and settings.master_bitcoin_private_key:
            wallet = BitcoinWallet(
                self.bitcoin,
                settings.master_bitcoin_private_key,
                network=settings.bitcoin_network,
                fee_tier=settings.fee_tier,
                default_fee_rate=settings.default_fee_rate,
                cache_ttl=settings.utxo_cache_ttl_seconds,
                balance_safety_multiplier=settings.balance_safety_multiplier,
                min_amount=settings.min_withdrawal_sats,
                max_amount=settings.max_withdrawal_sats,
            )
        self.wallet = wallet
        if wallet is None:
            logger.warning("bitcoin_wallet_not_configured", detail="payouts disabled")

        self.attestation = CollateralAttestationClient(
            self.sui,
            package_id=settings.package_id,
            module_name=settings.module_name,
            relayer_registry_id=settings.relayer_registry_id,
            witness_registry_id=settings.witness_registry_id,
        )

        custody_address = settings.deposit_address or (wallet.address if wallet else None)
        self.deposits = DepositOrchestrator(
            self.db,
            self.bitcoin,
            self.attestation,
            custody_address=custody_address,
            min_confirmations=settings.min_confirmations,
        )

        self.state_machine = WithdrawalStateMachine(
            self.db, threshold=settings.withdrawal_attestation_threshold
        )

        self.listener = WithdrawalEventListener(
            self.sui,
            self.db,
            self.state_machine,
            event_type=f"{settings.package_id}::{settings.module_name}::{WITHDRAW_EVENT_NAME}",
            bitcoin_network=settings.bitcoin_network,
            page_size=settings.event_page_size,
            batch_size=settings.event_batch_size,
            batch_pause=settings.event_batch_pause_seconds,
            max_amount=settings.max_withdrawal_sats,
            poll_state=PollState(
                base_interval=settings.event_poll_interval_seconds,
                max_interval=settings.event_max_poll_interval_seconds,
                max_backoff=settings.event_max_backoff_seconds,
                failure_grace=settings.event_failure_grace,
            ),
            seen=SeenEventCache(
                capacity=settings.seen_events_capacity,
                retain=settings.seen_events_retain,
            ),
        )

        self.payouts = (
            WithdrawalPayoutProcessor(self.db, wallet, interval=settings.payout_interval_seconds)
            if wallet
            else None
        )

        self.health = CursorHealthMonitor(
            self.db,
            stale_after=settings.cursor_stale_seconds,
            interval=settings.cursor_health_interval_seconds,
        )

        self._tasks: list[asyncio.Task] = []

        logger.info(
            "relayer_initialized",
            bitcoin_network=settings.bitcoin_network,
            bitcoin_api=settings.resolved_bitcoin_api_url,
            sui_rpc=settings.resolved_sui_rpc_url,
            custody_address=custody_address,
            attestation_threshold=settings.withdrawal_attestation_threshold,
            payouts_enabled=self.payouts is not None,
        )

    async def prepare(self) -> None:
        """Startup housekeeping that must precede the loops."""
        if self.settings.reset_event_cursor:
            logger.warning("event_cursor_reset_requested")
            await self.listener.reset_cursor()

    async def start(self) -> None:
        """Start the background loops."""
        await self.prepare()

        self._tasks.append(asyncio.create_task(self.listener.run(), name="event-listener"))
        if self.payouts:
            self._tasks.append(asyncio.create_task(self.payouts.run(), name="payout-processor"))
        self._tasks.append(asyncio.create_task(self.health.run(), name="cursor-health"))

        logger.info("relayer_started", tasks=[t.get_name() for t in self._tasks])

    async def run_once(self) -> CycleResult:
        """One ingest poll followed by one payout cycle."""
        events = await self.listener.poll_once()
        completed = await self.payouts.process_pending() if self.payouts else 0
        return CycleResult(events=events, payouts_completed=completed)

    async def stop(self) -> None:
        """Stop loops and release clients."""
        self.listener.stop()
        if self.payouts:
            self.payouts.stop()
        self.health.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.close()
        logger.info("relayer_stopped")

    async def close(self) -> None:
        await self.bitcoin.close()
        await self.sui.close()
        self.db.close()
