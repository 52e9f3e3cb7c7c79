"""
Withdrawal lifecycle: event recording, attestation and Bitcoin payout.

A withdrawal record is created in `processing` the first time its chain
event is seen. Attestations accumulate until the configured threshold is
reached; the payout processor then pays it out and completes it, or
fails it. Completed and failed records are never modified again.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

from .db import STATUS_PROCESSING, RelayerDatabase, TransactionRecord
from .wallet import SendResult

logger = structlog.get_logger()


class PayoutSender(Protocol):
    async def process_withdrawal(self, to_address: str, amount: int) -> SendResult: ...


@dataclass
class WithdrawalState:
    """State of a withdrawal record after a state machine call."""

    record: TransactionRecord
    created: bool = False
    threshold_crossed: bool = False

    @property
    def record_id(self) -> str:
        return self.record.id

    @property
    def attestation_count(self) -> int:
        return self.record.attestation_count

    @property
    def threshold_reached(self) -> bool:
        return self.record.threshold_reached


class WithdrawalStateMachine:
    """Records withdrawal events and accumulates attestations."""

    def __init__(self, db: RelayerDatabase, threshold: int = 1):
        if threshold < 1:
            raise ValueError("Attestation threshold must be at least 1")
        self.db = db
        self.threshold = threshold

    async def record_event(
        self,
        source_event_id: str,
        chain_address: str,
        bitcoin_address: str,
        amount: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> WithdrawalState:
        """
        Record a withdrawal event and attest it once.

        Re-delivery of a known source_event_id returns the stored record
        unchanged, unless its first attestation never landed; that one is
        applied now.
        """
        record, created = await asyncio.to_thread(
            self.db.create_withdrawal,
            source_event_id,
            chain_address,
            bitcoin_address,
            amount,
            payload,
        )

        if not created:
            if record.status == STATUS_PROCESSING and record.attestation_count == 0:
                logger.warning(
                    "withdrawal_first_attestation_retry",
                    record_id=record.id,
                    source_event_id=source_event_id,
                )
                return await self.attest(record.id, first_only=True)

            logger.info(
                "withdrawal_event_duplicate",
                record_id=record.id,
                source_event_id=source_event_id,
                status=record.status,
            )
            return WithdrawalState(record=record)

        logger.info(
            "withdrawal_recorded",
            record_id=record.id,
            source_event_id=source_event_id,
            chain_address=chain_address,
            bitcoin_address=bitcoin_address,
            amount=amount,
        )

        # A concurrent re-delivery may already have applied the first attestation
        state = await self.attest(record.id, first_only=True)
        state.created = True
        return state

    async def attest(self, record_id: str, first_only: bool = False) -> WithdrawalState:
        """
        Add one attestation atomically.

        A record that is no longer processing is returned unchanged. With
        first_only, so is a record that already has an attestation.
        """
        outcome = await asyncio.to_thread(
            self.db.attest_withdrawal, record_id, self.threshold, first_only=first_only
        )

        if outcome.applied:
            logger.info(
                "withdrawal_attested",
                record_id=record_id,
                attestation_count=outcome.record.attestation_count,
                threshold=self.threshold,
                threshold_reached=outcome.record.threshold_reached,
            )
        else:
            logger.debug("withdrawal_attest_skipped", record_id=record_id, status=outcome.record.status)

        return WithdrawalState(record=outcome.record, threshold_crossed=outcome.threshold_crossed)


class WithdrawalPayoutProcessor:
    """Pays out withdrawals that reached the attestation threshold."""

    def __init__(self, db: RelayerDatabase, sender: PayoutSender, interval: float = 30.0):
        self.db = db
        self.sender = sender
        self.interval = interval
        self._running = False

    async def process_pending(self) -> int:
        """
        Run one payout cycle.

        Returns number of withdrawals completed.
        """
        records = await asyncio.to_thread(self.db.find_payable_withdrawals)
        if records:
            logger.info("payable_withdrawals_found", count=len(records))

        completed = 0
        for record in records:
            try:
                if await self._pay(record):
                    completed += 1
            except Exception as e:
                logger.error("withdrawal_payout_error", record_id=record.id, error=str(e))

        return completed

    async def _pay(self, record: TransactionRecord) -> bool:
        if not record.bitcoin_address or not record.withdrawal_amount:
            await asyncio.to_thread(
                self.db.mark_failed,
                record.id,
                "Missing required fields: bitcoin address or withdrawal amount",
            )
            return False

        logger.info(
            "withdrawal_payout_started",
            record_id=record.id,
            bitcoin_address=record.bitcoin_address,
            amount=record.withdrawal_amount,
        )

        result = await self.sender.process_withdrawal(
            record.bitcoin_address, record.withdrawal_amount
        )

        if not result.success or not result.tx_hash:
            await asyncio.to_thread(
                self.db.mark_failed, record.id, result.error or "Bitcoin payout failed"
            )
            return False

        completed = await asyncio.to_thread(self.db.complete_withdrawal, record.id, result.tx_hash)
        if not completed:
            # Broadcast went out but the record moved on concurrently
            logger.error(
                "withdrawal_completion_conflict",
                record_id=record.id,
                payout_tx_hash=result.tx_hash,
            )
            return False

        logger.info(
            "withdrawal_completed",
            record_id=record.id,
            payout_tx_hash=result.tx_hash,
        )
        return True

    async def run(self) -> None:
        """Run the payout loop (first cycle immediately)."""
        self._running = True
        logger.info("payout_processor_starting", interval=self.interval)

        while self._running:
            try:
                await self.process_pending()
            except Exception as e:
                logger.error("payout_cycle_error", error=str(e))

            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        """Stop the payout loop."""
        self._running = False
        logger.info("payout_processor_stopping")
