"""
Deposit workflow: verify a Bitcoin deposit and mirror it as collateral on Sui.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from .bitcoin import BitcoinApiClient
from .collateral import CollateralAttestationClient
from .db import STATUS_COMPLETED, RelayerDatabase
from .errors import ConfigurationError, DepositError, VerificationError

logger = structlog.get_logger()


@dataclass
class DepositResult:
    """Outcome of a completed deposit."""

    id: str
    status: str
    hash: str
    collateral_created: bool
    amount_sats: int


class DepositOrchestrator:
    """
    Runs one deposit end to end.

    The attested amount is what the transaction actually paid to the
    custody address, never a caller-supplied figure.
    """

    def __init__(
        self,
        db: RelayerDatabase,
        bitcoin: BitcoinApiClient,
        attestation: CollateralAttestationClient,
        custody_address: Optional[str],
        min_confirmations: int = 2,
    ):
        self.db = db
        self.bitcoin = bitcoin
        self.attestation = attestation
        self.custody_address = custody_address
        self.min_confirmations = min_confirmations

    async def process_deposit(
        self, chain_address: str, bitcoin_address: str, bitcoin_tx_hash: str
    ) -> DepositResult:
        """
        Verify, attest and complete a deposit.

        Raises:
            DepositError: any step failed; the record has been marked failed
        """
        payload = {
            "chainAddress": chain_address,
            "bitcoinAddress": bitcoin_address,
            "bitcoinTxHash": bitcoin_tx_hash,
        }
        record = await asyncio.to_thread(
            self.db.create_deposit, chain_address, bitcoin_address, bitcoin_tx_hash, payload
        )
        logger.info(
            "deposit_started",
            record_id=record.id,
            chain_address=chain_address,
            bitcoin_tx_hash=bitcoin_tx_hash,
        )

        try:
            if not self.custody_address:
                raise ConfigurationError(
                    "No custody address: set DEPOSIT_ADDRESS or MASTER_BITCOIN_PRIVATE_KEY"
                )

            verification = await self.bitcoin.verify_transaction(
                bitcoin_tx_hash, self.min_confirmations, self.custody_address
            )
            if not verification.verified:
                raise VerificationError(
                    verification.error or "Bitcoin transaction verification failed"
                )

            attestation = await self.attestation.attest_deposit(
                chain_address, bitcoin_tx_hash, verification.amount_sats
            )

            await asyncio.to_thread(
                self.db.complete_deposit, record.id, attestation.digest, attestation.created
            )
        except Exception as e:
            logger.error("deposit_failed", record_id=record.id, error=str(e))
            await asyncio.to_thread(self.db.mark_failed, record.id, str(e))
            raise DepositError(str(e), record_id=record.id) from e

        logger.info(
            "deposit_completed",
            record_id=record.id,
            digest=attestation.digest,
            collateral_created=attestation.created,
            amount_sats=verification.amount_sats,
        )
        return DepositResult(
            id=record.id,
            status=STATUS_COMPLETED,
            hash=attestation.digest,
            collateral_created=attestation.created,
            amount_sats=verification.amount_sats,
        )
