"""
Collateral proof objects on Sui: lookup, creation and deposit attestation.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from .errors import ConfigurationError
from .sui import SuiClient, SuiRPCError

logger = structlog.get_logger()

COLLATERAL_PROOF_MARKER = "CollateralProof"


@dataclass
class AttestationResult:
    """Outcome of attesting a deposit."""

    digest: str
    proof_id: str
    created: bool


class CollateralAttestationClient:
    """Issues the Move calls that mirror Bitcoin deposits as collateral."""

    def __init__(
        self,
        sui: SuiClient,
        package_id: str,
        module_name: str,
        relayer_registry_id: Optional[str],
        witness_registry_id: Optional[str],
        settle_delay: float = 2.0,
    ):
        self.sui = sui
        self.package_id = package_id
        self.module_name = module_name
        self.relayer_registry_id = relayer_registry_id
        self.witness_registry_id = witness_registry_id
        self.settle_delay = settle_delay

    async def find_collateral_proof(self, owner: str) -> Optional[str]:
        """Object id of the owner's collateral proof, if one exists."""
        for obj in await self.sui.get_owned_objects(owner):
            if COLLATERAL_PROOF_MARKER in obj.object_type:
                return obj.object_id
        return None

    async def create_collateral_proof(self, owner: str) -> str:
        """Create a collateral proof for owner and return its object id."""
        if not self.witness_registry_id:
            raise ConfigurationError("WITNESS_REGISTRY_ID is not set")

        result = await self.sui.move_call(
            self.package_id,
            self.module_name,
            "create_collateral_proof",
            [self.witness_registry_id, owner],
        )
        logger.info("collateral_proof_created", owner=owner, digest=result.digest)

        for obj in result.created_objects:
            if COLLATERAL_PROOF_MARKER in obj.object_type:
                return obj.object_id

        # Object changes were not reported; give the fullnode time to index
        await asyncio.sleep(self.settle_delay)
        proof_id = await self.find_collateral_proof(owner)
        if proof_id is None:
            raise SuiRPCError(-1, f"Created collateral proof for {owner} not found")
        return proof_id

    async def attest_deposit(
        self, owner: str, btc_tx_hash: str, amount_sats: int
    ) -> AttestationResult:
        """
        Attest a verified deposit to the owner's collateral proof,
        creating the proof first when the owner has none.
        """
        if not self.relayer_registry_id:
            raise ConfigurationError("RELAYER_REGISTRY_ID is not set")

        created = False
        proof_id = await self.find_collateral_proof(owner)
        if proof_id is None:
            logger.info("collateral_proof_missing", owner=owner)
            proof_id = await self.create_collateral_proof(owner)
            created = True

        result = await self.sui.move_call(
            self.package_id,
            self.module_name,
            "attest_btc_deposit",
            [
                self.relayer_registry_id,
                proof_id,
                list(bytes.fromhex(btc_tx_hash)),
                str(amount_sats),
            ],
        )

        logger.info(
            "deposit_attested",
            owner=owner,
            proof_id=proof_id,
            btc_tx_hash=btc_tx_hash,
            amount_sats=amount_sats,
            digest=result.digest,
        )
        return AttestationResult(digest=result.digest, proof_id=proof_id, created=created)
