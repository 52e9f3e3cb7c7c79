"""
Mobility Relayer

Bridges Bitcoin collateral to Sui:
- Verifies Bitcoin deposits and attests them as CollateralProof on Sui
- Ingests WithdrawRequest events from Sui and pays them out in BTC

Usage:
    # Serve the HTTP API with the background loops
    mobility-relayer serve

    # Run the ingest and payout loops without the API
    mobility-relayer run

    # Run one cycle (for testing)
    mobility-relayer run --once

    # Check a deposit transaction
    mobility-relayer check-tx <txid>
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .bitcoin import BitcoinApiClient
from .db import RelayerDatabase, TransactionRecord
from .deposit import DepositOrchestrator
from .listener import WithdrawalEventListener
from .relayer import Relayer
from .sui import SuiClient, SuiKeypair
from .wallet import BitcoinWallet
from .withdrawal import WithdrawalPayoutProcessor, WithdrawalStateMachine

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "BitcoinApiClient",
    "RelayerDatabase",
    "TransactionRecord",
    "DepositOrchestrator",
    "WithdrawalEventListener",
    "Relayer",
    "SuiClient",
    "SuiKeypair",
    "BitcoinWallet",
    "WithdrawalPayoutProcessor",
    "WithdrawalStateMachine",
]
