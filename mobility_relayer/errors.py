"""
Exceptions raised by the relayer core.
"""

from typing import Optional


class RelayerError(Exception):
    """Base class for relayer errors."""


class ConfigurationError(RelayerError):
    """Required configuration is missing or malformed."""


class InvalidEventError(RelayerError):
    """A chain event is malformed and can never be delivered."""


class VerificationError(RelayerError):
    """A Bitcoin transaction failed deposit verification."""


class InvalidAddressError(RelayerError):
    """Address is not a recognized Bitcoin address for the network."""


class AmountOutOfRangeError(RelayerError):
    """Requested amount is outside the accepted bounds."""


class InsufficientBalanceError(RelayerError):
    """Wallet cannot fund the requested payout."""

    def __init__(self, required: int, available: int, message: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(
            message or f"Insufficient balance. Required: {required}, Available: {available}"
        )


class RecordNotFoundError(RelayerError):
    """No transaction record with the given id."""


class ConcurrentUpdateError(RelayerError):
    """An optimistic write kept losing to concurrent writers."""


class DepositError(RelayerError):
    """Deposit processing failed; the record has been marked failed."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        self.record_id = record_id
        super().__init__(message)
