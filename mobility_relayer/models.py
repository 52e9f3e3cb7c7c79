"""
Pydantic models for API requests and responses.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Deposit
# ============================================================================

class DepositRequest(BaseModel):
    """Request to process a Bitcoin deposit."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "chainAddress": "0x4f2e63be8e7fe287836e29cde6f3d5cbc96eefd0c0e3f3747668faa2ae7324b0",
                    "bitcoinAddress": "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx",
                    "bitcoinTxHash": "3a27d218da4e70f27dd197160b1278f056145a316a60af5c41cddb032787b13e",
                }
            ]
        },
    )

    chain_address: str = Field(
        ...,
        alias="chainAddress",
        pattern=r"^0x[a-fA-F0-9]+$",
        description="Sui address of the depositor (0x...)",
    )
    bitcoin_address: str = Field(
        ...,
        alias="bitcoinAddress",
        min_length=26,
        max_length=90,
        description="Bitcoin address the deposit was sent from",
    )
    bitcoin_tx_hash: str = Field(
        ...,
        alias="bitcoinTxHash",
        pattern=r"^[a-fA-F0-9]{64}$",
        description="Deposit transaction id (64 hex chars)",
    )


class DepositData(BaseModel):
    id: str
    status: str
    hash: str
    collateral_created: bool = Field(..., serialization_alias="collateralCreated")


class DepositResponse(BaseModel):
    """Response for a processed deposit."""

    status: str = "success"
    message: str = "Deposit processed successfully"
    data: DepositData


# ============================================================================
# Transactions
# ============================================================================

class TransactionResponse(BaseModel):
    status: str = "success"
    data: dict[str, Any]


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class TransactionList(BaseModel):
    transactions: list[dict[str, Any]]
    pagination: Pagination


class TransactionListResponse(BaseModel):
    status: str = "success"
    data: TransactionList


class WithdrawalListResponse(BaseModel):
    status: str = "success"
    data: list[dict[str, Any]]


# ============================================================================
# Health / errors
# ============================================================================

class HealthResponse(BaseModel):
    """Liveness probe."""

    status: str = Field("ok", description="Service status")
    message: str = Field("Relayer service is running")


class ErrorResponse(BaseModel):
    status: str = "error"
    message: str
    errors: Optional[list[str]] = None
    error: Optional[str] = None
