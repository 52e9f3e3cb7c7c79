"""
Mobility Relayer API.

Provides REST endpoints for:
- Processing deposits (POST /deposit)
- Transaction lookup (GET /transaction/{id}, GET /transactions)
- Withdrawal history (GET /withdrawals/{chain_address})
- Health checks (GET /health)
"""

import asyncio
import math
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import Settings, get_settings
from .errors import DepositError
from .log import configure_logging
from .models import (
    DepositData,
    DepositRequest,
    DepositResponse,
    ErrorResponse,
    HealthResponse,
    Pagination,
    TransactionList,
    TransactionListResponse,
    TransactionResponse,
    WithdrawalListResponse,
)
from .relayer import Relayer

logger = structlog.get_logger()


def get_relayer(request: Request) -> Relayer:
    relayer = request.app.state.relayer
    if relayer is None:
        raise HTTPException(status_code=503, detail="Relayer not initialized")
    return relayer


def _format_validation_error(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())[1:])
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def _error_response(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def create_app(
    relayer: Optional[Relayer] = None,
    settings: Optional[Settings] = None,
    run_background: bool = True,
) -> FastAPI:
    """
    Build the API application.

    Without a relayer one is built from settings at startup. With
    run_background the ingestion, payout and health loops run alongside
    the API.
    """
    settings = settings or (relayer.settings if relayer else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        configure_logging(json_logs=settings.json_logs, level=settings.log_level)

        if app.state.relayer is None:
            app.state.relayer = Relayer(settings)

        if run_background:
            await app.state.relayer.start()

        logger.info(
            "api_started",
            version=__version__,
            host=settings.host,
            port=settings.port,
            environment=settings.environment,
        )

        yield

        if run_background:
            await app.state.relayer.stop()
        else:
            await app.state.relayer.close()

        logger.info("api_stopped")

    app = FastAPI(
        title="Mobility Relayer API",
        description="Bitcoin collateral relayer for Sui",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.relayer = relayer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Error handlers
    # ========================================================================

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [_format_validation_error(e) for e in exc.errors()]
        logger.warning("request_validation_failed", path=request.url.path, errors=errors)
        return _error_response(400, ErrorResponse(message="Validation error", errors=errors))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(exc.status_code, ErrorResponse(message=str(exc.detail)))

    @app.exception_handler(DepositError)
    async def deposit_error_handler(request: Request, exc: DepositError) -> JSONResponse:
        return _error_response(500, ErrorResponse(message=str(exc)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_error", path=request.url.path, error=str(exc))
        body = ErrorResponse(message="Internal Server Error")
        if not settings.is_production:
            body.error = str(exc)
        return _error_response(500, body)

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Liveness probe."""
        return HealthResponse()

    # ========================================================================
    # Deposits
    # ========================================================================

    @app.post(
        "/deposit",
        response_model=DepositResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def process_deposit(
        request: DepositRequest,
        relayer: Relayer = Depends(get_relayer),
    ) -> DepositResponse:
        """
        Verify a Bitcoin deposit and attest it as collateral on Sui.

        The attested amount is read from the confirmed transaction.
        """
        result = await relayer.deposits.process_deposit(
            chain_address=request.chain_address,
            bitcoin_address=request.bitcoin_address,
            bitcoin_tx_hash=request.bitcoin_tx_hash,
        )
        return DepositResponse(
            data=DepositData(
                id=result.id,
                status=result.status,
                hash=result.hash,
                collateral_created=result.collateral_created,
            )
        )

    # ========================================================================
    # Transactions
    # ========================================================================

    @app.get(
        "/transaction/{tx_id}",
        response_model=TransactionResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_transaction(
        tx_id: str,
        relayer: Relayer = Depends(get_relayer),
    ) -> TransactionResponse:
        record = await asyncio.to_thread(relayer.db.get_transaction, tx_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return TransactionResponse(data=record.to_dict())

    @app.get("/transactions", response_model=TransactionListResponse)
    async def list_transactions(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        relayer: Relayer = Depends(get_relayer),
    ) -> TransactionListResponse:
        """All transactions, newest first."""
        records, total = await asyncio.to_thread(relayer.db.list_transactions, page, limit)
        return TransactionListResponse(
            data=TransactionList(
                transactions=[r.to_dict() for r in records],
                pagination=Pagination(
                    total=total,
                    page=page,
                    limit=limit,
                    pages=math.ceil(total / limit),
                ),
            )
        )

    @app.get("/withdrawals/{chain_address}", response_model=WithdrawalListResponse)
    async def list_withdrawals(
        chain_address: str = Path(..., pattern=r"^0x[a-fA-F0-9]+$"),
        relayer: Relayer = Depends(get_relayer),
    ) -> WithdrawalListResponse:
        """The 10 most recent withdrawals for a Sui address."""
        records = await asyncio.to_thread(relayer.db.list_withdrawals, chain_address, 10)
        return WithdrawalListResponse(data=[r.to_dict() for r in records])

    return app


app = create_app()
