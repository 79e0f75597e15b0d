# app/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse

from app.api.endpoints import payments
from app.api.models.payment import HealthResponse
from app.core.config import Settings, settings
from app.facilitator.errors import FacilitatorError
from app.facilitator.service import FacilitatorService
from app.facilitator.store import InMemoryPaymentRequestStore
from app.facilitator.verification import AmountTolerance, VerificationEngine
from app.services.chain_factory import ChainAdapterFactory
from app.x402.facilitator_client import FacilitatorClient
from app.x402.middleware import ChallengeMiddleware, ProtectedRoute, error_response

# Configure basic logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def build_facilitator(config: Settings) -> FacilitatorService:
    """Wire adapter, store, engine and service from configuration."""
    adapter = ChainAdapterFactory.create(config.FACILITATOR_CHAIN, config)
    store = InMemoryPaymentRequestStore(retention_seconds=config.FACILITATOR_RECORD_RETENTION_SECONDS)
    engine = VerificationEngine(
        store=store,
        adapter=adapter,
        tolerance=AmountTolerance(bps=config.FACILITATOR_AMOUNT_TOLERANCE_BPS),
    )
    return FacilitatorService(
        store=store,
        engine=engine,
        adapter=adapter,
        memo_prefix=config.FACILITATOR_MEMO_PREFIX,
        payment_timeout_seconds=config.FACILITATOR_PAYMENT_TIMEOUT_SECONDS,
    )


def build_protected_routes(config: Settings) -> List[ProtectedRoute]:
    routes = []
    for route in config.PAYWALL_ROUTES:
        seller = route.seller or config.PAYWALL_SELLER_ADDRESS
        if not seller:
            raise ValueError(f"No seller configured for protected route {route.method} {route.path}")
        routes.append(ProtectedRoute(
            method=route.method,
            path=route.path,
            amount=route.amount,
            token=route.token,
            seller=seller,
            token_mint=route.token_mint,
            description=route.description,
        ))
    return routes


async def _sweep_periodically(facilitator: FacilitatorService, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(facilitator.sweep_expired)
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}", exc_info=True)


def create_app(
    facilitator: Optional[FacilitatorService] = None,
    routes: Optional[List[ProtectedRoute]] = None,
    config: Settings = settings,
) -> FastAPI:
    """
    Build the facilitator application.

    ``facilitator`` replaces the configured service (tests inject one backed
    by a fake ledger). ``routes`` enables the challenge middleware for the
    given protected routes; by default they come from PAYWALL_ROUTES.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = facilitator or build_facilitator(config)
        app.state.facilitator = service
        sweeper = asyncio.create_task(
            _sweep_periodically(service, config.FACILITATOR_SWEEP_INTERVAL_SECONDS)
        )
        logger.info(f"{config.PROJECT_NAME} started on {service.adapter.chain_name}")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            service.close()
            logger.info("Facilitator stopped")

    app = FastAPI(title=config.PROJECT_NAME, lifespan=lifespan)

    app.include_router(payments.router, prefix="/payment", tags=["payment"])

    @app.get("/health", response_model=HealthResponse, summary="Health Check", tags=["default"])
    def health(request: Request) -> HealthResponse:
        """Liveness only; does not touch the ledger."""
        snapshot = request.app.state.facilitator.health()
        return HealthResponse(service=config.PROJECT_NAME, **snapshot)

    @app.exception_handler(FacilitatorError)
    async def facilitator_error_handler(request: Request, exc: FacilitatorError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.reason}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.reason}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request",
                "reason": "invalid_request",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "reason": "internal_error"},
        )

    if routes is None:
        routes = build_protected_routes(config)
    if routes:
        remote = None
        if config.PAYWALL_FACILITATOR_URL:
            remote = FacilitatorClient(config.PAYWALL_FACILITATOR_URL)
        app.add_middleware(
            ChallengeMiddleware,
            routes=routes,
            facilitator_url=config.PAYWALL_FACILITATOR_URL or config.FACILITATOR_PUBLIC_URL,
            facilitator=remote,
        )

    return app


app = create_app()
