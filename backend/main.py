import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import PyMongoError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from config import settings
from core.exceptions import DispatchError, StorageUnavailable
from database import connect_db, close_db

# Routers
from routers import orders, deliveries, agents, admin, tracking

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


async def _expire_stale_pending_orders() -> None:
    """
    Every SWEEP_INTERVAL_SECONDS: cancels orders nobody picked up within
    PENDING_ORDER_TIMEOUT_MINUTES.
    """
    from services.status_service import expire_stale_pending_orders

    while True:
        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)
        try:
            expired = await expire_stale_pending_orders(settings.PENDING_ORDER_TIMEOUT_MINUTES)
            if expired:
                logger.info(f"Idle sweep: {expired} pending order(s) expired")
        except Exception as exc:
            logger.error(f"Idle sweep failed: {exc}")


async def _settle_pending_effects() -> None:
    """Every SWEEP_INTERVAL_SECONDS: replays order follow-up writes a storage failure left queued."""
    from services.order_service import settle_pending_effects

    while True:
        await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)
        try:
            await settle_pending_effects()
        except Exception as exc:
            logger.error(f"Effect replay failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    tasks = [asyncio.create_task(_settle_pending_effects())]
    if settings.PENDING_ORDER_TIMEOUT_MINUTES > 0:
        tasks.append(asyncio.create_task(_expire_stale_pending_orders()))
    logger.info("Dropee Dispatch API started")
    yield
    # Shutdown
    for task in tasks:
        task.cancel()
    await close_db()
    logger.info("Dropee Dispatch API stopped")


app = FastAPI(
    title="Dropee Dispatch API",
    description="Delivery order dispatch, negotiation and live tracking",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code, "retryable": exc.retryable},
    )


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Storage error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=StorageUnavailable.status_code,
        content={
            "detail":    StorageUnavailable.default_detail,
            "code":      StorageUnavailable.code,
            "retryable": True,
        },
    )


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [settings.BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(deliveries.router, prefix="/api/deliveries", tags=["Deliveries"])
app.include_router(agents.router, prefix="/api/agents", tags=["Agents"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
app.include_router(tracking.router, prefix="/ws", tags=["Live feed"])

# Proof-of-delivery images
_media_dir = Path(settings.PROOF_UPLOAD_DIR)
_media_dir.mkdir(parents=True, exist_ok=True)
app.mount("/media/delivery-proofs", StaticFiles(directory=str(_media_dir)), name="delivery-proofs")


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "dropee-dispatch", "version": "1.0.0"}
