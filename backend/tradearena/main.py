"""
Trade Arena API

Contest lifecycle, entry fees, virtual trading and prize settlement behind
one FastAPI app. The contest scheduler runs inside the app unless disabled.
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.config import settings
from tradearena.core.database import SessionLocal, close_db, get_session, init_db
from tradearena.core.dependencies import get_price_oracle
from tradearena.core.errors import ArenaError
from tradearena.core.redis import close_redis, init_redis, redis_healthy
from tradearena.core.security import get_security_headers, limiter
from tradearena.services.scheduler import ContestScheduler

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ============================================================================
# BACKGROUND SCHEDULER
# ============================================================================

scheduler: Optional[ContestScheduler] = None


def scheduler_running() -> bool:
    return bool(scheduler and scheduler.running)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler

    logger.info(f"Starting Trade Arena API ({settings.ENVIRONMENT})")
    await init_db()

    if settings.REDIS_URL:
        try:
            await init_redis(settings.REDIS_URL)
            logger.info("Quote cache connected")
        except (RedisError, OSError) as e:
            logger.error(f"Quote cache unavailable, serving fallback prices: {e}")
    else:
        logger.warning("REDIS_URL not set, serving fallback prices only")

    if settings.SCHEDULER_ENABLED:
        scheduler = ContestScheduler(SessionLocal, oracle_factory=get_price_oracle)
        scheduler.start()
    else:
        logger.info("Contest scheduler disabled; sweeps must come from POST /admin/sweep")

    yield

    logger.info("Shutting down Trade Arena API")
    if scheduler:
        await scheduler.stop()
        scheduler = None
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ============================================================================
# APP
# ============================================================================

app = FastAPI(
    title="Trade Arena API",
    description="Virtual options trading contests with real-money entry and prizes",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id", "X-Admin-Key"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(get_security_headers())
    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(ArenaError)
async def arena_error_handler(request: Request, exc: ArenaError):
    """Rule violations are expected outcomes: 4xx with kind and context."""
    logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests", "error": "RateLimited", "limit": str(exc.detail)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    content = {"detail": "Internal server error"}
    if settings.DEBUG:
        content["type"] = type(exc).__name__
    return JSONResponse(status_code=500, content=content)


# ============================================================================
# SERVICE ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {
        "service": "Trade Arena API",
        "version": "1.0.0",
        "platform_fee_pct": settings.PLATFORM_FEE_PCT,
        "market_timezone": settings.MARKET_TIMEZONE,
        "trading_hours": f"{settings.TRADING_HOURS_START}-{settings.TRADING_HOURS_END}",
    }


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    try:
        await session.execute(text("SELECT 1"))
        database = "up"
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unreachable: {e}")
        database = "down"

    body = {
        "status": "healthy" if database == "up" else "unhealthy",
        "services": {
            "database": database,
            "quote_cache": "up" if await redis_healthy() else "down",
            "scheduler": "up" if scheduler_running() else "down",
        },
    }
    return JSONResponse(status_code=200 if database == "up" else 503, content=body)


# ============================================================================
# ROUTERS
# ============================================================================

from tradearena.api import admin, contests, trading, wallet  # noqa: E402

app.include_router(contests.router, prefix="/contests", tags=["Contests"])
app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(trading.router, prefix="/trading", tags=["Trading"])
app.include_router(admin.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tradearena.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
