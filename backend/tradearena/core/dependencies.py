"""
FastAPI dependencies: caller identity and the price oracle.

Authentication itself lives outside this service. The gateway in front of it
forwards the authenticated user id in X-User-Id; admin calls carry the shared
X-Admin-Key.
"""

import hmac
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, status

from tradearena.core.config import settings
from tradearena.core.redis import get_redis_client
from tradearena.services.price_oracle import PriceOracle, RedisPriceOracle, StaticPriceOracle

_static_oracle = StaticPriceOracle()


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> UUID:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header",
        )


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def get_static_oracle() -> StaticPriceOracle:
    return _static_oracle


def get_price_oracle() -> PriceOracle:
    """Redis-backed quotes when Redis is up, the static table otherwise"""
    redis = get_redis_client()
    if redis:
        return RedisPriceOracle(redis, fallback=_static_oracle)
    return _static_oracle
