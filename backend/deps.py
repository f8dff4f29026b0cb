"""
Shared FastAPI dependencies.

Centralizes common dependencies so routers import from a single place
(DB session, buyer auth, payment gateways, content generator, pagination).
"""

from __future__ import annotations

from typing import TypedDict

import httpx
from fastapi import Depends, Path, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from db_models import User
from domain.errors import UnauthorizedError
from middleware.auth import get_current_user_id
from services.content_service import ContentGenerator, SamplePdfGenerator
from services.payment_providers import GatewayRegistry, PaymentGateway, build_gateways


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


async def require_user(
    user_id: int | None = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> int:
    """
    Require an authenticated buyer.

    - Anonymous requests get UnauthorizedError (401).
    - The token subject must still map to a User row.
    """
    if user_id is None:
        raise UnauthorizedError()
    q = await db.execute(select(User.id).where(User.id == user_id))
    if q.scalar_one_or_none() is None:
        raise UnauthorizedError("Account not found for access token.")
    return user_id


def get_gateway_registry(request: Request) -> GatewayRegistry:
    """
    Registry built in the app lifespan. Falls back to building one lazily
    when the app runs without lifespan events (e.g. bare ASGI transports).
    """
    registry = getattr(request.app.state, "gateways", None)
    if registry is None:
        http_client = getattr(request.app.state, "http_client", None)
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
            request.app.state.http_client = http_client
        registry = build_gateways(settings, http_client)
        request.app.state.gateways = registry
    return registry


def get_gateway(
    provider: str = Path(..., min_length=1, max_length=20),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> PaymentGateway:
    """Resolve the `{provider}` path segment to an enabled gateway (404 otherwise)."""
    return registry.get(provider)


_default_generator = SamplePdfGenerator()


def get_content_generator() -> ContentGenerator:
    return _default_generator
