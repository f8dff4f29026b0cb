"""
Download Service: time- and count-limited download entitlements.

Validity: 15 days from issuance
Limit: 10 redemptions per entitlement

Issuance:
    - One entitlement per order line, minted inside the order-completion
      transaction (services/payment_service.py). Any failure here aborts
      that whole transaction.

Redemption:
    - A single conditional UPDATE increments the counter and, on the last
      allowed redemption, deactivates the row. Two concurrent redemptions can
      never both take the final slot.
    - Unknown, expired and revoked tokens all answer NotFoundError so a token's
      history is not observable from outside.
"""
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update, case, func
from sqlalchemy.ext.asyncio import AsyncSession

from database import run_in_transaction
from db_models import Download
from domain.constants import (
    DOWNLOAD_MAX_REDEMPTIONS,
    DOWNLOAD_TOKEN_BYTES,
    DOWNLOAD_VALIDITY_DAYS,
)
from domain.errors import LimitExceededError, NotFoundError
from services.async_executor import run_blocking
from services.content_service import ContentArtifact, ContentGenerator

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    download: Download
    artifact: ContentArtifact


def generate_token() -> str:
    """256 bits from the OS CSPRNG, hex-encoded."""
    return secrets.token_hex(DOWNLOAD_TOKEN_BYTES)


def remaining_days(expires_at: datetime, now: datetime | None = None) -> int:
    """Whole days left before expiry, rounded up, never negative."""
    now = now or datetime.utcnow()
    seconds = (expires_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


async def issue_download(
    db: AsyncSession,
    *,
    user_id: int,
    product_id: int,
    order_id: int | None = None,
) -> Download:
    """
    Mint a fresh entitlement. Flushes so constraint violations surface here
    and abort the caller's transaction.
    """
    now = datetime.utcnow()
    download = Download(
        user_id=user_id,
        product_id=product_id,
        order_id=order_id,
        download_token=generate_token(),
        expires_at=now + timedelta(days=DOWNLOAD_VALIDITY_DAYS),
        download_count=0,
        max_downloads=DOWNLOAD_MAX_REDEMPTIONS,
        is_active=True,
        created_at=now,
    )
    db.add(download)
    await db.flush()
    logger.info(
        f"Download issued: #{download.id} user {user_id} product {product_id} "
        f"(order {order_id}, expires {download.expires_at.isoformat()})"
    )
    return download


async def _load_by_token(db: AsyncSession, token: str) -> Download | None:
    res = await db.execute(
        select(Download)
        .where(Download.download_token == token)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def _claim_redemption(db: AsyncSession, token: str) -> Download:
    """Consume one redemption slot or raise the matching error."""
    now = datetime.utcnow()
    next_count = Download.download_count + 1
    res = await db.execute(
        update(Download)
        .where(
            Download.download_token == token,
            Download.is_active == True,
            Download.expires_at > now,
            Download.download_count < Download.max_downloads,
        )
        .values(
            download_count=next_count,
            is_active=case(
                (next_count >= Download.max_downloads, False),
                else_=Download.is_active,
            ),
            last_downloaded_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    download = await _load_by_token(db, token)
    if res.rowcount == 1:
        return download

    # Lost the race or never eligible; unknown, expired and revoked look the same.
    if download is None or download.expires_at <= now:
        raise NotFoundError("Download")
    if download.download_count >= download.max_downloads:
        raise LimitExceededError(download.download_count, download.max_downloads)
    raise NotFoundError("Download")


async def redeem(
    db: AsyncSession,
    *,
    token: str,
    generator: ContentGenerator,
) -> RedemptionResult:
    """
    Redeem a download token and produce the product's artifact.

    The counter change is committed before the artifact is produced; content
    generation is side-effect free.
    """
    download = await run_in_transaction(
        db,
        lambda: _claim_redemption(db, token),
        label=f"redeem {token[:8]}",
    )
    logger.info(
        f"Download #{download.id} redeemed ({download.download_count}/{download.max_downloads})"
        + ("" if download.is_active else ", now exhausted")
    )

    artifact = await run_blocking(generator.generate, download.product)
    return RedemptionResult(download=download, artifact=artifact)


async def list_user_downloads(db: AsyncSession, *, user_id: int) -> list[Download]:
    res = await db.execute(
        select(Download)
        .where(Download.user_id == user_id)
        .order_by(Download.created_at.desc(), Download.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def list_order_downloads(db: AsyncSession, *, order_id: int) -> list[Download]:
    res = await db.execute(
        select(Download)
        .where(Download.order_id == order_id)
        .order_by(Download.id)
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def count_order_downloads(db: AsyncSession, *, order_id: int) -> int:
    res = await db.execute(
        select(func.count(Download.id)).where(Download.order_id == order_id)
    )
    return res.scalar() or 0


async def deactivate_download(db: AsyncSession, *, download_id: int, user_id: int | None = None) -> Download:
    """Revoke an entitlement. The row is kept; only is_active flips."""
    query = update(Download).where(Download.id == download_id)
    if user_id is not None:
        query = query.where(Download.user_id == user_id)
    res = await db.execute(
        query.values(is_active=False).execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise NotFoundError("Download", str(download_id))

    row = await db.execute(
        select(Download).where(Download.id == download_id).execution_options(populate_existing=True)
    )
    download = row.scalar_one()
    logger.info(f"Download #{download_id} deactivated")
    return download
