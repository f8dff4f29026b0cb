"""
Download endpoints: entitlement listing and token redemption.

GET /download/{token} is public: the 256-bit token is the capability. It is
rate limited per IP across all tokens.
"""
import logging

from fastapi import APIRouter, Depends, Path
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import get_content_generator, require_user
from domain import serializers
from domain.responses import success_response
from middleware.rate_limit import rate_limit
from services import download_service
from services.content_service import ContentGenerator

logger = logging.getLogger(__name__)
router = APIRouter(tags=["downloads"])


@router.get("/downloads")
async def list_downloads(
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    downloads = await download_service.list_user_downloads(db, user_id=user_id)
    return success_response(data=[serializers.download(d) for d in downloads])


@router.post("/downloads/{download_id}/deactivate")
async def deactivate_download(
    download_id: int,
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    download = await download_service.deactivate_download(db, download_id=download_id, user_id=user_id)
    await db.commit()
    return success_response(data=serializers.download(download))


@router.get("/download/{token}")
async def redeem_download(
    token: str = Path(..., min_length=1, max_length=128),
    generator: ContentGenerator = Depends(get_content_generator),
    db: AsyncSession = Depends(get_db),
    _=Depends(rate_limit(30, 60, scope="download")),
):
    result = await download_service.redeem(db, token=token, generator=generator)
    artifact = result.artifact
    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "X-Downloads-Remaining": str(result.download.max_downloads - result.download.download_count),
        },
    )
