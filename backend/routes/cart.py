"""
Cart endpoints: the authenticated buyer's cart ledger.
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import require_user
from domain import serializers
from domain.responses import success_response
from services import cart_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cart", tags=["cart"])


class AddToCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(..., gt=0, alias="productId")
    quantity: int = Field(1, ge=1, le=100)


class SetQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0, le=100)


async def _cart_body(db: AsyncSession, user_id: int) -> dict:
    lines = await cart_service.list_cart(db, user_id=user_id)
    return {
        "items": [serializers.cart_line(line) for line in lines],
        "totalCents": cart_service.cart_total_cents(lines),
        "itemCount": sum(line.quantity for line in lines),
    }


@router.get("")
async def get_cart(
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    return success_response(data=await _cart_body(db, user_id))


@router.post("")
async def add_to_cart(
    request: AddToCartRequest,
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Add a product, or bump its quantity if already in the cart."""
    await cart_service.add_to_cart(
        db, user_id=user_id, product_id=request.product_id, quantity=request.quantity
    )
    await db.commit()
    return success_response(data=await _cart_body(db, user_id))


@router.put("/{product_id}")
async def set_cart_quantity(
    product_id: int,
    request: SetQuantityRequest,
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Quantity 0 removes the line."""
    await cart_service.set_quantity(
        db, user_id=user_id, product_id=product_id, quantity=request.quantity
    )
    await db.commit()
    return success_response(data=await _cart_body(db, user_id))


@router.delete("/{product_id}")
async def remove_cart_line(
    product_id: int,
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    await cart_service.remove_from_cart(db, user_id=user_id, product_id=product_id)
    await db.commit()
    return success_response(data=await _cart_body(db, user_id))


@router.delete("")
async def clear_cart(
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    removed = await cart_service.clear_cart(db, user_id=user_id)
    await db.commit()
    return success_response(data={"removed": removed})
