"""
Order endpoints: snapshot the cart into a PENDING order, list and inspect orders.
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params, require_user
from domain import serializers
from domain.errors import EmptyCartError
from domain.responses import paginated_response, success_response
from services import cart_service, order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method: str = Field(..., min_length=1, max_length=20, alias="paymentMethod")


@router.post("", status_code=201)
async def create_order(
    request: CreateOrderRequest,
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create an order from the current cart.

    The cart is left intact until the payment completes, so an abandoned
    checkout can simply be retried.
    """
    lines = await cart_service.list_cart(db, user_id=user_id)
    if not lines:
        raise EmptyCartError()

    order = await order_service.create_order(
        db, user_id=user_id, cart_lines=lines, payment_method=request.payment_method
    )
    await db.commit()
    order = await order_service.get_order(db, order_id=order.id)
    return success_response(data=serializers.order(order))


@router.get("")
async def list_orders(
    user_id: int = Depends(require_user),
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_user_orders(
        db, user_id=user_id, limit=page["limit"], offset=page["offset"]
    )
    return paginated_response(
        [serializers.order(o) for o in orders],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user_id: int = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order(db, order_id=order_id, user_id=user_id)
    return success_response(data=serializers.order(order))
