"""
Order service: snapshots a cart into an immutable order.

The unit price of every line is copied from the product at checkout time and
the total is computed once here. Nothing downstream re-reads catalog prices
or recomputes the total. Status changes live in services/payment_service.py.
"""
import logging
from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import CartItem, Order, OrderItem
from domain.enums import OrderStatus, PaymentProvider
from domain.errors import ConflictError, EmptyCartError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def normalize_payment_method(payment_method: str) -> str:
    """Validate a provider tag ("stripe" | "paypal") and return it lower-cased."""
    tag = (payment_method or "").strip().lower()
    try:
        return PaymentProvider(tag).value
    except ValueError:
        allowed = ", ".join(p.value for p in PaymentProvider)
        raise ValidationError(f"Unsupported payment method '{payment_method}' (expected one of: {allowed})", field="paymentMethod")


async def create_order(
    db: AsyncSession,
    *,
    user_id: int,
    cart_lines: list[CartItem],
    payment_method: str,
) -> Order:
    """
    Persist an order and its lines from the given cart lines.

    Order and lines go out in one flush; the caller commits. The cart itself
    is left alone until the order completes.
    """
    if not cart_lines:
        raise EmptyCartError()

    method = normalize_payment_method(payment_method)

    items = [
        OrderItem(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price_cents=line.product.price_cents,
        )
        for line in cart_lines
    ]
    total_cents = sum(item.line_total_cents for item in items)

    order = Order(
        user_id=user_id,
        total_cents=total_cents,
        status=OrderStatus.PENDING.value,
        payment_method=method,
        created_at=datetime.utcnow(),
        items=items,
    )
    db.add(order)
    await db.flush()

    logger.info(
        f"Order {order.id} created for user {user_id}: "
        f"{len(items)} line(s), total {total_cents} cents via {method}"
    )
    return order


async def get_order(db: AsyncSession, *, order_id: int, user_id: int | None = None) -> Order:
    """
    Load an order (with lines). When `user_id` is given, orders owned by
    someone else are reported as missing.
    """
    query = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    res = await db.execute(query)
    order = res.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    return order


async def list_user_orders(
    db: AsyncSession,
    *,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    """Orders for a user, newest first, plus the total count."""
    res = await db.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    orders = list(res.scalars().all())

    count_res = await db.execute(
        select(func.count(Order.id)).where(Order.user_id == user_id)
    )
    return orders, count_res.scalar() or 0


async def record_checkout_reference(db: AsyncSession, *, order_id: int, reference: str) -> bool:
    """
    Remember the provider session reference for a still-PENDING order.

    Returns False when the order already left PENDING.
    """
    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
        .values(checkout_reference=reference)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def require_pending(order: Order) -> None:
    """Reject checkout initiation for orders that are already settled."""
    if order.status != OrderStatus.PENDING.value:
        raise ConflictError(
            f"Order {order.id} is {order.status}; checkout is only possible while PENDING",
            details={"order_id": order.id, "status": order.status},
        )
