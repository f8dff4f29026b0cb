"""
Payment service: reconciles provider confirmations with order state.

Two independent channels report the outcome of the same checkout:
    1. the buyer's browser returning from the provider (redirect / capture)
    2. the provider's asynchronous webhook
Either may arrive first, both may arrive together, and providers retry
webhooks. Every entry point here is therefore idempotent.

State machine:
    PENDING --confirm_success--> COMPLETED
    PENDING --confirm_failure--> CANCELLED
Both end states are terminal.

The PENDING -> terminal step is a conditional UPDATE (... WHERE status =
'PENDING'); only the caller whose update hits a row applies side effects.
For COMPLETED those side effects (payment record, one download per order line,
cart clear, confirmation email) share one DB transaction with the status
change, so a failure anywhere leaves the order PENDING with nothing issued.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import run_in_transaction
from db_models import Download, EmailNotification, Order, Payment, User
from domain.constants import NOTIFICATION_ORDER_CONFIRMATION, STORE_NAME
from domain.enums import NotificationStatus, OrderStatus, PaymentProvider, PaymentStatus
from domain.errors import ConflictError
from services import cart_service, download_service, order_service

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationResult:
    order: Order
    already_processed: bool
    downloads: list[Download] = field(default_factory=list)


async def _transition(db: AsyncSession, order_id: int, target: OrderStatus, **values) -> bool:
    """PENDING -> target, only if still PENDING. True when this caller won."""
    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _queue_confirmation_email(db: AsyncSession, order: Order) -> None:
    res = await db.execute(select(User).where(User.id == order.user_id))
    user = res.scalar_one_or_none()
    if not user:
        logger.warning(f"Order {order.id}: no user row for {order.user_id}, skipping confirmation email")
        return
    db.add(
        EmailNotification(
            user_id=user.id,
            order_id=order.id,
            email=user.email,
            type=NOTIFICATION_ORDER_CONFIRMATION,
            subject=f"Order Confirmation - {STORE_NAME}",
            content=f"Thank you for your purchase! Your order #{order.id} has been confirmed.",
            status=NotificationStatus.PENDING.value,
        )
    )


async def confirm_success(
    db: AsyncSession,
    *,
    order_id: int,
    transaction_id: str,
    provider: str,
    amount_cents: int | None = None,
) -> ConfirmationResult:
    """
    Mark an order COMPLETED and provision its downloads.

    Idempotent:
      - Already COMPLETED -> returns the order unchanged (already_processed=True),
        whatever transaction id the repeat carries.
      - CANCELLED -> ConflictError; a cancelled order is never resurrected.

    `amount_cents`, when the provider reports it, must cover the frozen total.
    Commits (or rolls back) on its own; transient store errors retry the
    whole unit.
    """
    provider = order_service.normalize_payment_method(provider)

    async def _complete() -> ConfirmationResult:
        if amount_cents is not None:
            current = await order_service.get_order(db, order_id=order_id)
            if current.status == OrderStatus.PENDING.value and amount_cents < current.total_cents:
                raise ConflictError(
                    f"Captured amount does not cover order {order_id}",
                    details={"order_id": order_id, "expected_cents": current.total_cents, "captured_cents": amount_cents},
                )

        now = datetime.utcnow()
        won = await _transition(
            db,
            order_id,
            OrderStatus.COMPLETED,
            payment_reference=transaction_id,
            completed_at=now,
        )
        order = await order_service.get_order(db, order_id=order_id)

        if not won:
            if order.status == OrderStatus.COMPLETED.value:
                logger.warning(
                    f"Order {order_id} already COMPLETED; ignoring repeat confirmation "
                    f"({provider} {transaction_id})"
                )
                return ConfirmationResult(order=order, already_processed=True)
            raise ConflictError(
                f"Order {order_id} is {order.status} and cannot be completed",
                details={"order_id": order_id, "status": order.status},
            )

        db.add(
            Payment(
                order_id=order.id,
                amount_cents=order.total_cents,
                status=PaymentStatus.COMPLETED.value,
                provider=provider,
                stripe_id=transaction_id if provider == PaymentProvider.STRIPE.value else None,
                paypal_id=transaction_id if provider == PaymentProvider.PAYPAL.value else None,
                created_at=now,
            )
        )

        downloads = []
        for item in order.items:
            downloads.append(
                await download_service.issue_download(
                    db,
                    user_id=order.user_id,
                    product_id=item.product_id,
                    order_id=order.id,
                )
            )

        cleared = await cart_service.clear_cart(db, user_id=order.user_id)
        await _queue_confirmation_email(db, order)
        await db.flush()

        logger.info(
            f"Order {order.id} COMPLETED via {provider} ({transaction_id}): "
            f"{len(downloads)} download(s) issued, {cleared} cart line(s) cleared"
        )
        return ConfirmationResult(order=order, already_processed=False, downloads=downloads)

    return await run_in_transaction(db, _complete, label=f"complete order {order_id}")


async def confirm_failure(
    db: AsyncSession,
    *,
    order_id: int,
    reason: str | None = None,
    provider: str | None = None,
) -> ConfirmationResult:
    """
    Mark a PENDING order CANCELLED and record a FAILED zero-amount payment.

    No-op for orders already COMPLETED or CANCELLED. The cart is left intact
    so the buyer can check out again.
    """
    async def _cancel() -> ConfirmationResult:
        now = datetime.utcnow()
        won = await _transition(db, order_id, OrderStatus.CANCELLED, cancelled_at=now)
        order = await order_service.get_order(db, order_id=order_id)

        if not won:
            logger.warning(f"Order {order_id} already {order.status}; ignoring failure notice ({reason})")
            return ConfirmationResult(order=order, already_processed=True)

        db.add(
            Payment(
                order_id=order.id,
                amount_cents=0,
                status=PaymentStatus.FAILED.value,
                provider=provider or "unknown",
                failure_reason=reason,
                created_at=now,
            )
        )
        await db.flush()
        logger.info(f"Order {order_id} CANCELLED ({reason or 'no reason given'})")
        return ConfirmationResult(order=order, already_processed=False)

    return await run_in_transaction(db, _cancel, label=f"cancel order {order_id}")


async def list_order_payments(db: AsyncSession, *, order_id: int) -> list[Payment]:
    res = await db.execute(
        select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
    )
    return list(res.scalars().all())
