"""
Payment endpoints: provider checkout, redirect confirmation and webhooks.

Two channels report the same outcome and may race:
    POST /payments/{provider}/confirm   buyer's browser back from the provider
    POST /payments/{provider}/webhook   provider's signed server-to-server call
Both funnel into services/payment_service.py, which applies the order
transition exactly once.

Security:
    - Webhooks are verified by the gateway before the body is interpreted.
    - The redirect channel never trusts the browser: it re-reads the
      payment from the provider (capture) and checks it belongs to the order.
"""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import get_gateway, require_user
from domain import serializers
from domain.enums import OrderStatus
from domain.errors import ConflictError, NotFoundError, ProviderVerificationError, ValidationError
from domain.responses import success_response
from middleware.rate_limit import FailureBudget, failure_rate_limit
from services import download_service, order_service, payment_service
from services.payment_providers import EventKind, PaymentGateway, ProviderEvent

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: int = Field(..., gt=0, alias="orderId")


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: int = Field(..., gt=0, alias="orderId")
    reference: str | None = Field(default=None, min_length=1, max_length=255)


async def _apply_event(db: AsyncSession, event: ProviderEvent) -> payment_service.ConfirmationResult | None:
    """Route a provider event to the reconciler. IGNORED events change nothing."""
    if event.kind == EventKind.SUCCEEDED:
        return await payment_service.confirm_success(
            db,
            order_id=event.order_id,
            transaction_id=event.transaction_id,
            provider=event.provider,
            amount_cents=event.amount_cents,
        )
    if event.kind == EventKind.FAILED:
        return await payment_service.confirm_failure(
            db,
            order_id=event.order_id,
            reason=event.reason,
            provider=event.provider,
        )
    return None


@router.post("/{provider}/checkout")
async def start_checkout(
    request: CheckoutRequest,
    user_id: int = Depends(require_user),
    gateway: PaymentGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Open a provider checkout session for one of the buyer's PENDING orders."""
    order = await order_service.get_order(db, order_id=request.order_id, user_id=user_id)
    order_service.require_pending(order)
    if order.payment_method != gateway.name:
        raise ValidationError(
            f"Order {order.id} was placed for {order.payment_method}, not {gateway.name}",
            field="provider",
        )

    session = await gateway.initiate(order)
    await order_service.record_checkout_reference(db, order_id=order.id, reference=session.reference)
    await db.commit()

    return success_response(
        data={
            "orderId": order.id,
            "provider": session.provider,
            "reference": session.reference,
            "redirectUrl": session.redirect_url,
        }
    )


@router.post("/{provider}/confirm")
async def confirm_payment(
    request: ConfirmRequest,
    user_id: int = Depends(require_user),
    gateway: PaymentGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    Redirect-channel confirmation.

    Captures (PayPal) or re-reads (Stripe) the payment, then reconciles.
    A provider-declared failure cancels the order; an unsettled payment
    leaves it PENDING for the webhook to finish.
    """
    order = await order_service.get_order(db, order_id=request.order_id, user_id=user_id)
    if order.status == OrderStatus.COMPLETED.value:
        return success_response(data={"order": serializers.order(order), "alreadyProcessed": True})
    order_service.require_pending(order)

    reference = request.reference or order.checkout_reference
    if not reference:
        raise ValidationError("No checkout reference for this order", field="reference")

    event = await gateway.capture(order, reference)
    result = await _apply_event(db, event)

    if result is None:
        logger.info(f"Order {order.id}: {gateway.name} payment not settled yet ({event.reason})")
        return success_response(data={"order": serializers.order(order), "alreadyProcessed": False})

    downloads = await download_service.list_order_downloads(db, order_id=result.order.id)
    return success_response(
        data={
            "order": serializers.order(result.order),
            "alreadyProcessed": result.already_processed,
            "downloads": [serializers.download(d) for d in downloads],
        }
    )


@router.post("/{provider}/webhook")
async def provider_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
    budget: FailureBudget = Depends(failure_rate_limit(20, 60, scope="webhook")),
):
    """
    Signed provider callback.

    Always acknowledges once the signature checks out, so the provider stops
    retrying; repeats and races are absorbed by the reconciler. Only
    requests that fail verification count against the caller's rate limit.
    """
    payload = await request.body()
    try:
        event = await gateway.verify_and_parse_callback(payload, request.headers)
    except ProviderVerificationError:
        budget.record_failure()
        raise

    if event.kind == EventKind.IGNORED or event.order_id is None:
        logger.info(f"{gateway.name} webhook {event.event_type} acknowledged without action")
        return success_response(data={"received": True, "processed": False})

    try:
        result = await _apply_event(db, event)
    except (ConflictError, NotFoundError) as e:
        # Retrying cannot fix these; acknowledge and leave it to an operator.
        logger.error(f"{gateway.name} webhook {event.event_type} for order {event.order_id} rejected: {e.message}")
        return success_response(data={"received": True, "processed": False, "error": e.message})

    return success_response(
        data={
            "received": True,
            "processed": not result.already_processed,
            "orderId": result.order.id,
            "status": result.order.status,
        }
    )
