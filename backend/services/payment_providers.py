"""
Payment provider gateways: Stripe Checkout and PayPal Orders v2.

Both providers sit behind one shape (PaymentGateway):
    initiate(order)                         -> CheckoutSession
    capture(order, reference)               -> ProviderEvent   (redirect channel)
    verify_and_parse_callback(body, headers) -> ProviderEvent  (webhook channel)

Only session creation and signature verification differ per provider; the
resulting ProviderEvent is reconciled by services/payment_service.py the same
way regardless of origin.

Security:
    - Webhooks are verified before the payload is interpreted; a bad or
      missing signature raises ProviderVerificationError and nothing else runs.
    - Verification fails closed when the provider secret is not configured.
    - Every outbound call is bounded by settings.provider_timeout_seconds and is
      never retried here; providers retry webhooks themselves and the
      reconciler is idempotent.
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Mapping

import httpx
import stripe

from config import Settings
from db_models import Order
from domain.constants import CURRENCY
from domain.enums import PaymentProvider
from domain.errors import NotFoundError, ProviderError, ProviderVerificationError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    IGNORED = "IGNORED"


@dataclass
class CheckoutSession:
    provider: str
    reference: str
    redirect_url: str | None = None


@dataclass
class ProviderEvent:
    provider: str
    kind: EventKind
    order_id: int | None = None
    transaction_id: str | None = None
    amount_cents: int | None = None
    reason: str | None = None
    event_type: str | None = None


def cents_to_decimal(amount_cents: int) -> str:
    """2500 -> '25.00'"""
    return str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))


def decimal_to_cents(value) -> int:
    """'25.00' -> 2500"""
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_order_id(raw) -> int | None:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _line_name(item) -> str:
    return item.product.exam_name if item.product else f"Product {item.product_id}"


class PaymentGateway(ABC):
    """Common capability implemented by every payment provider."""

    name: str

    @abstractmethod
    async def initiate(self, order: Order) -> CheckoutSession:
        ...

    @abstractmethod
    async def capture(self, order: Order, reference: str) -> ProviderEvent:
        ...

    @abstractmethod
    async def verify_and_parse_callback(self, payload: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        ...

    async def aclose(self) -> None:
        """Release clients the gateway owns. Shared clients are closed by the app."""


# ════════════════════════════════════════════════════════════════════
# Stripe
# ════════════════════════════════════════════════════════════════════


class StripeGateway(PaymentGateway):
    """
    Stripe Checkout Sessions.

    Each gateway owns a StripeClient instead of configuring the stripe module
    globally, so several gateways (or tests) can coexist in one process.
    Requests go out through the SDK's async httpx transport: the transport
    timeout bounds the HTTP request itself and wait_for bounds the whole call,
    so a cancelled call holds no thread or socket afterwards.
    """

    name = PaymentProvider.STRIPE.value

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        public_base_url: str,
        timeout: float,
        client: stripe.StripeClient | None = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout = timeout
        self._http_client: stripe.HTTPXClient | None = None
        self.client = client
        if self.client is None and secret_key:
            self._http_client = stripe.HTTPXClient(timeout=timeout)
            self.client = stripe.StripeClient(
                secret_key,
                http_client=self._http_client,
                max_network_retries=0,
            )

    async def _call(self, method: str, *args, **kwargs):
        if self.client is None:
            raise ProviderError(self.name, "Stripe is not configured")
        call = getattr(self.client.v1.checkout.sessions, method)
        try:
            return await asyncio.wait_for(call(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Stripe checkout.sessions.{method} timed out after {self.timeout}s")
            raise ProviderError(self.name, "Stripe request timed out")
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed: {type(e).__name__}: {e}")
            raise ProviderError(self.name, "Stripe request failed")

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()

    async def initiate(self, order: Order) -> CheckoutSession:
        line_items = [
            {
                "price_data": {
                    "currency": CURRENCY,
                    "product_data": {
                        "name": _line_name(item),
                        "description": (item.product.exam_code if item.product else None) or "Exam preparation bundle",
                    },
                    "unit_amount": item.unit_price_cents,
                },
                "quantity": item.quantity,
            }
            for item in order.items
        ]
        session = await self._call(
            "create_async",
            {
                "mode": "payment",
                "payment_method_types": ["card"],
                "line_items": line_items,
                "success_url": (
                    f"{self.public_base_url}/payment/success"
                    f"?session_id={{CHECKOUT_SESSION_ID}}&order_id={order.id}"
                ),
                "cancel_url": f"{self.public_base_url}/checkout",
                "client_reference_id": str(order.id),
                "metadata": {"order_id": str(order.id)},
            },
            {"idempotency_key": f"checkout_order_{order.id}"},
        )
        logger.info(f"Stripe session {session['id']} created for order {order.id}")
        return CheckoutSession(provider=self.name, reference=session["id"], redirect_url=session["url"])

    def _session_event(self, session: Mapping, event_type: str | None = None) -> ProviderEvent:
        metadata = session["metadata"] or {}
        order_id = _parse_order_id(metadata["order_id"] if "order_id" in metadata else None)
        amount_total = session["amount_total"] if "amount_total" in session else None

        if session["payment_status"] in ("paid", "no_payment_required"):
            return ProviderEvent(
                provider=self.name,
                kind=EventKind.SUCCEEDED,
                order_id=order_id,
                transaction_id=session["payment_intent"] or session["id"],
                amount_cents=amount_total,
                event_type=event_type,
            )
        return ProviderEvent(
            provider=self.name,
            kind=EventKind.IGNORED,
            order_id=order_id,
            reason=f"payment_status={session['payment_status']}",
            event_type=event_type,
        )

    async def capture(self, order: Order, reference: str) -> ProviderEvent:
        """Redirect channel: re-read the session from Stripe; never trust the browser."""
        session = await self._call("retrieve_async", reference)
        event = self._session_event(session, event_type="redirect")
        if event.order_id != order.id:
            raise ProviderVerificationError(
                self.name,
                "Checkout session does not belong to this order",
                details={"order_id": order.id},
            )
        return event

    async def verify_and_parse_callback(self, payload: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured: rejecting webhook")
            raise ProviderVerificationError(self.name)

        signature = headers.get("stripe-signature", "")
        if not signature:
            logger.warning("Stripe webhook received without signature header")
            raise ProviderVerificationError(self.name)

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature invalid: {e}")
            raise ProviderVerificationError(self.name)
        except ValueError as e:
            logger.warning(f"Stripe webhook payload unreadable: {e}")
            raise ProviderVerificationError(self.name, "Invalid webhook payload")

        event = json.loads(payload)
        event_type = event.get("type", "")
        obj = event.get("data", {}).get("object", {})

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return self._session_event(obj, event_type=event_type)

        if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
            return ProviderEvent(
                provider=self.name,
                kind=EventKind.FAILED,
                order_id=_parse_order_id((obj.get("metadata") or {}).get("order_id")),
                reason="Payment failed or expired",
                event_type=event_type,
            )

        logger.info(f"Unhandled Stripe event type: {event_type}")
        return ProviderEvent(provider=self.name, kind=EventKind.IGNORED, event_type=event_type)


# ════════════════════════════════════════════════════════════════════
# PayPal
# ════════════════════════════════════════════════════════════════════


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2 over REST with client-credentials OAuth."""

    name = PaymentProvider.PAYPAL.value

    _verify_headers = {
        "auth_algo": "paypal-auth-algo",
        "cert_url": "paypal-cert-url",
        "transmission_id": "paypal-transmission-id",
        "transmission_sig": "paypal-transmission-sig",
        "transmission_time": "paypal-transmission-time",
    }

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        api_base: str,
        public_base_url: str,
        http_client: httpx.AsyncClient,
        timeout: float,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.api_base = api_base.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")
        self.http = http_client
        self.timeout = timeout
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, f"{self.api_base}{path}", timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"PayPal {method} {path} failed: {type(e).__name__}: {e}")
            raise ProviderError(self.name, "PayPal request failed")

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not (self.client_id and self.client_secret):
            raise ProviderError(self.name, "PayPal is not configured")

        resp = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if resp.status_code != 200:
            logger.error(f"PayPal OAuth returned {resp.status_code}")
            raise ProviderError(self.name, "PayPal authentication failed")
        body = resp.json()
        self._token = body["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 0)) - 60)
        return self._token

    async def _authed(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        return await self._request(method, path, headers=headers, **kwargs)

    async def initiate(self, order: Order) -> CheckoutSession:
        currency = CURRENCY.upper()
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(order.id),
                    "custom_id": str(order.id),
                    "amount": {
                        "currency_code": currency,
                        "value": cents_to_decimal(order.total_cents),
                        "breakdown": {
                            "item_total": {"currency_code": currency, "value": cents_to_decimal(order.total_cents)},
                        },
                    },
                    "items": [
                        {
                            "name": _line_name(item)[:127],
                            "quantity": str(item.quantity),
                            "unit_amount": {"currency_code": currency, "value": cents_to_decimal(item.unit_price_cents)},
                            "category": "DIGITAL_GOODS",
                        }
                        for item in order.items
                    ],
                }
            ],
            "application_context": {
                "return_url": f"{self.public_base_url}/payment/success?order_id={order.id}",
                "cancel_url": f"{self.public_base_url}/checkout",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        resp = await self._authed(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": f"checkout-order-{order.id}"},
        )
        if resp.status_code not in (200, 201):
            logger.error(f"PayPal order creation for order {order.id} returned {resp.status_code}: {resp.text[:200]}")
            raise ProviderError(self.name, "PayPal order creation failed")

        data = resp.json()
        approve = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info(f"PayPal order {data['id']} created for order {order.id}")
        return CheckoutSession(provider=self.name, reference=data["id"], redirect_url=approve)

    async def capture(self, order: Order, reference: str) -> ProviderEvent:
        resp = await self._authed(
            "POST",
            f"/v2/checkout/orders/{reference}/capture",
            json={},
            headers={"Prefer": "return=representation", "PayPal-Request-Id": f"capture-order-{order.id}"},
        )

        if resp.status_code == 422:
            # Business rejection (e.g. INSTRUMENT_DECLINED, ORDER_NOT_APPROVED)
            issue = (resp.json().get("details") or [{}])[0].get("issue", "UNPROCESSABLE_ENTITY")
            if issue == "ORDER_ALREADY_CAPTURED":
                return await self._lookup_captured(order, reference)
            return ProviderEvent(provider=self.name, kind=EventKind.FAILED, order_id=order.id, reason=issue, event_type="capture")

        if resp.status_code not in (200, 201):
            logger.error(f"PayPal capture for order {order.id} returned {resp.status_code}: {resp.text[:200]}")
            raise ProviderError(self.name, "PayPal capture failed")

        return self._capture_event(order, resp.json())

    async def _lookup_captured(self, order: Order, reference: str) -> ProviderEvent:
        resp = await self._authed("GET", f"/v2/checkout/orders/{reference}")
        if resp.status_code != 200:
            raise ProviderError(self.name, "PayPal order lookup failed")
        return self._capture_event(order, resp.json())

    def _capture_event(self, order: Order, data: dict) -> ProviderEvent:
        units = data.get("purchase_units") or [{}]
        unit = units[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else {}
        custom_id = _parse_order_id(unit.get("custom_id") or capture.get("custom_id"))

        if custom_id != order.id:
            raise ProviderVerificationError(
                self.name,
                "PayPal order does not belong to this order",
                details={"order_id": order.id},
            )

        if data.get("status") == "COMPLETED" and capture.get("status") == "COMPLETED":
            return ProviderEvent(
                provider=self.name,
                kind=EventKind.SUCCEEDED,
                order_id=order.id,
                transaction_id=capture["id"],
                amount_cents=decimal_to_cents(capture["amount"]["value"]) if capture.get("amount") else None,
                event_type="capture",
            )
        if capture.get("status") in ("DECLINED", "FAILED"):
            return ProviderEvent(
                provider=self.name,
                kind=EventKind.FAILED,
                order_id=order.id,
                reason=f"capture {capture.get('status')}",
                event_type="capture",
            )
        return ProviderEvent(
            provider=self.name,
            kind=EventKind.IGNORED,
            order_id=order.id,
            reason=f"status={data.get('status')}",
            event_type="capture",
        )

    async def _verify_signature(self, event: dict, headers: Mapping[str, str]) -> bool:
        fields = {key: headers.get(header, "") for key, header in self._verify_headers.items()}
        if not all(fields.values()):
            logger.warning("PayPal webhook missing transmission headers")
            return False

        resp = await self._authed(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={**fields, "webhook_id": self.webhook_id, "webhook_event": event},
        )
        if resp.status_code != 200:
            logger.warning(f"PayPal signature verification returned {resp.status_code}")
            return False
        return resp.json().get("verification_status") == "SUCCESS"

    async def verify_and_parse_callback(self, payload: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        if not self.webhook_id:
            logger.error("PAYPAL_WEBHOOK_ID not configured: rejecting webhook")
            raise ProviderVerificationError(self.name)

        try:
            event = json.loads(payload)
        except ValueError:
            raise ProviderVerificationError(self.name, "Invalid webhook payload")

        if not await self._verify_signature(event, headers):
            raise ProviderVerificationError(self.name)

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        order_id = _parse_order_id(resource.get("custom_id"))

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            amount = resource.get("amount") or {}
            return ProviderEvent(
                provider=self.name,
                kind=EventKind.SUCCEEDED,
                order_id=order_id,
                transaction_id=resource.get("id"),
                amount_cents=decimal_to_cents(amount["value"]) if "value" in amount else None,
                event_type=event_type,
            )
        if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
            return ProviderEvent(
                provider=self.name,
                kind=EventKind.FAILED,
                order_id=order_id,
                reason=f"PayPal {event_type}",
                event_type=event_type,
            )

        logger.info(f"Unhandled PayPal event type: {event_type}")
        return ProviderEvent(provider=self.name, kind=EventKind.IGNORED, order_id=order_id, event_type=event_type)


# ════════════════════════════════════════════════════════════════════
# Registry
# ════════════════════════════════════════════════════════════════════


class GatewayRegistry:
    """Provider tag -> gateway. Built once per app and injected into routes."""

    def __init__(self, gateways: dict[str, PaymentGateway]):
        self._gateways = dict(gateways)

    def get(self, provider: str) -> PaymentGateway:
        gateway = self._gateways.get((provider or "").lower())
        if gateway is None:
            raise NotFoundError("Payment provider", provider)
        return gateway

    def names(self) -> list[str]:
        return sorted(self._gateways)

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            await gateway.aclose()


def build_gateways(settings: Settings, http_client: httpx.AsyncClient) -> GatewayRegistry:
    gateways: dict[str, PaymentGateway] = {}
    enabled = settings.payment_providers_list
    if PaymentProvider.STRIPE.value in enabled:
        gateways[PaymentProvider.STRIPE.value] = StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            public_base_url=settings.public_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    if PaymentProvider.PAYPAL.value in enabled:
        gateways[PaymentProvider.PAYPAL.value] = PayPalGateway(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            api_base=settings.paypal_api_base,
            public_base_url=settings.public_base_url,
            http_client=http_client,
            timeout=settings.provider_timeout_seconds,
        )
    logger.info(f"Payment gateways enabled: {', '.join(gateways) or 'none'}")
    return GatewayRegistry(gateways)
