"""
JSON shapes for ORM rows returned by the routes.

Kept out of routes/ so routers never import each other.
"""
from datetime import datetime
from typing import Any

from db_models import CartItem, Download, Order, Product
from services.download_service import remaining_days


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def product_summary(product: Product | None) -> dict[str, Any] | None:
    if product is None:
        return None
    return {
        "id": product.id,
        "examName": product.exam_name,
        "examCode": product.exam_code,
        "difficultyLevel": product.difficulty_level,
        "questionsCount": product.questions_count,
        "priceCents": product.price_cents,
    }


def cart_line(line: CartItem) -> dict[str, Any]:
    return {
        "productId": line.product_id,
        "quantity": line.quantity,
        "lineTotalCents": line.product.price_cents * line.quantity,
        "product": product_summary(line.product),
    }


def order(o: Order) -> dict[str, Any]:
    return {
        "id": o.id,
        "status": o.status,
        "totalCents": o.total_cents,
        "paymentMethod": o.payment_method,
        "paymentReference": o.payment_reference,
        "createdAt": _iso(o.created_at),
        "completedAt": _iso(o.completed_at),
        "cancelledAt": _iso(o.cancelled_at),
        "items": [
            {
                "productId": item.product_id,
                "quantity": item.quantity,
                "unitPriceCents": item.unit_price_cents,
                "lineTotalCents": item.line_total_cents,
                "examName": item.product.exam_name if item.product else None,
            }
            for item in o.items
        ],
    }


def download(d: Download, now: datetime | None = None) -> dict[str, Any]:
    return {
        "id": d.id,
        "token": d.download_token,
        "orderId": d.order_id,
        "product": product_summary(d.product),
        "downloadCount": d.download_count,
        "maxDownloads": d.max_downloads,
        "isActive": d.is_active,
        "expiresAt": _iso(d.expires_at),
        "remainingDays": remaining_days(d.expires_at, now),
        "createdAt": _iso(d.created_at),
    }
