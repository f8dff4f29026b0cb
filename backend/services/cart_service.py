"""
Cart service: per-user cart ledger.

One row per (user, product). All writes are single-row statements, so the
UNIQUE(user_id, product_id) constraint plus the store's row atomicity is the
only coordination needed. Carts are never contended across users.
"""
import logging
from datetime import datetime

from sqlalchemy import select, update, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import CartItem, Product
from domain.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


async def _get_active_product(db: AsyncSession, product_id: int) -> Product:
    res = await db.execute(
        select(Product).where(Product.id == product_id, Product.is_active == True)
    )
    product = res.scalar_one_or_none()
    if not product:
        raise NotFoundError("Product", str(product_id))
    return product


async def get_cart_line(db: AsyncSession, *, user_id: int, product_id: int) -> CartItem | None:
    res = await db.execute(
        select(CartItem)
        .where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def list_cart(db: AsyncSession, *, user_id: int) -> list[CartItem]:
    """Cart lines with their product loaded, newest first."""
    res = await db.execute(
        select(CartItem)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.created_at.desc(), CartItem.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def add_to_cart(
    db: AsyncSession,
    *,
    user_id: int,
    product_id: int,
    quantity: int = 1,
) -> CartItem:
    """
    Create the line with `quantity`, or increment the existing one by it.

    Single upsert statement: two concurrent adds for the same product both
    land instead of one overwriting the other.
    """
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity")

    await _get_active_product(db, product_id)

    now = datetime.utcnow()
    insert = _insert_for(db)
    stmt = insert(CartItem).values(
        user_id=user_id,
        product_id=product_id,
        quantity=quantity,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "product_id"],
        set_={
            "quantity": CartItem.quantity + stmt.excluded.quantity,
            "updated_at": now,
        },
    )
    await db.execute(stmt)

    line = await get_cart_line(db, user_id=user_id, product_id=product_id)
    logger.info(f"Cart: user {user_id} product {product_id} +{quantity} (now {line.quantity})")
    return line


async def set_quantity(
    db: AsyncSession,
    *,
    user_id: int,
    product_id: int,
    quantity: int,
) -> CartItem | None:
    """Overwrite the line's quantity; zero or less removes the line (returns None)."""
    if quantity <= 0:
        await remove_from_cart(db, user_id=user_id, product_id=product_id)
        return None

    res = await db.execute(
        update(CartItem)
        .where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        .values(quantity=quantity, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise NotFoundError("Cart item", str(product_id))

    return await get_cart_line(db, user_id=user_id, product_id=product_id)


async def remove_from_cart(db: AsyncSession, *, user_id: int, product_id: int) -> None:
    res = await db.execute(
        delete(CartItem)
        .where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise NotFoundError("Cart item", str(product_id))


async def clear_cart(db: AsyncSession, *, user_id: int) -> int:
    """Delete every line for the user. Returns the number of lines removed."""
    res = await db.execute(
        delete(CartItem)
        .where(CartItem.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def cart_total_cents(lines: list[CartItem]) -> int:
    """Display total at live catalog prices (orders freeze their own)."""
    return sum(line.product.price_cents * line.quantity for line in lines)
