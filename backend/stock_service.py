"""
Stock accounting.

available = checked_in - losses - sold. It is never stored: reads aggregate
the movement rows and the sold counter, and writes re-derive it inside the
transaction before accepting a change.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, func, case, delete
from sqlalchemy.ext.asyncio import AsyncSession

from database import transaction
from errors import NotFoundError, ValidationFailed, InsufficientStock, StockLimitExceeded, BusinessRuleError
from models import Product, ProductSales, StockMovement, StockMovementType, User

logger = logging.getLogger(__name__)


@dataclass
class StockFigures:
    checked_in: int = 0
    losses: int = 0
    sold: int = 0

    @property
    def available(self) -> int:
        return self.checked_in - self.losses - self.sold

    def to_dict(self) -> dict:
        return {
            "checked_in": self.checked_in,
            "losses": self.losses,
            "sold": self.sold,
            "available": self.available,
        }


def _sum_of(movement_type: StockMovementType):
    return func.coalesce(
        func.sum(case((StockMovement.movement_type == movement_type, StockMovement.quantity), else_=0)),
        0,
    )


def movement_totals_subquery():
    """Per-product checked_in / losses totals"""
    return (
        select(
            StockMovement.product_id.label("product_id"),
            _sum_of(StockMovementType.CHECKED_IN).label("checked_in"),
            _sum_of(StockMovementType.LOSS).label("losses"),
        )
        .group_by(StockMovement.product_id)
        .subquery()
    )


async def get_stock_figures(session: AsyncSession, product_id: int) -> StockFigures:
    result = await session.execute(
        select(_sum_of(StockMovementType.CHECKED_IN), _sum_of(StockMovementType.LOSS))
        .where(StockMovement.product_id == product_id)
    )
    checked_in, losses = result.one()
    sold = await session.scalar(
        select(ProductSales.quantity_sold).where(ProductSales.product_id == product_id)
    )
    return StockFigures(checked_in=int(checked_in or 0), losses=int(losses or 0), sold=int(sold or 0))


async def get_available(session: AsyncSession, product_id: int) -> int:
    return (await get_stock_figures(session, product_id)).available


async def lock_product(session: AsyncSession, product_id: int) -> Product:
    """Load a product with a row lock (no-op on SQLite) for the rest of the transaction"""
    result = await session.execute(
        select(Product).where(Product.id == product_id).with_for_update()
    )
    product = result.scalar_one_or_none()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


async def record_movement(
    session: AsyncSession,
    product_id: int,
    movement_type: StockMovementType,
    quantity: int,
    recorder_id: Optional[int],
    notes: Optional[str] = None,
) -> StockMovement:
    """
    Record a check-in or a loss for a product.

    Check-ins may not exceed the product's total received quantity. A loss may
    not take more than what is currently available.
    """
    if quantity is None or quantity <= 0:
        raise ValidationFailed("Quantity must be greater than zero")

    async with transaction(session):
        product = await lock_product(session, product_id)
        figures = await get_stock_figures(session, product_id)

        if movement_type == StockMovementType.CHECKED_IN:
            if figures.checked_in + quantity > product.quantity:
                raise StockLimitExceeded(product.id, product.quantity, figures.checked_in, quantity)
        elif figures.checked_in - (figures.losses + quantity) < figures.sold:
            raise InsufficientStock(product.id, product.description, quantity, figures.available)

        movement = StockMovement(
            product_id=product.id,
            movement_type=movement_type,
            quantity=quantity,
            unit_value=product.unit_cost,
            total_value=round(product.sale_price * quantity, 2),
            notes=notes,
            user_id=recorder_id,
        )
        session.add(movement)
        await session.flush()

    logger.info(f"Recorded {movement_type.value} of {quantity} for product {product_id} (movement {movement.id})")
    return movement


async def delete_movement(session: AsyncSession, movement_id: int) -> None:
    """Administrative removal of a movement, refused if stock would go negative"""
    async with transaction(session):
        movement = await session.get(StockMovement, movement_id)
        if movement is None:
            raise NotFoundError(f"Stock movement {movement_id} not found")

        await lock_product(session, movement.product_id)
        figures = await get_stock_figures(session, movement.product_id)
        if movement.movement_type == StockMovementType.CHECKED_IN:
            figures.checked_in -= movement.quantity
        else:
            figures.losses -= movement.quantity
        if figures.available < 0:
            raise BusinessRuleError(
                "Removing this movement would make available stock negative",
                details={"movement_id": movement_id, "available_after": figures.available},
            )

        await session.execute(delete(StockMovement).where(StockMovement.id == movement_id))

    logger.info(f"Deleted stock movement {movement_id}")


def _available_expr(totals):
    sold = func.coalesce(ProductSales.quantity_sold, 0)
    return totals.c.checked_in - totals.c.losses - sold


async def list_available_products(session: AsyncSession) -> list[dict]:
    """Products that have movements and something left to sell"""
    totals = movement_totals_subquery()
    sold = func.coalesce(ProductSales.quantity_sold, 0)
    available = _available_expr(totals)
    result = await session.execute(
        select(Product, totals.c.checked_in, totals.c.losses, sold.label("sold"), available.label("available"))
        .join(totals, totals.c.product_id == Product.id)
        .outerjoin(ProductSales, ProductSales.product_id == Product.id)
        .where(available > 0)
        .order_by(Product.description)
    )
    rows = []
    for product, checked_in, losses, sold_qty, available_qty in result.all():
        rows.append({
            "product": product,
            "checked_in": int(checked_in),
            "losses": int(losses),
            "sold": int(sold_qty),
            "available": int(available_qty),
        })
    return rows


async def stock_summary(session: AsyncSession) -> dict:
    """Store-wide quantities and values for check-ins, losses and sales"""
    result = await session.execute(
        select(
            StockMovement.movement_type,
            func.coalesce(func.sum(StockMovement.quantity), 0),
            func.coalesce(func.sum(StockMovement.total_value), 0.0),
        ).group_by(StockMovement.movement_type)
    )
    summary = {
        "checked_in": {"quantity": 0, "value": 0.0},
        "losses": {"quantity": 0, "value": 0.0},
        "sold": {"quantity": 0, "value": 0.0},
    }
    for movement_type, quantity, value in result.all():
        key = "checked_in" if movement_type == StockMovementType.CHECKED_IN else "losses"
        summary[key] = {"quantity": int(quantity), "value": round(float(value), 2)}

    sold_quantity, sold_value = (await session.execute(
        select(
            func.coalesce(func.sum(ProductSales.quantity_sold), 0),
            func.coalesce(func.sum(ProductSales.quantity_sold * Product.sale_price), 0.0),
        )
        .join(Product, Product.id == ProductSales.product_id)
        .where(ProductSales.quantity_sold > 0)
    )).one()
    summary["sold"] = {"quantity": int(sold_quantity), "value": round(float(sold_value), 2)}
    return summary


async def stock_details(session: AsyncSession) -> list[dict]:
    """Per-product stock figures with who checked them in and when"""
    totals = movement_totals_subquery()
    sold = func.coalesce(ProductSales.quantity_sold, 0)
    checked_in = func.coalesce(totals.c.checked_in, 0)
    losses = func.coalesce(totals.c.losses, 0)
    result = await session.execute(
        select(Product, checked_in, losses, sold)
        .outerjoin(totals, totals.c.product_id == Product.id)
        .outerjoin(ProductSales, ProductSales.product_id == Product.id)
        .where((checked_in > 0) | (sold > 0))
        .order_by(Product.description)
    )
    rows = result.all()

    checkers_result = await session.execute(
        select(StockMovement.product_id, User.username, func.max(StockMovement.created_at))
        .join(User, User.id == StockMovement.user_id, isouter=True)
        .where(StockMovement.movement_type == StockMovementType.CHECKED_IN)
        .group_by(StockMovement.product_id, User.username)
    )
    checkers: dict[int, list[str]] = {}
    last_check_in = {}
    for product_id, username, latest in checkers_result.all():
        if username:
            checkers.setdefault(product_id, []).append(username)
        if latest and (product_id not in last_check_in or latest > last_check_in[product_id]):
            last_check_in[product_id] = latest

    details = []
    for product, checked_in_qty, losses_qty, sold_qty in rows:
        figures = StockFigures(int(checked_in_qty), int(losses_qty), int(sold_qty))
        details.append({
            "id": product.id,
            "description": product.description,
            "category": product.category,
            "sale_price": product.sale_price,
            **figures.to_dict(),
            "checked_by": ", ".join(sorted(checkers.get(product.id, []))),
            "last_check_in": last_check_in.get(product.id),
        })
    return details


async def list_movements(session: AsyncSession, movement_type: Optional[StockMovementType] = None) -> list[dict]:
    query = (
        select(StockMovement, Product.description, Product.category, Product.sale_price, User.username)
        .join(Product, Product.id == StockMovement.product_id)
        .outerjoin(User, User.id == StockMovement.user_id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    )
    if movement_type is not None:
        query = query.where(StockMovement.movement_type == movement_type)
    result = await session.execute(query)
    return [
        {
            "id": movement.id,
            "product_id": movement.product_id,
            "movement_type": movement.movement_type,
            "quantity": movement.quantity,
            "unit_value": movement.unit_value,
            "total_value": movement.total_value,
            "notes": movement.notes,
            "user_id": movement.user_id,
            "created_at": movement.created_at,
            "product_description": description,
            "category": category,
            "sale_price": sale_price,
            "recorded_by": username,
        }
        for movement, description, category, sale_price, username in result.all()
    ]


async def product_check_ins(session: AsyncSession, product_id: int) -> list[dict]:
    """Check-in history of one product, newest first"""
    if await session.get(Product, product_id) is None:
        raise NotFoundError(f"Product {product_id} not found")
    result = await session.execute(
        select(StockMovement, User.username)
        .outerjoin(User, User.id == StockMovement.user_id)
        .where(
            StockMovement.product_id == product_id,
            StockMovement.movement_type == StockMovementType.CHECKED_IN,
        )
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    )
    return [
        {
            "id": movement.id,
            "quantity": movement.quantity,
            "notes": movement.notes,
            "created_at": movement.created_at,
            "recorded_by": username,
        }
        for movement, username in result.all()
    ]
