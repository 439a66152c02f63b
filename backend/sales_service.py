"""
Sale recording and sales queries.

A sale is accepted only if every line fits in the product's available stock,
re-derived inside the sale's transaction with the product rows locked. Header,
items and the sold counters are written in that same transaction, so a
rejected sale leaves nothing behind.
"""
import logging
import math
from collections import OrderedDict
from datetime import date
from typing import Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from customer_utils import is_active, membership_age
from database import transaction
from errors import NotFoundError, ValidationFailed, BusinessRuleError, CustomerNotFound, CustomerInactive, InsufficientStock
from models import Sale, SaleItem, Product, ProductSales, Customer
from schemas import SaleCreate
from stock_service import get_stock_figures, lock_product
from timezone_utils import utcnow, local_day_bounds_utc, local_range_bounds_utc, utc_to_store_date

logger = logging.getLogger(__name__)


def merge_lines(data: SaleCreate) -> "OrderedDict[int, dict]":
    """Collapse lines for the same product so a split cart is validated as one request"""
    merged: "OrderedDict[int, dict]" = OrderedDict()
    for item in data.items:
        line = merged.setdefault(item.product_id, {"quantity": 0, "unit_price": item.unit_price})
        line["quantity"] += item.quantity
        if line["unit_price"] is None:
            line["unit_price"] = item.unit_price
    return merged


async def increment_sold(session: AsyncSession, product_id: int, quantity: int) -> None:
    """Add to the product's cumulative sold quantity, creating the counter on first sale"""
    result = await session.execute(
        update(ProductSales)
        .where(ProductSales.product_id == product_id)
        .values(quantity_sold=ProductSales.quantity_sold + quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(ProductSales(product_id=product_id, quantity_sold=quantity))
        await session.flush()


async def check_customer(session: AsyncSession, customer_id: int) -> Customer:
    customer = await session.get(Customer, customer_id)
    if customer is None:
        raise CustomerNotFound(customer_id)
    if not is_active(customer.enrolled_at):
        raise CustomerInactive(customer_id, membership_age(customer.enrolled_at).days)
    return customer


async def create_sale(session: AsyncSession, data: SaleCreate, seller_id: Optional[int]) -> dict:
    if data.customer_id is not None:
        await check_customer(session, data.customer_id)

    lines = merge_lines(data)

    async with transaction(session):
        subtotal_sum = 0.0
        items = []
        # Lock in id order so concurrent sales of overlapping carts cannot deadlock
        for product_id in sorted(lines):
            line = lines[product_id]
            product = await lock_product(session, product_id)
            figures = await get_stock_figures(session, product_id)
            if line["quantity"] > figures.available:
                logger.warning(
                    f"Sale rejected: product {product_id} requested {line['quantity']}, available {figures.available}"
                )
                raise InsufficientStock(product.id, product.description, line["quantity"], figures.available)

            unit_price = line["unit_price"] if line["unit_price"] is not None else product.sale_price
            subtotal = round(unit_price * line["quantity"], 2)
            subtotal_sum += subtotal
            items.append(SaleItem(
                product_id=product_id,
                quantity=line["quantity"],
                unit_price=unit_price,
                subtotal=subtotal,
            ))

        if data.discount > subtotal_sum:
            raise BusinessRuleError(
                "Discount cannot exceed the sale subtotal",
                details={"subtotal": round(subtotal_sum, 2), "discount": data.discount},
            )

        sale = Sale(
            total=round(subtotal_sum - data.discount, 2),
            discount=data.discount,
            payment_method=data.payment_method,
            user_id=seller_id,
            customer_id=data.customer_id,
            sale_items=items,
        )
        session.add(sale)
        await session.flush()

        for product_id, line in lines.items():
            await increment_sold(session, product_id, line["quantity"])

    logger.info(f"Sale {sale.id} recorded: {len(items)} products, total {sale.total}")
    return await get_sale(session, sale.id)


def _sale_query():
    return select(Sale).options(
        selectinload(Sale.sale_items).selectinload(SaleItem.product),
        selectinload(Sale.user),
        selectinload(Sale.customer),
    )


def serialize_sale(sale: Sale) -> dict:
    return {
        "id": sale.id,
        "total": sale.total,
        "discount": sale.discount,
        "payment_method": sale.payment_method,
        "user_id": sale.user_id,
        "seller": sale.user.username if sale.user else None,
        "customer_id": sale.customer_id,
        "customer_name": sale.customer.full_name if sale.customer else None,
        "created_at": sale.created_at,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "product_description": item.product.description if item.product else None,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "subtotal": item.subtotal,
            }
            for item in sale.sale_items
        ],
    }


async def get_sale(session: AsyncSession, sale_id: int) -> dict:
    # populate_existing so a sale built in this session is reloaded with its relationships
    result = await session.execute(
        _sale_query().where(Sale.id == sale_id).execution_options(populate_existing=True)
    )
    sale = result.scalar_one_or_none()
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return serialize_sale(sale)


async def list_sales(session: AsyncSession, day: date, page: int = 1, limit: int = 10) -> dict:
    """Sales of one local day, newest first, with the day's revenue"""
    start, end = local_day_bounds_utc(day)
    in_day = (Sale.created_at >= start, Sale.created_at < end)

    total, revenue = (await session.execute(
        select(func.count(Sale.id), func.coalesce(func.sum(Sale.total), 0.0)).where(*in_day)
    )).one()

    result = await session.execute(
        _sale_query()
        .where(*in_day)
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "sales": [serialize_sale(sale) for sale in result.scalars().all()],
        "total": int(total),
        "totalRevenue": round(float(revenue), 2),
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if total else 0,
    }


async def daily_totals(session: AsyncSession, start: date, end: date) -> list[dict]:
    """Revenue and sale count per local day in [start, end]"""
    range_start, range_end = local_range_bounds_utc(start, end)
    result = await session.execute(
        select(Sale.created_at, Sale.total)
        .where(Sale.created_at >= range_start, Sale.created_at < range_end)
    )
    per_day: dict[date, dict] = {}
    for created_at, total in result.all():
        day = utc_to_store_date(created_at)
        bucket = per_day.setdefault(day, {"data": day.isoformat(), "total": 0.0, "quantidade": 0})
        bucket["total"] += total
        bucket["quantidade"] += 1
    for bucket in per_day.values():
        bucket["total"] = round(bucket["total"], 2)
    return [per_day[day] for day in sorted(per_day)]


async def top_products(session: AsyncSession, start: date, end: date, limit: int = 10) -> list[dict]:
    range_start, range_end = local_range_bounds_utc(start, end)
    quantity = func.sum(SaleItem.quantity).label("quantidade_vendida")
    result = await session.execute(
        select(Product.id, Product.description, quantity, func.sum(SaleItem.subtotal))
        .join(SaleItem, SaleItem.product_id == Product.id)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .where(Sale.created_at >= range_start, Sale.created_at < range_end)
        .group_by(Product.id, Product.description)
        .order_by(quantity.desc())
        .limit(limit)
    )
    return [
        {
            "product_id": product_id,
            "descricao": description,
            "quantidade_vendida": int(sold),
            "total_vendido": round(float(total or 0), 2),
        }
        for product_id, description, sold, total in result.all()
    ]


async def period_report(session: AsyncSession, start: date, end: date) -> dict:
    if start > end:
        raise ValidationFailed("start_date must not be after end_date")

    per_day = await daily_totals(session, start, end)
    return {
        "periodo": {"startDate": start.isoformat(), "endDate": end.isoformat()},
        "resumo": {
            "total_periodo": round(sum(day["total"] for day in per_day), 2),
            "total_vendas": sum(day["quantidade"] for day in per_day),
        },
        "vendas_por_dia": per_day,
        "produtos_mais_vendidos": await top_products(session, start, end),
    }
