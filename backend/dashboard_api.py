"""
Dashboard aggregates: revenue, category breakdown, stock status and seller ranking
"""
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, require_permission
from config import settings
from database import get_db
from errors import ValidationFailed
from models import Permission, Product, ProductSales, Sale, SaleItem, User
from sales_service import daily_totals
from stock_service import movement_totals_subquery
from timezone_utils import get_store_today, local_range_bounds_utc

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


async def revenue_between(db: AsyncSession, start: date, end: date) -> float:
    range_start, range_end = local_range_bounds_utc(start, end)
    total = await db.scalar(
        select(func.coalesce(func.sum(Sale.total), 0.0))
        .where(Sale.created_at >= range_start, Sale.created_at < range_end)
    )
    return round(float(total or 0), 2)


async def revenue_by_category(db: AsyncSession, start: date, end: date, limit: int = 5) -> list[dict]:
    range_start, range_end = local_range_bounds_utc(start, end)
    total = func.sum(SaleItem.subtotal).label("total")
    result = await db.execute(
        select(Product.category, total)
        .join(SaleItem, SaleItem.product_id == Product.id)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .where(Sale.created_at >= range_start, Sale.created_at < range_end)
        .group_by(Product.category)
        .order_by(total.desc())
        .limit(limit)
    )
    return [{"categoria": category, "total": round(float(value or 0), 2)} for category, value in result.all()]


def _available_per_product():
    totals = movement_totals_subquery()
    available = (
        func.coalesce(totals.c.checked_in, 0)
        - func.coalesce(totals.c.losses, 0)
        - func.coalesce(ProductSales.quantity_sold, 0)
    )
    query = (
        select(Product.id, Product.description, available.label("available"))
        .outerjoin(totals, totals.c.product_id == Product.id)
        .outerjoin(ProductSales, ProductSales.product_id == Product.id)
    )
    return query.subquery()


async def stock_status(db: AsyncSession) -> dict:
    """Count products by available stock: low, normal, high"""
    stock = _available_per_product()
    low, high = settings.LOW_STOCK_THRESHOLD, settings.HIGH_STOCK_THRESHOLD
    result = await db.execute(
        select(
            func.coalesce(func.sum(case((stock.c.available <= low, 1), else_=0)), 0),
            func.coalesce(func.sum(case(((stock.c.available > low) & (stock.c.available <= high), 1), else_=0)), 0),
            func.coalesce(func.sum(case((stock.c.available > high, 1), else_=0)), 0),
        )
    )
    baixo, normal, alto = result.one()
    return {"baixo": int(baixo), "normal": int(normal), "alto": int(alto)}


async def low_stock_products(db: AsyncSession, limit: int = 5) -> list[dict]:
    stock = _available_per_product()
    result = await db.execute(
        select(stock.c.id, stock.c.description, stock.c.available)
        .where(stock.c.available <= settings.LOW_STOCK_THRESHOLD)
        .order_by(stock.c.available, stock.c.description)
        .limit(limit)
    )
    return [
        {"id": product_id, "descricao": description, "quantidade": int(available)}
        for product_id, description, available in result.all()
    ]


async def build_stats(db: AsyncSession, today: Optional[date] = None) -> dict:
    today = today or get_store_today()
    total_products = await db.scalar(select(func.count(Product.id)))
    return {
        "vendas_mes": await revenue_between(db, today.replace(day=1), today),
        "vendas_dia": await revenue_between(db, today, today),
        "total_produtos": int(total_products or 0),
        "vendas_por_dia": await daily_totals(db, today - timedelta(days=6), today),
        "vendas_por_categoria": await revenue_by_category(db, today - timedelta(days=29), today),
        "status_estoque": await stock_status(db),
        "produtos_baixo_estoque": await low_stock_products(db),
    }


async def seller_ranking(db: AsyncSession, start: date, end: date) -> list[dict]:
    """Sellers ordered by revenue in [start, end]"""
    range_start, range_end = local_range_bounds_utc(start, end)
    items = (
        select(SaleItem.sale_id.label("sale_id"), func.sum(SaleItem.quantity).label("items"))
        .group_by(SaleItem.sale_id)
        .subquery()
    )
    revenue = func.sum(Sale.total).label("valor_total")
    result = await db.execute(
        select(User.id, User.username, func.sum(items.c["items"]), func.count(Sale.id), revenue)
        .join(Sale, Sale.user_id == User.id)
        .join(items, items.c.sale_id == Sale.id)
        .where(Sale.created_at >= range_start, Sale.created_at < range_end)
        .group_by(User.id, User.username)
        .order_by(revenue.desc())
    )
    return [
        {
            "user_id": user_id,
            "vendedor": username,
            "total_itens": int(total_items or 0),
            "total_vendas": int(sales_count),
            "valor_total": round(float(total or 0), 2),
        }
        for user_id, username, total_items, sales_count, total in result.all()
    ]


@router.get("/stats")
async def dashboard_stats(
    current_user: CurrentUser = Depends(require_permission(Permission.DASHBOARD)),
    db: AsyncSession = Depends(get_db)
):
    return await build_stats(db)


@router.get("/ranking")
async def dashboard_ranking(
    start_date: Optional[date] = Query(None, description="Defaults to the first day of the current month"),
    end_date: Optional[date] = Query(None, description="Defaults to today"),
    current_user: CurrentUser = Depends(require_permission(Permission.DASHBOARD)),
    db: AsyncSession = Depends(get_db)
):
    today = get_store_today()
    start = start_date or today.replace(day=1)
    end = end_date or today
    if start > end:
        raise ValidationFailed("start_date must not be after end_date")
    return await seller_ranking(db, start, end)
