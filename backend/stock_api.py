"""
Stock reconciliation endpoints (check-ins and losses)
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, require_permission, require_roles
from database import get_db
from errors import NotFoundError
from models import Permission, Product, StockMovementType, UserRole
from schemas import StockMovementCreate, StockMovementResponse
import stock_service

router = APIRouter(prefix="/estoque", tags=["estoque"])

require_stock = require_permission(Permission.ESTOQUE)


@router.get("")
async def list_movements(
    movement_type: Optional[StockMovementType] = Query(None),
    current_user: CurrentUser = Depends(require_stock),
    db: AsyncSession = Depends(get_db)
):
    return await stock_service.list_movements(db, movement_type)


@router.get("/resumo")
async def stock_summary(
    current_user: CurrentUser = Depends(require_stock),
    db: AsyncSession = Depends(get_db)
):
    """Totals (quantity and value) of check-ins, losses and sales"""
    return await stock_service.stock_summary(db)


@router.get("/detalhes")
async def stock_details(
    current_user: CurrentUser = Depends(require_stock),
    db: AsyncSession = Depends(get_db)
):
    return await stock_service.stock_details(db)


@router.get("/produto/{product_id}/conferencias")
async def product_check_ins(
    product_id: int,
    current_user: CurrentUser = Depends(require_stock),
    db: AsyncSession = Depends(get_db)
):
    return await stock_service.product_check_ins(db, product_id)


@router.get("/produto/{product_id}")
async def product_stock(
    product_id: int,
    current_user: CurrentUser = Depends(require_stock),
    db: AsyncSession = Depends(get_db)
):
    if await db.get(Product, product_id) is None:
        raise NotFoundError(f"Product {product_id} not found")
    figures = await stock_service.get_stock_figures(db, product_id)
    return {"product_id": product_id, **figures.to_dict()}


@router.post("/registrar", response_model=StockMovementResponse, status_code=status.HTTP_201_CREATED)
async def register_movement(
    data: StockMovementCreate,
    current_user: CurrentUser = Depends(require_stock),
    db: AsyncSession = Depends(get_db)
):
    return await stock_service.record_movement(
        db,
        product_id=data.product_id,
        movement_type=data.movement_type,
        quantity=data.quantity,
        recorder_id=current_user.id,
        notes=data.notes,
    )


@router.delete("/{movement_id}")
async def delete_movement(
    movement_id: int,
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    await stock_service.delete_movement(db, movement_id)
    return {"message": "Stock movement deleted successfully"}
