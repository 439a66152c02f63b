"""
Sales endpoints: point-of-sale checkout, daily listing and period report
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, require_any_permission, require_permission
from database import get_db
from models import Permission
from schemas import SaleCreate, SaleListResponse, SaleResponse
from timezone_utils import get_store_today
import sales_service

router = APIRouter(prefix="/sales", tags=["sales"])

require_sales_reader = require_any_permission(Permission.REPORTS, Permission.FINANCEIRO)


@router.post("", response_model=SaleResponse, status_code=status.HTTP_201_CREATED)
async def create_sale(
    data: SaleCreate,
    current_user: CurrentUser = Depends(require_permission(Permission.PDV)),
    db: AsyncSession = Depends(get_db)
):
    return await sales_service.create_sale(db, data, seller_id=current_user.id)


@router.get("", response_model=SaleListResponse)
async def list_sales(
    day: Optional[date] = Query(None, alias="date", description="Store-local day, defaults to today"),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(10, ge=1, le=100),
    current_user: CurrentUser = Depends(require_sales_reader),
    db: AsyncSession = Depends(get_db)
):
    return await sales_service.list_sales(db, day or get_store_today(), page, limit)


@router.get("/report/period")
async def period_report(
    start_date: date = Query(...),
    end_date: date = Query(...),
    current_user: CurrentUser = Depends(require_sales_reader),
    db: AsyncSession = Depends(get_db)
):
    return await sales_service.period_report(db, start_date, end_date)


@router.get("/{sale_id}", response_model=SaleResponse)
async def get_sale(
    sale_id: int,
    current_user: CurrentUser = Depends(require_sales_reader),
    db: AsyncSession = Depends(get_db)
):
    return await sales_service.get_sale(db, sale_id)
