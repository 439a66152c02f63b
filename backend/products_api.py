"""
Product catalog endpoints, including spreadsheet import and template download
"""
import logging
import math
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user, require_permission
from config import settings
from database import get_db, transaction
from errors import BusinessRuleError, ConflictError, NotFoundError, ValidationFailed
from import_service import XLSX_MEDIA_TYPE, build_template, parse_spreadsheet, run_import
from models import Permission, Product, SaleItem
from schemas import AvailableProduct, ImportResult, ProductCreate, ProductResponse, ProductUpdate
from stock_service import get_stock_figures, list_available_products, lock_product

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])

require_products = require_permission(Permission.PRODUCTS)


def _search_filter(term: str):
    pattern = f"%{term.strip().lower()}%"
    return or_(
        func.lower(Product.description).like(pattern),
        Product.barcode_1 == term.strip(),
        Product.barcode_2 == term.strip(),
    )


async def _get_product(db: AsyncSession, product_id: int) -> Product:
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


@router.get("")
async def list_products(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(50, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    current_user: CurrentUser = Depends(require_products),
    db: AsyncSession = Depends(get_db)
):
    query = select(Product)
    count_query = select(func.count(Product.id))
    if search and search.strip():
        query = query.where(_search_filter(search))
        count_query = count_query.where(_search_filter(search))

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(Product.description, Product.id).offset((page - 1) * limit).limit(limit)
    )
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "products": [ProductResponse.model_validate(p) for p in result.scalars().all()],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


@router.get("/all", response_model=List[ProductResponse])
async def list_all_products(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(Product).order_by(Product.description))
    return result.scalars().all()


@router.get("/available", response_model=List[AvailableProduct])
async def list_products_available(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Products with stock left to sell"""
    rows = await list_available_products(db)
    return [
        AvailableProduct(
            **ProductResponse.model_validate(row["product"]).model_dump(),
            checked_in=row["checked_in"],
            losses=row["losses"],
            sold=row["sold"],
            available=row["available"],
        )
        for row in rows
    ]


@router.get("/search", response_model=List[ProductResponse])
async def search_products(
    q: str = Query(""),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if len(q.strip()) < 2:
        raise ValidationFailed("Search term must have at least 2 characters")
    result = await db.execute(
        select(Product).where(_search_filter(q)).order_by(Product.description).limit(10)
    )
    return result.scalars().all()


@router.get("/template")
async def download_template(current_user: CurrentUser = Depends(require_products)):
    return Response(
        content=build_template(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": "attachment; filename=template_produtos.xlsx"},
    )


@router.post("/import", response_model=ImportResult)
async def import_products(
    file: UploadFile = File(...),
    current_user: CurrentUser = Depends(require_products),
    db: AsyncSession = Depends(get_db)
):
    content = await file.read()
    if not content:
        raise ValidationFailed("No file uploaded or file is empty")
    if len(content) > settings.max_upload_size_bytes:
        raise HTTPException(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"File too large. Maximum size: {settings.MAX_UPLOAD_SIZE_MB}MB",
        )

    logger.info(f"Import started by {current_user.username}: {file.filename} ({len(content)} bytes)")
    rows = parse_spreadsheet(content, file.filename)
    return await run_import(db, rows)


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await _get_product(db, product_id)


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    data: ProductCreate,
    current_user: CurrentUser = Depends(require_products),
    db: AsyncSession = Depends(get_db)
):
    product = Product(**data.model_dump())
    db.add(product)
    await db.commit()
    await db.refresh(product)
    logger.info(f"Product {product.id} created by {current_user.username}")
    return product


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: int,
    data: ProductUpdate,
    current_user: CurrentUser = Depends(require_products),
    db: AsyncSession = Depends(get_db)
):
    changes = data.model_dump(exclude_unset=True)
    async with transaction(db):
        product = await lock_product(db, product_id)
        if changes.get("quantity") is not None:
            # Received quantity bounds the check-ins already recorded
            checked_in = (await get_stock_figures(db, product_id)).checked_in
            if changes["quantity"] < checked_in:
                raise BusinessRuleError(
                    f"Quantity cannot be lower than the {checked_in} unit(s) already checked in",
                    details={"product_id": product_id, "quantity": changes["quantity"], "checked_in": checked_in},
                )
        for field, value in changes.items():
            if field.startswith("barcode"):
                value = value or None
            elif value is None:
                continue  # Required columns cannot be cleared
            setattr(product, field, value)
    await db.refresh(product)
    return product


@router.delete("/{product_id}")
async def delete_product(
    product_id: int,
    current_user: CurrentUser = Depends(require_products),
    db: AsyncSession = Depends(get_db)
):
    product = await _get_product(db, product_id)
    sales_count = (await db.execute(
        select(func.count(SaleItem.id)).where(SaleItem.product_id == product_id)
    )).scalar() or 0
    if sales_count:
        raise ConflictError(
            f"Cannot delete product: it appears in {sales_count} sale item(s)",
            details={"sale_items": sales_count},
        )

    await db.delete(product)
    await db.commit()
    logger.info(f"Product {product_id} deleted by {current_user.username}")
    return {"message": "Product deleted successfully"}
