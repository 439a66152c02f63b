"""
Customer (membership) endpoints. Active status is derived from the enrollment
date on every read.
"""
import logging
import math
from datetime import datetime, time, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user
from config import settings
from customer_utils import days_until_expiry, format_cpf, is_active, only_digits
from database import get_db
from errors import ConflictError, CustomerNotFound
from models import Customer, Sale
from schemas import CustomerCreate, CustomerResponse, CustomerUpdate
from timezone_utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clientes", tags=["clientes"])


def customer_to_response(customer: Customer, now: Optional[datetime] = None) -> CustomerResponse:
    now = now or utcnow()
    return CustomerResponse(
        id=customer.id,
        full_name=customer.full_name,
        cpf=customer.cpf,
        cpf_formatado=format_cpf(customer.cpf),
        whatsapp=customer.whatsapp,
        enrolled_at=customer.enrolled_at,
        ativo=is_active(customer.enrolled_at, now),
        dias_para_vencer=days_until_expiry(customer.enrolled_at, now),
        created_at=customer.created_at,
    )


def _enrollment_timestamp(day) -> datetime:
    return datetime.combine(day, time.min) if day else utcnow()


async def _get_customer(db: AsyncSession, customer_id: int) -> Customer:
    customer = await db.get(Customer, customer_id)
    if customer is None:
        raise CustomerNotFound(customer_id)
    return customer


async def _ensure_cpf_free(db: AsyncSession, cpf: str, exclude_id: Optional[int] = None) -> None:
    query = select(Customer.id).where(Customer.cpf == cpf)
    if exclude_id is not None:
        query = query.where(Customer.id != exclude_id)
    if (await db.execute(query)).first():
        raise ConflictError("A customer with this CPF already exists")


@router.get("")
async def list_customers(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    query = select(Customer)
    count_query = select(func.count(Customer.id))
    if search and search.strip():
        term = search.strip()
        conditions = [func.lower(Customer.full_name).like(f"%{term.lower()}%")]
        if only_digits(term):
            conditions.append(Customer.cpf.like(f"%{only_digits(term)}%"))
        query = query.where(or_(*conditions))
        count_query = count_query.where(or_(*conditions))

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(Customer.full_name, Customer.id).offset((page - 1) * limit).limit(limit)
    )
    now = utcnow()
    return {
        "clientes": [customer_to_response(c, now) for c in result.scalars().all()],
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
    }


@router.get("/ativos/lista", response_model=List[CustomerResponse])
async def list_active_customers(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Customers whose membership is still valid, for the PDV customer picker"""
    cutoff = utcnow() - timedelta(days=settings.MEMBERSHIP_DAYS)
    result = await db.execute(
        select(Customer).where(Customer.enrolled_at > cutoff).order_by(Customer.full_name)
    )
    now = utcnow()
    return [customer_to_response(c, now) for c in result.scalars().all()]


@router.get("/{customer_id}", response_model=CustomerResponse)
async def get_customer(
    customer_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return customer_to_response(await _get_customer(db, customer_id))


@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    data: CustomerCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await _ensure_cpf_free(db, data.cpf)
    customer = Customer(
        full_name=data.full_name,
        cpf=data.cpf,
        whatsapp=data.whatsapp,
        enrolled_at=_enrollment_timestamp(data.enrolled_at),
    )
    db.add(customer)
    await db.commit()
    await db.refresh(customer)
    logger.info(f"Customer {customer.id} enrolled by {current_user.username}")
    return customer_to_response(customer)


@router.put("/{customer_id}", response_model=CustomerResponse)
async def update_customer(
    customer_id: int,
    data: CustomerUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    customer = await _get_customer(db, customer_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("cpf") and changes["cpf"] != customer.cpf:
        await _ensure_cpf_free(db, changes["cpf"], exclude_id=customer.id)

    for field, value in changes.items():
        if value is None:
            continue
        if field == "enrolled_at":
            value = _enrollment_timestamp(value)
        setattr(customer, field, value)

    await db.commit()
    await db.refresh(customer)
    return customer_to_response(customer)


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    customer = await _get_customer(db, customer_id)
    sales_count = (await db.execute(
        select(func.count(Sale.id)).where(Sale.customer_id == customer_id)
    )).scalar() or 0
    if sales_count:
        raise ConflictError(
            f"Cannot delete customer with {sales_count} associated sale(s)",
            details={"sales": sales_count},
        )

    await db.delete(customer)
    await db.commit()
    logger.info(f"Customer {customer_id} deleted by {current_user.username}")
    return {"message": "Customer deleted successfully"}
