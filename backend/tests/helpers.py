"""Shared fixtures for database-backed tests"""
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

import models  # noqa: F401  (registers tables on Base.metadata)
from auth import get_password_hash
from database import Base, create_engine_for_url
from models import Customer, Product, StockMovementType, User, UserRole
from permissions import PermissionSet, default_permissions
from stock_service import record_movement
from timezone_utils import utcnow

TEST_PASSWORD = "secret123"
TEST_PASSWORD_HASH = get_password_hash(TEST_PASSWORD)

# Valid CPFs (check digits verified)
CPF_A = "52998224725"
CPF_B = "11144477735"


def memory_engine():
    """Single shared in-memory connection, for tests running on one event loop"""
    return create_engine_for_url("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)


def file_engine(path: str):
    """File database with a fresh connection per checkout, safe across event loops"""
    return create_engine_for_url(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)


def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def make_user(
    session: AsyncSession,
    username: str = "admin",
    role: UserRole = UserRole.ADMIN,
    permissions: Optional[PermissionSet] = None,
) -> User:
    user = User(
        username=username,
        hashed_password=TEST_PASSWORD_HASH,
        role=role,
        permissions=(permissions or default_permissions(role)).to_storage(),
    )
    session.add(user)
    await session.commit()
    return user


async def make_product(
    session: AsyncSession,
    description: str = "Widget A",
    quantity: int = 10,
    sale_price: float = 5.0,
    unit_cost: float = 3.0,
    category: str = "Geral",
    barcode_1: Optional[str] = None,
    barcode_2: Optional[str] = None,
) -> Product:
    product = Product(
        description=description,
        quantity=quantity,
        unit_cost=unit_cost,
        sale_price=sale_price,
        category=category,
        barcode_1=barcode_1,
        barcode_2=barcode_2,
    )
    session.add(product)
    await session.commit()
    return product


async def make_stocked_product(session: AsyncSession, checked_in: int = 10, **kwargs) -> Product:
    """Product whose whole received quantity has been checked in"""
    kwargs.setdefault("quantity", checked_in)
    product = await make_product(session, **kwargs)
    await record_movement(session, product.id, StockMovementType.CHECKED_IN, checked_in, recorder_id=None)
    return product


async def make_customer(
    session: AsyncSession,
    cpf: str = CPF_A,
    days_enrolled: int = 10,
    full_name: str = "Maria Silva",
) -> Customer:
    customer = Customer(
        full_name=full_name,
        cpf=cpf,
        whatsapp="11987654321",
        enrolled_at=utcnow() - timedelta(days=days_enrolled),
    )
    session.add(customer)
    await session.commit()
    return customer
