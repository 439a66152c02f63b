"""
Safe auto-seeding of default accounts and sample products.

Idempotent: users are created only when their username is missing, products
only when the catalog is empty. Controlled by SEED_DEFAULT_DATA.

Usage (manual):
    python seed_data.py
"""
import asyncio
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_password_hash_async
from config import settings
from models import Product, User, UserRole
from permissions import PermissionSet, default_permissions

logger = logging.getLogger(__name__)

DEFAULT_USERS = [
    ("admin", "admin", UserRole.ADMIN, default_permissions(UserRole.ADMIN)),
    ("funcionario", "pdv123", UserRole.EMPLOYEE, PermissionSet(pdv=True)),
]

SAMPLE_PRODUCTS = [
    # description, quantity, unit cost, sale price, category, barcode 1, barcode 2
    ("Açúcar Cristal União 1kg", 50, 3.50, 4.80, "Alimentos Básicos", "7891000100004", "78910001"),
    ("Feijão Carioca Camil 1kg", 30, 6.20, 8.50, "Alimentos Básicos", "7896006711506", "78960067"),
    ("Arroz Branco Tio João 1kg", 40, 4.80, 6.90, "Alimentos Básicos", "7896274900024", "78962749"),
    ("Óleo de Soja Soya 900ml", 25, 5.30, 7.20, "Óleos e Condimentos", "7891175014085", "78911750"),
    ("Sabão em Pó OMO 1kg", 20, 8.90, 12.50, "Limpeza", "7891150013636", "78911500"),
    ("Leite Condensado Moça 395g", 35, 4.20, 6.80, "Doces e Sobremesas", "7891000100912", None),
    ("Macarrão Espaguete Renata 500g", 60, 2.80, 4.20, "Massas", "7896333301234", "78963333"),
    ("Detergente Ypê Neutro 500ml", 45, 1.90, 3.50, "Limpeza", "7896098901014", "78960989"),
    ("Café Pilão Tradicional 250g", 28, 7.50, 10.80, "Bebidas", "7896089012721", "78960890"),
    ("Biscoito Cream Cracker Bauducco 400g", 40, 3.80, 5.90, "Biscoitos e Bolachas", "7891962058801", "78919620"),
]


async def seed_default_users(db: AsyncSession) -> int:
    created = 0
    for username, password, role, flags in DEFAULT_USERS:
        result = await db.execute(select(User.id).where(User.username == username))
        if result.first():
            continue
        db.add(User(
            username=username,
            hashed_password=await get_password_hash_async(password),
            role=role,
            permissions=flags.to_storage(),
        ))
        created += 1
        logger.info(f"Default user created: {username} ({role.value})")
    return created


async def seed_sample_products(db: AsyncSession) -> int:
    count = (await db.execute(select(func.count(Product.id)))).scalar() or 0
    if count > 0:
        return 0
    for description, quantity, cost, price, category, barcode_1, barcode_2 in SAMPLE_PRODUCTS:
        db.add(Product(
            description=description,
            quantity=quantity,
            unit_cost=cost,
            sale_price=price,
            category=category,
            barcode_1=barcode_1,
            barcode_2=barcode_2,
        ))
    logger.info(f"Seeded {len(SAMPLE_PRODUCTS)} sample products")
    return len(SAMPLE_PRODUCTS)


async def seed_on_startup(db: AsyncSession) -> None:
    if not settings.SEED_DEFAULT_DATA:
        logger.info("Default data seeding disabled (SEED_DEFAULT_DATA=false)")
        return
    users = await seed_default_users(db)
    products = await seed_sample_products(db)
    await db.commit()
    if users:
        logger.info("Default logins: admin/admin (all permissions), funcionario/pdv123 (PDV only)")
    if not users and not products:
        logger.info("Database already seeded - skipping")


async def main():
    from database import async_session_maker, init_db

    await init_db()
    async with async_session_maker() as db:
        await seed_on_startup(db)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
