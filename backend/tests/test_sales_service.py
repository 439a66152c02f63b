import unittest

from sqlalchemy import func, select

from errors import BusinessRuleError, CustomerInactive, CustomerNotFound, InsufficientStock, NotFoundError
from models import ProductSales, Sale, SaleItem, StockMovementType
from schemas import SaleCreate
from sales_service import create_sale, list_sales, period_report
from stock_service import get_available, get_stock_figures, record_movement
from timezone_utils import get_store_today
from tests.helpers import (
    CPF_A,
    create_schema,
    make_customer,
    make_product,
    make_stocked_product,
    make_user,
    memory_engine,
    session_factory,
)


def sale_of(*lines, **kwargs) -> SaleCreate:
    return SaleCreate(
        items=[{"product_id": product_id, "quantity": quantity} for product_id, quantity in lines],
        **kwargs,
    )


class SalesServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = memory_engine()
        await create_schema(self.engine)
        self.session = session_factory(self.engine)()
        self.seller = await make_user(self.session, "caixa")

    async def asyncTearDown(self) -> None:
        await self.session.close()
        await self.engine.dispose()

    async def count(self, column) -> int:
        return (await self.session.execute(select(func.count(column)))).scalar()

    async def test_sell_until_stock_runs_out(self) -> None:
        product = await make_stocked_product(self.session, checked_in=10)

        sale = await create_sale(self.session, sale_of((product.id, 7)), self.seller.id)
        self.assertEqual(sale["total"], 35.0)
        self.assertEqual(await get_available(self.session, product.id), 3)

        with self.assertRaises(InsufficientStock) as ctx:
            await create_sale(self.session, sale_of((product.id, 5)), self.seller.id)
        self.assertEqual(ctx.exception.available, 3)
        self.assertEqual(ctx.exception.requested, 5)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(await get_available(self.session, product.id), 3)

    async def test_rejected_sale_persists_nothing(self) -> None:
        plenty = await make_stocked_product(self.session, checked_in=50, description="Arroz")
        scarce = await make_stocked_product(self.session, checked_in=2, description="Feijao")

        with self.assertRaises(InsufficientStock):
            await create_sale(self.session, sale_of((plenty.id, 5), (scarce.id, 3)), self.seller.id)

        self.assertEqual(await self.count(Sale.id), 0)
        self.assertEqual(await self.count(SaleItem.id), 0)
        self.assertEqual(await self.count(ProductSales.product_id), 0)
        self.assertEqual(await get_available(self.session, plenty.id), 50)

    async def test_sold_counter_grows_by_exact_quantity(self) -> None:
        product = await make_stocked_product(self.session, checked_in=20)

        await create_sale(self.session, sale_of((product.id, 4)), self.seller.id)
        self.assertEqual((await get_stock_figures(self.session, product.id)).sold, 4)

        await create_sale(self.session, sale_of((product.id, 6)), self.seller.id)
        figures = await get_stock_figures(self.session, product.id)
        self.assertEqual(figures.sold, 10)
        self.assertEqual(figures.available, 10)

    async def test_split_lines_for_one_product_are_checked_together(self) -> None:
        product = await make_stocked_product(self.session, checked_in=5)

        with self.assertRaises(InsufficientStock) as ctx:
            await create_sale(self.session, sale_of((product.id, 3), (product.id, 3)), self.seller.id)
        self.assertEqual(ctx.exception.requested, 6)
        self.assertEqual(await self.count(Sale.id), 0)

    async def test_unchecked_stock_cannot_be_sold(self) -> None:
        product = await make_product(self.session, quantity=100)
        with self.assertRaises(InsufficientStock) as ctx:
            await create_sale(self.session, sale_of((product.id, 1)), self.seller.id)
        self.assertEqual(ctx.exception.available, 0)

    async def test_losses_reduce_available(self) -> None:
        product = await make_stocked_product(self.session, checked_in=10)
        await record_movement(self.session, product.id, StockMovementType.LOSS, 4, self.seller.id)

        with self.assertRaises(InsufficientStock):
            await create_sale(self.session, sale_of((product.id, 7)), self.seller.id)
        await create_sale(self.session, sale_of((product.id, 6)), self.seller.id)
        self.assertEqual(await get_available(self.session, product.id), 0)

    async def test_unknown_product(self) -> None:
        with self.assertRaises(NotFoundError):
            await create_sale(self.session, sale_of((999, 1)), self.seller.id)

    async def test_discount_and_line_prices(self) -> None:
        product = await make_stocked_product(self.session, checked_in=10, sale_price=12.5)
        data = SaleCreate(
            items=[{"product_id": product.id, "quantity": 2, "unit_price": 10.0}],
            discount=5.0,
            payment_method="pix",
        )
        sale = await create_sale(self.session, data, self.seller.id)
        self.assertEqual(sale["total"], 15.0)
        self.assertEqual(sale["items"][0]["subtotal"], 20.0)
        self.assertEqual(sale["seller"], "caixa")
        self.assertEqual(sale["payment_method"].value, "pix")

    async def test_discount_larger_than_subtotal_is_rejected(self) -> None:
        product = await make_stocked_product(self.session, checked_in=10)
        with self.assertRaises(BusinessRuleError):
            await create_sale(self.session, sale_of((product.id, 1), discount=50.0), self.seller.id)
        self.assertEqual(await self.count(Sale.id), 0)
        self.assertEqual(await get_available(self.session, product.id), 10)

    async def test_customer_must_exist_and_be_active(self) -> None:
        product = await make_stocked_product(self.session, checked_in=10)
        expired = await make_customer(self.session, CPF_A, days_enrolled=365)

        with self.assertRaises(CustomerNotFound):
            await create_sale(self.session, sale_of((product.id, 1), customer_id=12345), self.seller.id)
        with self.assertRaises(CustomerInactive):
            await create_sale(self.session, sale_of((product.id, 1), customer_id=expired.id), self.seller.id)
        self.assertEqual(await self.count(Sale.id), 0)

    async def test_sale_with_active_customer(self) -> None:
        product = await make_stocked_product(self.session, checked_in=10)
        customer = await make_customer(self.session, CPF_A, days_enrolled=30)
        sale = await create_sale(self.session, sale_of((product.id, 1), customer_id=customer.id), self.seller.id)
        self.assertEqual(sale["customer_id"], customer.id)
        self.assertEqual(sale["customer_name"], "Maria Silva")

    async def test_listing_and_period_report(self) -> None:
        widget = await make_stocked_product(self.session, checked_in=10, description="Widget", sale_price=2.0)
        gadget = await make_stocked_product(self.session, checked_in=10, description="Gadget", sale_price=10.0)
        await create_sale(self.session, sale_of((widget.id, 5)), self.seller.id)
        await create_sale(self.session, sale_of((gadget.id, 1), (widget.id, 1)), self.seller.id)

        today = get_store_today()
        listing = await list_sales(self.session, today, page=1, limit=1)
        self.assertEqual(listing["total"], 2)
        self.assertEqual(listing["totalRevenue"], 22.0)
        self.assertEqual(listing["totalPages"], 2)
        self.assertEqual(len(listing["sales"]), 1)

        report = await period_report(self.session, today, today)
        self.assertEqual(report["resumo"], {"total_periodo": 22.0, "total_vendas": 2})
        self.assertEqual(report["vendas_por_dia"][0]["data"], today.isoformat())
        self.assertEqual(report["produtos_mais_vendidos"][0]["descricao"], "Widget")
        self.assertEqual(report["produtos_mais_vendidos"][0]["quantidade_vendida"], 6)


if __name__ == "__main__":
    unittest.main()
