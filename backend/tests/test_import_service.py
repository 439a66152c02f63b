import unittest
from unittest.mock import patch

import pandas as pd
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

import import_service

from errors import ValidationFailed
from import_service import (
    PLACEHOLDER_CATEGORY,
    ImportRow,
    PendingProduct,
    ProductIndex,
    build_template,
    parse_spreadsheet,
    reconcile,
    rows_from_frame,
    run_import,
)
from models import Product
from tests.helpers import create_schema, make_product, memory_engine, session_factory


def catalog() -> ProductIndex:
    return ProductIndex.from_products([
        (1, "Arroz Tipo 1", "7891000100103", None),
        (2, "Feijao Preto", "7896000200204", "FEIJ-01"),
    ])


class ReconcileTests(unittest.TestCase):
    def test_description_match_is_case_and_space_insensitive(self) -> None:
        outcome = reconcile(catalog(), [ImportRow(line=2, description="  arroz tipo 1 ", quantity=4)])
        self.assertEqual(outcome.updates, {1: 4})
        self.assertEqual((outcome.created, outcome.updated), (0, 1))

    def test_description_wins_over_barcode(self) -> None:
        row = ImportRow(line=2, description="Arroz Tipo 1", quantity=2, barcode_1="FEIJ-01")
        self.assertEqual(reconcile(catalog(), [row]).updates, {1: 2})

    def test_either_barcode_matches(self) -> None:
        rows = [
            ImportRow(line=2, description="Feijao 1kg", quantity=3, barcode_1="999", barcode_2="FEIJ-01"),
            ImportRow(line=3, description="Arroz 5kg", quantity=1, barcode_1="7891000100103"),
        ]
        outcome = reconcile(catalog(), rows)
        self.assertEqual(outcome.updates, {2: 3, 1: 1})
        self.assertEqual(outcome.inserts, [])

    def test_repeated_new_product_in_one_file_is_created_once(self) -> None:
        rows = [
            ImportRow(line=2, description="Cafe Torrado", quantity=5, barcode_1="CAFE-1"),
            ImportRow(line=3, description="Cafe Torrado", quantity=2),
            ImportRow(line=4, description="Outro nome", quantity=1, barcode_2="CAFE-1"),
        ]
        outcome = reconcile(catalog(), rows)
        self.assertEqual(len(outcome.inserts), 1)
        self.assertEqual(outcome.inserts[0].quantity, 8)
        self.assertEqual((outcome.created, outcome.updated), (1, 2))

        values = outcome.inserts[0].to_values()
        self.assertEqual(values["category"], PLACEHOLDER_CATEGORY)
        self.assertEqual((values["unit_cost"], values["sale_price"]), (0.0, 0.0))

    def test_invalid_rows_are_reported_with_their_line(self) -> None:
        rows = [
            ImportRow(line=2, description="ab"),
            ImportRow(line=3, description="Sabao", quantity=-2),
        ]
        outcome = reconcile(catalog(), rows)
        self.assertEqual(outcome.inserts, [])
        self.assertEqual(len(outcome.rejects), 2)
        self.assertTrue(outcome.rejects[0].startswith("Line 2:"))
        self.assertTrue(outcome.rejects[1].startswith("Line 3:"))

    def test_resolve_replaces_pending_entries(self) -> None:
        index = catalog()
        outcome = reconcile(index, [ImportRow(line=2, description="Cafe Torrado", barcode_1="CAFE-1")])
        outcome.inserts[0].id = 10
        index.resolve()
        self.assertEqual(index.find(ImportRow(line=3, description="x", barcode_1="CAFE-1")), 10)
        self.assertNotIsInstance(index.by_description["cafe torrado"], PendingProduct)


class SpreadsheetParsingTests(unittest.TestCase):
    def test_rows_from_frame(self) -> None:
        frame = pd.DataFrame([
            ["Item", "Ref", "EAN", "EAN 2", "Qtd", "Un", "Descricao"],
            [1, "R1", 7891000100103.0, "#N/A", None, "UN", "Arroz Tipo 1"],
            [2, "R2", "12", "FEIJ-01", "7", "UN", "Feijao Preto"],
            [3, "R3", None, None, "abc", "UN", None],
        ], dtype=object)
        rows = rows_from_frame(frame)

        self.assertEqual([row.line for row in rows], [2, 3, 4])
        self.assertEqual(rows[0].barcode_1, "7891000100103")
        self.assertIsNone(rows[0].barcode_2)
        self.assertEqual(rows[0].quantity, 1)
        self.assertIsNone(rows[1].barcode_1)
        self.assertEqual(rows[1].barcode_2, "FEIJ-01")
        self.assertEqual(rows[1].quantity, 7)
        self.assertEqual(rows[2].description, "")
        self.assertEqual(rows[2].quantity, 1)

    def test_template_is_readable_by_the_importer(self) -> None:
        rows = parse_spreadsheet(build_template(), "modelo.xlsx")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].description, "Example product")
        self.assertEqual(rows[0].quantity, 10)
        self.assertEqual(rows[0].barcode_1, "7891234567890")

    def test_csv_upload(self) -> None:
        content = b"item,ref,ean,ean2,qtd,un,desc\n1,R,7891,,3,UN,Leite Integral\n"
        rows = parse_spreadsheet(content, "produtos.CSV")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].description, "Leite Integral")
        self.assertEqual(rows[0].quantity, 3)

    def test_rejects_unknown_extension_and_garbage(self) -> None:
        with self.assertRaises(ValidationFailed):
            parse_spreadsheet(b"hello", "produtos.txt")
        with self.assertRaises(ValidationFailed):
            parse_spreadsheet(b"not a zip file", "produtos.xlsx")


class RunImportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = memory_engine()
        await create_schema(self.engine)
        self.session = session_factory(self.engine)()

    async def asyncTearDown(self) -> None:
        await self.session.close()
        await self.engine.dispose()

    async def quantity_of(self, description: str) -> int:
        return await self.session.scalar(select(Product.quantity).where(Product.description == description))

    async def test_reimport_adds_quantities(self) -> None:
        await make_product(self.session, description="Arroz Tipo 1", quantity=20, barcode_1="7891000100103")

        first = await run_import(self.session, [ImportRow(line=2, description="Arroz Tipo 1", quantity=10)])
        self.assertEqual((first["created"], first["updated"], first["failed"]), (0, 1, 0))
        second = await run_import(self.session, [ImportRow(line=2, description="Arroz 5kg", quantity=5, barcode_1="7891000100103")])
        self.assertEqual(second["updated"], 1)

        self.assertEqual(await self.quantity_of("Arroz Tipo 1"), 35)
        self.assertEqual(await self.session.scalar(select(Product.id).where(Product.description == "Arroz 5kg")), None)

    async def test_failed_batch_rolls_back_only_itself(self) -> None:
        real_apply = import_service._apply
        calls = []

        async def apply_failing_second(session, outcome):
            calls.append(outcome)
            if len(calls) == 2:
                raise SQLAlchemyError("disk full")
            await real_apply(session, outcome)

        rows = [
            ImportRow(line=2, description="Cafe Torrado", quantity=5),
            ImportRow(line=3, description="Leite Integral", quantity=8, barcode_1="LEITE-1"),
            ImportRow(line=4, description="Leite Desnatado", quantity=3, barcode_1="LEITE-1"),
        ]
        with patch("import_service._apply", side_effect=apply_failing_second):
            result = await run_import(self.session, rows, batch_size=1)

        self.assertEqual((result["created"], result["updated"], result["failed"]), (2, 0, 1))
        self.assertEqual(result["errors"], ["Lines 3-3: batch failed (SQLAlchemyError)"])
        self.assertEqual(await self.quantity_of("Cafe Torrado"), 5)
        self.assertIsNone(await self.quantity_of("Leite Integral"))
        # The rolled back product is forgotten, so the next row with its barcode is a new product
        self.assertEqual(await self.quantity_of("Leite Desnatado"), 3)

    async def test_new_products_across_batches(self) -> None:
        rows = [
            ImportRow(line=2, description="Cafe Torrado", quantity=5, barcode_1="CAFE-1"),
            ImportRow(line=3, description="Acucar Cristal", quantity=4),
            ImportRow(line=4, description="Outro cafe", quantity=2, barcode_1="CAFE-1"),
        ]
        result = await run_import(self.session, rows, batch_size=2)

        self.assertEqual(result["total_rows"], 3)
        self.assertEqual((result["created"], result["updated"], result["succeeded"]), (2, 1, 3))
        self.assertEqual(await self.quantity_of("Cafe Torrado"), 7)
        product = (await self.session.execute(
            select(Product).where(Product.description == "Acucar Cristal")
        )).scalar_one()
        self.assertEqual(product.category, "Selecione a categoria")
        self.assertEqual(product.sale_price, 0.0)

    async def test_error_messages_are_capped(self) -> None:
        rows = [ImportRow(line=n, description="x") for n in range(2, 8)]
        rows.append(ImportRow(line=8, description="Produto valido"))
        result = await run_import(self.session, rows, max_errors=2)

        self.assertEqual(result["failed"], 6)
        self.assertEqual(result["succeeded"], 1)
        self.assertEqual(len(result["errors"]), 2)
        self.assertIn("Line 2", result["errors"][0])


if __name__ == "__main__":
    unittest.main()
