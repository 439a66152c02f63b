"""
Bulk product import from a spreadsheet.

Column layout (first sheet, first row is a header):
    C  barcode 1
    D  barcode 2
    E  quantity (defaults to 1)
    G  description

Rows are matched against the catalog by normalized description first, then
by either barcode. Matches add the row quantity to the product; anything else
becomes a new product with zero cost/price and a placeholder category.

`reconcile` is pure and works against a `ProductIndex`; `run_import` owns the
database work and commits one transaction per batch.
"""
import io
import logging
import math
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd
from sqlalchemy import select, update, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import transaction
from errors import ValidationFailed
from models import Product

logger = logging.getLogger(__name__)

BARCODE_1_COLUMN = 2
BARCODE_2_COLUMN = 3
QUANTITY_COLUMN = 4
DESCRIPTION_COLUMN = 6

MIN_DESCRIPTION_LENGTH = 3
MIN_BARCODE_LENGTH = 3
PLACEHOLDER_CATEGORY = "Selecione a categoria"

SPREADSHEET_EXTENSIONS = {".xlsx", ".xlsm"}
CSV_EXTENSIONS = {".csv"}
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class ImportRow:
    line: int  # 1-based, as shown in the spreadsheet
    description: str
    quantity: int = 1
    barcode_1: Optional[str] = None
    barcode_2: Optional[str] = None

    def barcodes(self) -> list[str]:
        return [code for code in (self.barcode_1, self.barcode_2) if code]


@dataclass
class PendingProduct:
    """A product to be inserted; later rows may add to its quantity"""
    description: str
    quantity: int
    barcode_1: Optional[str] = None
    barcode_2: Optional[str] = None
    id: Optional[int] = None

    def to_values(self) -> dict:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_cost": 0.0,
            "sale_price": 0.0,
            "category": PLACEHOLDER_CATEGORY,
            "barcode_1": self.barcode_1,
            "barcode_2": self.barcode_2,
        }


Target = Union[int, PendingProduct]


def normalize_description(description: str) -> str:
    return description.strip().lower()


class ProductIndex:
    """Lookup of catalog products by normalized description and by barcode"""

    def __init__(self):
        self.by_description: dict[str, Target] = {}
        self.by_barcode: dict[str, Target] = {}

    @classmethod
    def from_products(cls, products: Iterable[tuple]) -> "ProductIndex":
        """Build from (id, description, barcode_1, barcode_2) tuples"""
        index = cls()
        for product_id, description, barcode_1, barcode_2 in products:
            index.add(product_id, description, [code for code in (barcode_1, barcode_2) if code])
        return index

    def add(self, target: Target, description: str, barcodes: Iterable[str]) -> None:
        # First product wins for duplicate keys, like a first-row lookup
        self.by_description.setdefault(normalize_description(description), target)
        for code in barcodes:
            self.by_barcode.setdefault(code, target)

    def find(self, row: ImportRow) -> Optional[Target]:
        match = self.by_description.get(normalize_description(row.description))
        if match is not None:
            return match
        for code in row.barcodes():
            match = self.by_barcode.get(code)
            if match is not None:
                return match
        return None

    def resolve(self) -> None:
        """Point entries for inserted products at their new ids"""
        for lookup in (self.by_description, self.by_barcode):
            for key, target in lookup.items():
                if isinstance(target, PendingProduct) and target.id is not None:
                    lookup[key] = target.id

    def snapshot(self) -> tuple[dict, dict]:
        return dict(self.by_description), dict(self.by_barcode)

    def restore(self, state: tuple[dict, dict]) -> None:
        self.by_description, self.by_barcode = dict(state[0]), dict(state[1])


@dataclass
class Reconciliation:
    inserts: list[PendingProduct] = field(default_factory=list)
    updates: dict[int, int] = field(default_factory=dict)  # product id -> quantity to add
    rejects: list[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0


def validate_row(row: ImportRow) -> Optional[str]:
    if len(row.description) < MIN_DESCRIPTION_LENGTH:
        return f"Line {row.line}: description missing or too short ({row.description!r})"
    if row.quantity < 0:
        return f"Line {row.line}: quantity must not be negative ({row.quantity})"
    return None


def reconcile(index: ProductIndex, rows: Iterable[ImportRow]) -> Reconciliation:
    """
    Split rows into inserts, quantity updates and rejects.

    New products are added to the index right away so later rows of the same
    file match them instead of creating duplicates.
    """
    outcome = Reconciliation()
    for row in rows:
        problem = validate_row(row)
        if problem:
            outcome.rejects.append(problem)
            continue

        target = index.find(row)
        if target is None:
            pending = PendingProduct(row.description, row.quantity, row.barcode_1, row.barcode_2)
            outcome.inserts.append(pending)
            index.add(pending, row.description, row.barcodes())
            outcome.created += 1
        elif isinstance(target, PendingProduct):
            target.quantity += row.quantity
            outcome.updated += 1
        else:
            outcome.updates[target] = outcome.updates.get(target, 0) + row.quantity
            outcome.updated += 1
    return outcome


def _cell_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            # Numeric barcodes come back as floats from some writers
            value = int(value)
    text = str(value).strip()
    return text or None


def _clean_barcode(value) -> Optional[str]:
    code = _cell_text(value)
    if code is None or "#" in code or len(code) < MIN_BARCODE_LENGTH:
        return None
    return code


def _quantity(value) -> int:
    text = _cell_text(value)
    if text is None:
        return 1
    try:
        quantity = int(float(text))
    except (ValueError, OverflowError):
        return 1
    return quantity or 1


def rows_from_frame(frame: pd.DataFrame) -> list[ImportRow]:
    """Map a header-less frame (header still in row 0) to import rows"""
    rows = []
    for position, values in enumerate(frame.itertuples(index=False, name=None)):
        if position == 0:
            continue
        cells = list(values) + [None] * max(0, DESCRIPTION_COLUMN + 1 - len(values))
        rows.append(ImportRow(
            line=position + 1,
            description=_cell_text(cells[DESCRIPTION_COLUMN]) or "",
            quantity=_quantity(cells[QUANTITY_COLUMN]),
            barcode_1=_clean_barcode(cells[BARCODE_1_COLUMN]),
            barcode_2=_clean_barcode(cells[BARCODE_2_COLUMN]),
        ))
    return rows


def parse_spreadsheet(content: bytes, filename: str) -> list[ImportRow]:
    extension = Path(filename or "").suffix.lower()
    buffer = io.BytesIO(content)
    try:
        if extension in SPREADSHEET_EXTENSIONS:
            frame = pd.read_excel(buffer, header=None, dtype=object, engine="openpyxl")
        elif extension in CSV_EXTENSIONS:
            frame = pd.read_csv(buffer, header=None, dtype=object, keep_default_na=False)
        else:
            allowed = ", ".join(sorted(SPREADSHEET_EXTENSIONS | CSV_EXTENSIONS))
            raise ValidationFailed(f"Unsupported file type. Allowed: {allowed}")
    except (ValueError, KeyError, OSError, zipfile.BadZipFile) as e:
        raise ValidationFailed("Empty file or invalid format", details=str(e))

    frame = frame.astype(object).where(frame.notna(), None)
    if frame.empty:
        raise ValidationFailed("Empty file or invalid format")
    return rows_from_frame(frame)


async def load_index(session: AsyncSession) -> ProductIndex:
    result = await session.execute(
        select(Product.id, Product.description, Product.barcode_1, Product.barcode_2).order_by(Product.id)
    )
    return ProductIndex.from_products(result.all())


async def _apply(session: AsyncSession, outcome: Reconciliation) -> None:
    for product_id, delta in outcome.updates.items():
        await session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(quantity=Product.quantity + delta)
            .execution_options(synchronize_session=False)
        )
    if outcome.inserts:
        result = await session.execute(
            insert(Product).returning(Product.id, sort_by_parameter_order=True),
            [pending.to_values() for pending in outcome.inserts],
        )
        for pending, product_id in zip(outcome.inserts, result.scalars().all()):
            pending.id = product_id


async def run_import(
    session: AsyncSession,
    rows: list[ImportRow],
    batch_size: Optional[int] = None,
    max_errors: Optional[int] = None,
) -> dict:
    """
    Import rows in batches, one transaction per batch.

    A failed batch is rolled back and counted as failed rows; batches already
    committed stay committed.
    """
    batch_size = batch_size or settings.IMPORT_BATCH_SIZE
    max_errors = max_errors if max_errors is not None else settings.IMPORT_MAX_ERROR_MESSAGES

    index = await load_index(session)
    created = updated = failed = 0
    messages: list[str] = []

    for start in range(0, len(rows), batch_size):
        batch = rows[start:start + batch_size]
        checkpoint = index.snapshot()
        outcome = reconcile(index, batch)
        try:
            async with transaction(session):
                await _apply(session, outcome)
        except SQLAlchemyError as e:
            logger.error(f"Import batch starting at line {batch[0].line} failed: {e}", exc_info=True)
            index.restore(checkpoint)
            failed += len(batch)
            messages.append(f"Lines {batch[0].line}-{batch[-1].line}: batch failed ({e.__class__.__name__})")
            continue

        index.resolve()
        created += outcome.created
        updated += outcome.updated
        failed += len(outcome.rejects)
        messages.extend(outcome.rejects)
        logger.info(
            f"Import batch {start // batch_size + 1}: {outcome.created} created, "
            f"{outcome.updated} updated, {len(outcome.rejects)} rejected"
        )

    succeeded = created + updated
    logger.info(f"Import finished: {succeeded} succeeded, {failed} failed")
    return {
        "message": "Import finished",
        "total_rows": len(rows),
        "created": created,
        "updated": updated,
        "succeeded": succeeded,
        "failed": failed,
        "errors": messages[:max_errors],
    }


def build_template() -> bytes:
    """Example spreadsheet with the column layout the importer reads"""
    frame = pd.DataFrame([
        {
            "Item": 1,
            "Reference": "REF-001",
            "Barcode 1": "7891234567890",
            "Barcode 2": "0987654321",
            "Quantity": 10,
            "Unit": "UN",
            "Description": "Example product",
        },
    ])
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine="xlsxwriter") as writer:
        frame.to_excel(writer, sheet_name="Products", index=False)

        worksheet = writer.sheets["Products"]
        header_format = writer.book.add_format({"bold": True, "border": 1, "align": "center"})
        for col_num, value in enumerate(frame.columns.values):
            worksheet.write(0, col_num, value, header_format)
            worksheet.set_column(col_num, col_num, max(len(str(value)), 14) + 2)
    output.seek(0)
    return output.getvalue()
