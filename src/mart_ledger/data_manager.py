"""Data access layer for the mart ledger.

This module reads from and writes to the master workbook. Stock rules live
in :mod:`mart_ledger.ledger`; nothing here decides how a refill or a sale
changes a mart.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving, and reloading the Excel file.
3. Record storage: the read-only product catalog and
   :class:`WorkbookMartGateway`, which loads and overwrites whole mart
   records (identity, stock snapshot, price overrides and both ledgers).
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import MartRegion, PaymentStatus, SheetName
from .ledger import (
    GatewayFailure,
    MartRecord,
    NotFound,
    ProductCatalog,
    ProductRow,
    RefillEntry,
    SalesEntry,
    entry_ids,
    generate_entry_id,
)


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: ["ProductKey", "ProductName", "SizeLabel", "DefaultUnitPrice"],
    SheetName.MARTS.value: [
        "MartID",
        "Name",
        "Mobile",
        "Sector",
        "Address",
        "OnboardingDate",
        "Region",
        "CommissionPercent",
    ],
    SheetName.MART_STOCK.value: ["MartID", "ProductKey", "Quantity"],
    SheetName.MART_PRICES.value: ["MartID", "ProductKey", "UnitPrice"],
    SheetName.REFILLS.value: ["MartID", "RefillID", "Date"],
    SheetName.REFILL_LINES.value: ["MartID", "RefillID", "ProductKey", "Quantity"],
    SheetName.SALES.value: ["MartID", "SaleID", "Date", "TotalAmount", "Status", "AmountReceived"],
    SheetName.SALE_LINES.value: ["MartID", "SaleID", "ProductKey", "Quantity"],
}

# Sheets holding rows that belong to a single mart, keyed by their MartID column.
MART_CHILD_SHEETS = (
    SheetName.MART_STOCK.value,
    SheetName.MART_PRICES.value,
    SheetName.REFILLS.value,
    SheetName.REFILL_LINES.value,
    SheetName.SALES.value,
    SheetName.SALE_LINES.value,
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    strict_stock: bool = False
    enforce_payment_ceiling: bool = False
    default_region: MartRegion = MartRegion.GURUGRAM


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path is returned as-is, without verification, so callers can
    deliberately target a non-standard location. Otherwise the search walks
    from the current working directory toward the filesystem root and the
    first ``CONFIG_FILE_NAME`` found wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Ledger]`` and ``[Defaults]`` are
    optional and fall back to the permissive stock policy, no payment ceiling
    and the Gurugram region. A relative ``DataFile`` is anchored to
    ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory relative ``DataFile`` entries are
            resolved against.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required ``[System]`` entry is missing.
        ValueError: If a boolean flag or the default region is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    strict_stock = parser.getboolean("Ledger", "StrictStock", fallback=False)
    enforce_ceiling = parser.getboolean("Ledger", "EnforcePaymentCeiling", fallback=False)
    region_raw = parser.get("Defaults", "Region", fallback=MartRegion.GURUGRAM.value)
    try:
        default_region = MartRegion(region_raw.strip())
    except ValueError as exc:
        raise ValueError(f"Unknown default region in configuration: {region_raw}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        strict_stock=strict_stock,
        enforce_payment_ceiling=enforce_ceiling,
        default_region=default_region,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Sheet helpers
# ---------------------------------------------------------------------------


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles of ``sheet`` to their 1-based column index."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    """Yield the value tuples of ``sheet_name`` skipping the header and blank rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Returns:
        int | None: 1-based Excel row index, or ``None`` when absent.

    Raises:
        KeyError: If ``key_column`` is not a header of ``sheet_name``.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def delete_matching_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Remove every row whose ``key_column`` equals ``key_value``.

    Rows are deleted bottom-up so earlier indices stay valid.

    Returns:
        int: Number of removed rows.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    return int(raw) if raw is not None else 0


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


# ---------------------------------------------------------------------------
# Product catalog
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    return [record.product_key, record.product_name, record.size_label, record.default_unit_price]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a ``Products`` row into a :class:`ProductRow`.

    Keys and names are coerced to ``str`` because Excel may store them as
    numbers; prices become :class:`~decimal.Decimal`.
    """

    product_key, product_name, size_label, price_raw = raw_row[:4]
    return ProductRow(
        product_key=str(product_key),
        product_name=_to_text(product_name),
        size_label=_to_text(size_label),
        default_unit_price=_to_decimal(price_raw, "0.00"),
    )


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    for raw in iter_sheet_rows(workbook, SheetName.PRODUCTS.value):
        yield deserialize_product(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    workbook[SheetName.PRODUCTS.value].append(serialize_product(record))


def load_catalog(workbook: Workbook) -> ProductCatalog:
    """Build the read-only :class:`ProductCatalog` from the ``Products`` sheet."""

    catalog = ProductCatalog(iter_products(workbook))
    log.debug("Loaded product catalog with %d entries", len(catalog))
    return catalog


# ---------------------------------------------------------------------------
# Mart records
# ---------------------------------------------------------------------------


def serialize_mart_rows(mart: MartRecord) -> Dict[str, List[list[object]]]:
    """Flatten a mart into the rows each sheet stores for it.

    Returns:
        dict[str, list[list[object]]]: Sheet name to rows in column order. The
            ``Marts`` entry always holds exactly one row.
    """

    rows: Dict[str, List[list[object]]] = {name: [] for name in SHEET_COLUMNS if name != SheetName.PRODUCTS.value}
    rows[SheetName.MARTS.value].append(
        [
            mart.mart_id,
            mart.name,
            mart.mobile,
            mart.sector,
            mart.address,
            mart.onboarding_date,
            mart.region.value,
            mart.commission_percent,
        ]
    )
    for product_key, quantity in mart.stock.items():
        rows[SheetName.MART_STOCK.value].append([mart.mart_id, product_key, quantity])
    for product_key, price in mart.price_overrides.items():
        rows[SheetName.MART_PRICES.value].append([mart.mart_id, product_key, price])
    for refill in mart.refills:
        rows[SheetName.REFILLS.value].append([mart.mart_id, refill.entry_id, refill.date_iso])
        for product_key, quantity in refill.quantities.items():
            rows[SheetName.REFILL_LINES.value].append([mart.mart_id, refill.entry_id, product_key, quantity])
    for sale in mart.sales:
        rows[SheetName.SALES.value].append(
            [
                mart.mart_id,
                sale.entry_id,
                sale.date_iso,
                sale.total_amount,
                sale.status.value,
                sale.amount_received,
            ]
        )
        for product_key, quantity in sale.quantities.items():
            rows[SheetName.SALE_LINES.value].append([mart.mart_id, sale.entry_id, product_key, quantity])
    return rows


def _group_by_mart(workbook: Workbook, sheet_name: str) -> Dict[str, List[tuple]]:
    grouped: Dict[str, List[tuple]] = {}
    for raw in iter_sheet_rows(workbook, sheet_name):
        grouped.setdefault(str(raw[0]), []).append(raw)
    return grouped


def _group_lines(rows: Iterable[tuple]) -> Dict[str, Dict[str, int]]:
    lines: Dict[str, Dict[str, int]] = {}
    for _mart_id, entry_id, product_key, quantity in (row[:4] for row in rows):
        lines.setdefault(str(entry_id), {})[str(product_key)] = _to_int(quantity)
    return lines


def _require_unique_entries(mart: MartRecord) -> None:
    seen = set()
    for entry_id in entry_ids(mart):
        if entry_id in seen:
            log.error("Refusing to store mart '%s': entry id '%s' appears twice", mart.mart_id, entry_id)
            raise GatewayFailure(f"Duplicate entry id '{entry_id}' on mart '{mart.mart_id}'")
        seen.add(entry_id)


def iter_marts(workbook: Workbook) -> Iterable[MartRecord]:
    """Rebuild every mart from the workbook in ``Marts`` sheet order.

    Child sheets are read once and grouped by ``MartID``; ledger entries keep
    the order in which their rows were written.
    """

    stock_rows = _group_by_mart(workbook, SheetName.MART_STOCK.value)
    price_rows = _group_by_mart(workbook, SheetName.MART_PRICES.value)
    refill_rows = _group_by_mart(workbook, SheetName.REFILLS.value)
    refill_line_rows = _group_by_mart(workbook, SheetName.REFILL_LINES.value)
    sale_rows = _group_by_mart(workbook, SheetName.SALES.value)
    sale_line_rows = _group_by_mart(workbook, SheetName.SALE_LINES.value)

    for raw in iter_sheet_rows(workbook, SheetName.MARTS.value):
        (
            mart_id,
            name,
            mobile,
            sector,
            address,
            onboarding_date,
            region,
            commission_raw,
        ) = raw[:8]
        mart_id = str(mart_id)

        refill_lines = _group_lines(refill_line_rows.get(mart_id, []))
        sale_lines = _group_lines(sale_line_rows.get(mart_id, []))

        refills = tuple(
            RefillEntry(
                entry_id=str(entry_id),
                date_iso=_to_text(date_iso),
                quantities=refill_lines.get(str(entry_id), {}),
            )
            for _mart, entry_id, date_iso in (row[:3] for row in refill_rows.get(mart_id, []))
        )
        sales = tuple(
            SalesEntry(
                entry_id=str(entry_id),
                date_iso=_to_text(date_iso),
                quantities=sale_lines.get(str(entry_id), {}),
                total_amount=_to_decimal(total_raw, "0.00"),
                status=PaymentStatus(status_raw) if status_raw is not None else PaymentStatus.PENDING,
                amount_received=_to_decimal(received_raw, "0.00"),
            )
            for _mart, entry_id, date_iso, total_raw, status_raw, received_raw in (
                row[:6] for row in sale_rows.get(mart_id, [])
            )
        )

        yield MartRecord(
            mart_id=mart_id,
            name=_to_text(name),
            mobile=_to_text(mobile),
            sector=_to_text(sector),
            address=_to_text(address),
            onboarding_date=_to_text(onboarding_date),
            region=MartRegion(region) if region is not None else MartRegion.GURUGRAM,
            commission_percent=_to_decimal(commission_raw) if commission_raw is not None else None,
            stock={str(row[1]): _to_int(row[2]) for row in stock_rows.get(mart_id, [])},
            price_overrides={str(row[1]): _to_decimal(row[2]) for row in price_rows.get(mart_id, [])},
            refills=refills,
            sales=sales,
        )


class WorkbookMartGateway:
    """Whole-record persistence for marts backed by the master workbook.

    Every write replaces all rows belonging to one mart and saves the file
    immediately. There is no version check: when two sessions update the same
    mart, the later write wins. A failed save reloads the workbook from disk so
    the in-memory copy never holds a half-applied record.
    """

    def __init__(self, workbook: Workbook, data_file: Path) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file)

    def load_all(self) -> List[MartRecord]:
        marts = list(iter_marts(self.workbook))
        log.debug("Loaded %d marts from '%s'", len(marts), self.data_file)
        return marts

    def load(self, mart_id: str) -> MartRecord:
        for mart in self.load_all():
            if mart.mart_id == mart_id:
                return mart
        log.warning("Mart lookup failed for id '%s'", mart_id)
        raise NotFound(f"Unknown mart id: {mart_id}")

    def add(self, mart: MartRecord, *, when: Optional[datetime] = None) -> MartRecord:
        """Store a new mart, assigning a region-prefixed id when it has none.

        Raises:
            GatewayFailure: If the id is already taken, two ledger entries
                share an id or the save fails.
        """

        if not mart.mart_id:
            moment = when if when is not None else datetime.now(UTC)
            mart = replace(mart, mart_id=generate_entry_id(mart.region.id_prefix, moment))
        if locate_row(self.workbook, SheetName.MARTS.value, "MartID", mart.mart_id) is not None:
            log.error("Refusing to add mart '%s': id already exists", mart.mart_id)
            raise GatewayFailure(f"Mart id already exists: {mart.mart_id}")
        _require_unique_entries(mart)

        for sheet_name, rows in serialize_mart_rows(mart).items():
            sheet = self.workbook[sheet_name]
            for row in rows:
                sheet.append(row)
        self._commit(f"add mart '{mart.mart_id}'")
        return mart

    def update(self, mart: MartRecord) -> MartRecord:
        """Overwrite the stored mart with ``mart`` as a whole.

        The ``Marts`` row is rewritten in place so listing order is preserved;
        rows in the child sheets are dropped and re-appended.

        Raises:
            NotFound: If no mart with ``mart.mart_id`` is stored.
            GatewayFailure: If two ledger entries share an id or the save
                fails.
        """

        row_index = locate_row(self.workbook, SheetName.MARTS.value, "MartID", mart.mart_id)
        if row_index is None:
            log.warning("Update failed: mart '%s' not found", mart.mart_id)
            raise NotFound(f"Unknown mart id: {mart.mart_id}")
        _require_unique_entries(mart)

        rows = serialize_mart_rows(mart)
        marts_sheet = self.workbook[SheetName.MARTS.value]
        for column_index, value in enumerate(rows[SheetName.MARTS.value][0], start=1):
            marts_sheet.cell(row=row_index, column=column_index, value=value)

        for sheet_name in MART_CHILD_SHEETS:
            delete_matching_rows(self.workbook, sheet_name, "MartID", mart.mart_id)
            sheet = self.workbook[sheet_name]
            for row in rows[sheet_name]:
                sheet.append(row)
        self._commit(f"update mart '{mart.mart_id}'")
        return mart

    def delete(self, mart_id: str) -> None:
        """Remove a mart together with its stock, prices and ledgers."""

        removed = delete_matching_rows(self.workbook, SheetName.MARTS.value, "MartID", mart_id)
        if not removed:
            log.warning("Delete failed: mart '%s' not found", mart_id)
            raise NotFound(f"Unknown mart id: {mart_id}")
        for sheet_name in MART_CHILD_SHEETS:
            delete_matching_rows(self.workbook, sheet_name, "MartID", mart_id)
        self._commit(f"delete mart '{mart_id}'")

    def _commit(self, action: str) -> None:
        try:
            save_workbook(self.workbook, self.data_file)
        except OSError as exc:
            log.error("Unable to %s: saving '%s' failed: %s", action, self.data_file, exc)
            try:
                self.workbook = refresh_workbook(self.data_file)
            except OSError:
                log.exception("Reloading '%s' after a failed save also failed", self.data_file)
            raise GatewayFailure(f"Unable to {action}: {exc}") from exc
        log.debug("Saved workbook '%s' after %s", self.data_file, action)

