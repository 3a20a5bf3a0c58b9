"""Enumerations shared across the mart ledger modules.

The workbook layer, the ledger engine and the CLI all agree on these values,
so status strings and sheet names are never spelled out twice.
"""

from __future__ import annotations

from enum import Enum


# Schema version the workbook must declare in config.ini before any write.
EXPECTED_SCHEMA_VERSION = "1.0.0"

REFILL_ID_PREFIX = "REF"
SALE_ID_PREFIX = "SAL"


class PaymentStatus(str, Enum):
    """Payment state of a recorded sale. Any status may follow any other."""

    PENDING = "Pending"
    PARTIAL_PAID = "Partial Paid"
    PAID = "Paid"


class MartRegion(str, Enum):
    """Regions a retail partner can be onboarded in."""

    GURUGRAM = "Gurugram"
    DELHI = "Delhi"

    @property
    def id_prefix(self) -> str:
        return _REGION_ID_PREFIXES[self]


_REGION_ID_PREFIXES = {
    MartRegion.GURUGRAM: "GGM",
    MartRegion.DELHI: "DLM",
}


class SheetName(str, Enum):
    """Worksheet names managed by the data access layer."""

    PRODUCTS = "Products"
    MARTS = "Marts"
    MART_STOCK = "MartStock"
    MART_PRICES = "MartPrices"
    REFILLS = "Refills"
    REFILL_LINES = "RefillLines"
    SALES = "Sales"
    SALE_LINES = "SaleLines"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "REFILL_ID_PREFIX",
    "SALE_ID_PREFIX",
    "PaymentStatus",
    "MartRegion",
    "SheetName",
]
