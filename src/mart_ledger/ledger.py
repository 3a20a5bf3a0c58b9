"""Inventory ledger engine for retail partner ("mart") stock.

Every function in this module is pure: it receives the current
:class:`MartRecord` (or a single ledger entry) and returns a new value without
touching the workbook, the clock or any global state. The orchestration layer
in :mod:`mart_ledger.core_logic` sequences these calls with the persistence
gateway, so a mutation is always produced as one complete record before the
single write that stores it.

Stock rules:

* a refill adds its quantities to the snapshot;
* a sale subtracts its quantities with a floor of zero, unless the caller
  opts into strict mode, in which case overselling raises
  :class:`InsufficientStock`;
* both append exactly one entry to the matching ledger and never reorder or
  drop earlier entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from . import log
from .constants import MartRegion, PaymentStatus


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LedgerError(Exception):
    """Base class for every failure raised by the mart ledger."""


class InvalidQuantity(LedgerError, ValueError):
    """Raised when a unit count is negative or not an integer."""


class InvalidAmount(LedgerError, ValueError):
    """Raised when a monetary value or percentage is out of range."""


class InsufficientStock(LedgerError):
    """Raised in strict mode when a sale exceeds the on-hand stock."""

    def __init__(self, product_key: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_key}': requested {requested}, available {available}"
        )
        self.product_key = product_key
        self.requested = requested
        self.available = available


class UnresolvablePrice(LedgerError):
    """A sale line whose product has neither an override nor a catalog price.

    Instances are collected on :class:`SaleTotal` rather than raised, because a
    sale with unpriced lines is still recorded with a partial total.
    """

    def __init__(self, product_key: str) -> None:
        super().__init__(f"No unit price available for product '{product_key}'")
        self.product_key = product_key


class NotFound(LedgerError, LookupError):
    """Raised when a mart or ledger entry id cannot be located."""


class DuplicateEntry(LedgerError, ValueError):
    """Raised when a ledger entry id is already used by the same mart."""


class GatewayFailure(LedgerError):
    """Raised when the persistence gateway cannot store or load a record."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


Quantities = Mapping[str, int]
PriceResolver = Callable[[str], Optional[Decimal]]


@dataclass(frozen=True)
class ProductRow:
    """Catalog entry for a sellable product size."""

    product_key: str
    product_name: str
    size_label: str
    default_unit_price: Decimal


class ProductCatalog:
    """Read-only product lookup injected into price resolution.

    The catalog is built from any iterable of :class:`ProductRow`, which lets
    tests supply synthetic catalogs without a workbook.
    """

    def __init__(self, products: Iterable[ProductRow] = ()) -> None:
        self._by_key: Dict[str, ProductRow] = {product.product_key: product for product in products}

    def resolve(self, product_key: str) -> Optional[ProductRow]:
        return self._by_key.get(product_key)

    def keys(self) -> List[str]:
        return list(self._by_key)

    def __iter__(self) -> Iterator[ProductRow]:
        return iter(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, product_key: object) -> bool:
        return product_key in self._by_key


@dataclass(frozen=True)
class RefillEntry:
    """Stock delivered to a mart. Immutable once created."""

    entry_id: str
    date_iso: str
    quantities: Dict[str, int]


@dataclass(frozen=True)
class SalesEntry:
    """Units sold from a mart's stock together with their payment state.

    ``total_amount`` is fixed when the sale is created. Only ``status`` and
    ``amount_received`` change afterwards, through :func:`reconcile_payment`.
    """

    entry_id: str
    date_iso: str
    quantities: Dict[str, int]
    total_amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    amount_received: Decimal = Decimal("0")


@dataclass(frozen=True)
class MartRecord:
    """A retail partner with its stock snapshot and both ledgers."""

    mart_id: str
    name: str
    mobile: str
    sector: str
    address: str
    onboarding_date: str
    region: MartRegion = MartRegion.GURUGRAM
    commission_percent: Optional[Decimal] = None
    stock: Dict[str, int] = field(default_factory=dict)
    price_overrides: Dict[str, Decimal] = field(default_factory=dict)
    refills: Tuple[RefillEntry, ...] = ()
    sales: Tuple[SalesEntry, ...] = ()

    def stock_of(self, product_key: str) -> int:
        return self.stock.get(product_key, 0)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_quantities(quantities: Quantities) -> Dict[str, int]:
    """Check a quantity map and return a normalized copy.

    Args:
        quantities (Mapping[str, int]): Product key to unit count, as received
            from a refill or sale.

    Returns:
        dict[str, int]: Copy of ``quantities`` without zero lines, preserving
            the caller's key order.

    Raises:
        InvalidQuantity: If a key is blank or a value is negative, fractional
            or not an integer at all. Booleans are rejected even though they
            subclass ``int``.
    """

    normalized: Dict[str, int] = {}
    for product_key, quantity in quantities.items():
        if not isinstance(product_key, str) or not product_key.strip():
            log.error("Quantity validation failed: blank product key %r", product_key)
            raise InvalidQuantity(f"Invalid product key: {product_key!r}")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            log.error("Quantity validation failed for '%s': %r is not an integer", product_key, quantity)
            raise InvalidQuantity(f"Quantity for '{product_key}' must be a whole number of units")
        if quantity < 0:
            log.error("Quantity validation failed for '%s': %s", product_key, quantity)
            raise InvalidQuantity(f"Quantity for '{product_key}' must be zero or positive")
        if quantity:
            normalized[product_key] = quantity
    return normalized


def to_money(value: Union[Decimal, int, str]) -> Decimal:
    """Convert user input to :class:`~decimal.Decimal` without float artefacts."""

    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except ArithmeticError as exc:
            raise InvalidAmount(f"Not a monetary value: {value!r}") from exc
    require_finite(amount)
    return amount


def require_finite(amount: Decimal) -> None:
    """Reject ``NaN`` and ``Infinity``, which the workbook cannot store."""

    if not amount.is_finite():
        log.error("Monetary value validation failed: %s is not finite", amount)
        raise InvalidAmount(f"Not a finite monetary value: {amount}")


def require_nonnegative_money(amount: Decimal) -> None:
    require_finite(amount)
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise InvalidAmount("Amount must be zero or positive")


def require_positive_price(price: Decimal) -> None:
    require_finite(price)
    if price <= Decimal("0"):
        log.error("Unit price validation failed: %s", price)
        raise InvalidAmount("Unit price must be greater than zero")


def require_commission_range(commission_percent: Optional[Decimal]) -> None:
    if commission_percent is None:
        return
    require_finite(commission_percent)
    if not Decimal("0") <= commission_percent <= Decimal("100"):
        log.error("Commission validation failed: %s", commission_percent)
        raise InvalidAmount("Commission must be between 0 and 100 percent")


def _require_new_entry(mart: MartRecord, entry_id: str) -> None:
    if entry_id in entry_ids(mart):
        log.error("Entry id '%s' is already used by mart '%s'", entry_id, mart.mart_id)
        raise DuplicateEntry(f"Entry id '{entry_id}' already exists for mart '{mart.mart_id}'")


# ---------------------------------------------------------------------------
# Stock transactions
# ---------------------------------------------------------------------------


def apply_refill(mart: MartRecord, refill: RefillEntry) -> MartRecord:
    """Add a refill to the mart's stock and append it to the refill ledger.

    Args:
        mart (MartRecord): Current state of the mart.
        refill (RefillEntry): Delivery to apply. Its quantities are validated
            before any stock value is computed.

    Returns:
        MartRecord: New record whose stock for every refilled key grew by the
            delivered units. Keys absent from the refill keep their value and
            ``refills`` gains ``refill`` as its last element. Entry dates are
            not checked for ordering; ledger order is insertion order.

    Raises:
        InvalidQuantity: If any refill line is negative or not an integer.
        DuplicateEntry: If the mart already has an entry with this id.
    """

    quantities = validate_quantities(refill.quantities)
    _require_new_entry(mart, refill.entry_id)
    stock = dict(mart.stock)
    for product_key, quantity in quantities.items():
        stock[product_key] = stock.get(product_key, 0) + quantity
    entry = replace(refill, quantities=quantities)
    return replace(mart, stock=stock, refills=mart.refills + (entry,))


def apply_sale(mart: MartRecord, sale: SalesEntry, *, strict: bool = False) -> MartRecord:
    """Deduct a sale from the mart's stock and append it to the sales ledger.

    The default policy floors every product at zero, so a sale larger than the
    available stock is still recorded and the deficit is absorbed. With
    ``strict=True`` the whole sale is rejected instead.

    ``sale.total_amount`` is taken as-is; it must have been computed with
    :func:`compute_sale_total` beforehand.

    Raises:
        InvalidQuantity: If any sale line is negative or not an integer.
        DuplicateEntry: If the mart already has an entry with this id.
        InsufficientStock: In strict mode, when a line exceeds stock.
    """

    quantities = validate_quantities(sale.quantities)
    _require_new_entry(mart, sale.entry_id)
    stock = dict(mart.stock)
    for product_key, quantity in quantities.items():
        available = stock.get(product_key, 0)
        if quantity > available:
            if strict:
                log.warning(
                    "Rejected sale '%s' on mart '%s': %s x%d exceeds stock %d",
                    sale.entry_id,
                    mart.mart_id,
                    product_key,
                    quantity,
                    available,
                )
                raise InsufficientStock(product_key, quantity, available)
            log.warning(
                "Sale '%s' on mart '%s' oversells %s by %d units; stock floored at zero",
                sale.entry_id,
                mart.mart_id,
                product_key,
                quantity - available,
            )
        stock[product_key] = max(0, available - quantity)
    entry = replace(sale, quantities=quantities)
    return replace(mart, stock=stock, sales=mart.sales + (entry,))


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SaleTotal:
    """Result of totalling a sale: the amount and any lines left unpriced."""

    amount: Decimal
    unresolved: Tuple[UnresolvablePrice, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.unresolved

    @property
    def unresolved_keys(self) -> List[str]:
        return [warning.product_key for warning in self.unresolved]


def resolve_unit_price(mart: MartRecord, product_key: str, catalog: ProductCatalog) -> Optional[Decimal]:
    """Return the price a mart pays for ``product_key``.

    A mart-level override wins over the catalog default. ``None`` means no
    price exists anywhere; callers must not treat it as zero.
    """

    override = mart.price_overrides.get(product_key)
    if override is not None:
        return override
    product = catalog.resolve(product_key)
    if product is None:
        return None
    return product.default_unit_price


def price_resolver(mart: MartRecord, catalog: ProductCatalog) -> PriceResolver:
    """Bind :func:`resolve_unit_price` to one mart and catalog."""

    def _resolve(product_key: str) -> Optional[Decimal]:
        return resolve_unit_price(mart, product_key, catalog)

    return _resolve


def compute_sale_total(quantities: Quantities, resolver: PriceResolver) -> SaleTotal:
    """Sum ``quantity * unit price`` over the lines of a sale.

    Lines with a quantity of zero or less are skipped. Lines whose price
    cannot be resolved are skipped as well and reported through
    :attr:`SaleTotal.unresolved`, so the caller can warn the operator while
    still recording a partial total.
    """

    total = Decimal("0")
    unresolved: List[UnresolvablePrice] = []
    for product_key, quantity in quantities.items():
        if quantity <= 0:
            continue
        unit_price = resolver(product_key)
        if unit_price is None:
            unresolved.append(UnresolvablePrice(product_key))
            continue
        total += unit_price * quantity
    return SaleTotal(amount=total, unresolved=tuple(unresolved))


def set_price_override(mart: MartRecord, product_key: str, unit_price: Decimal) -> MartRecord:
    """Return ``mart`` with a mart-specific price for ``product_key``.

    Historical sales keep their stored totals.
    """

    require_positive_price(unit_price)
    overrides = dict(mart.price_overrides)
    overrides[product_key] = unit_price
    return replace(mart, price_overrides=overrides)


def clear_price_override(mart: MartRecord, product_key: str) -> MartRecord:
    """Return ``mart`` falling back to the catalog price for ``product_key``."""

    if product_key not in mart.price_overrides:
        return mart
    overrides = {key: value for key, value in mart.price_overrides.items() if key != product_key}
    return replace(mart, price_overrides=overrides)


# ---------------------------------------------------------------------------
# Payment reconciliation
# ---------------------------------------------------------------------------


def reconcile_payment(
    sale: SalesEntry,
    status: Union[PaymentStatus, str],
    amount_received: Decimal,
    *,
    enforce_ceiling: bool = False,
) -> SalesEntry:
    """Update the payment fields of a sale.

    Any status may follow any other, and ``amount_received`` is stored as
    given; setting ``Paid`` does not imply the full amount was received.
    Quantities, total and date are carried over untouched.

    Args:
        sale (SalesEntry): Sale being reconciled.
        status (PaymentStatus | str): New status or its display value.
        amount_received (Decimal): Money collected so far, zero or positive.
        enforce_ceiling (bool): When ``True`` reject amounts above
            ``sale.total_amount``.

    Returns:
        SalesEntry: Copy of ``sale`` with the new payment state.

    Raises:
        InvalidAmount: If the amount is negative, or exceeds the total while
            ``enforce_ceiling`` is set.
        ValueError: If ``status`` is not a known payment status.
    """

    new_status = PaymentStatus(status)
    require_nonnegative_money(amount_received)
    if enforce_ceiling and amount_received > sale.total_amount:
        log.error(
            "Payment for sale '%s' exceeds its total: %s > %s",
            sale.entry_id,
            amount_received,
            sale.total_amount,
        )
        raise InvalidAmount("Amount received cannot exceed the sale total")
    return replace(sale, status=new_status, amount_received=amount_received)


def find_sale(mart: MartRecord, sale_id: str) -> SalesEntry:
    for sale in mart.sales:
        if sale.entry_id == sale_id:
            return sale
    log.warning("Sale lookup failed for id '%s' on mart '%s'", sale_id, mart.mart_id)
    raise NotFound(f"Unknown sale id '{sale_id}' for mart '{mart.mart_id}'")


def replace_sale(mart: MartRecord, sale: SalesEntry) -> MartRecord:
    """Swap the ledger entry with ``sale.entry_id`` for ``sale``, keeping its position."""

    sales = list(mart.sales)
    for index, existing in enumerate(sales):
        if existing.entry_id == sale.entry_id:
            sales[index] = sale
            return replace(mart, sales=tuple(sales))
    raise NotFound(f"Unknown sale id '{sale.entry_id}' for mart '{mart.mart_id}'")


# ---------------------------------------------------------------------------
# Ledger queries
# ---------------------------------------------------------------------------


def generate_entry_id(prefix: str, when: datetime) -> str:
    """Build a sortable identifier such as ``SAL-20260101093000123456``."""

    return f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}"


def _creation_key(entry_id: str) -> str:
    return entry_id.split("-", 1)[-1]


def entry_ids(mart: MartRecord) -> List[str]:
    """Ids of every refill and sale of ``mart``, refills first."""

    return [entry.entry_id for entry in (*mart.refills, *mart.sales)]


def unique_entry_id(mart: MartRecord, prefix: str, when: datetime) -> str:
    """Build an entry id for ``when`` whose timestamp no entry of ``mart`` uses.

    Refill and sale ids share the timestamp space, so the moment is bumped by
    one microsecond until it is free in both ledgers. This keeps every id
    unique within the mart and gives :func:`replay_stock` a strict order.
    """

    taken = {_creation_key(entry_id) for entry_id in entry_ids(mart)}
    moment = when
    while _creation_key(generate_entry_id(prefix, moment)) in taken:
        moment += timedelta(microseconds=1)
    return generate_entry_id(prefix, moment)


def total_refilled(mart: MartRecord) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for refill in mart.refills:
        for product_key, quantity in refill.quantities.items():
            totals[product_key] = totals.get(product_key, 0) + quantity
    return totals


def total_sold(mart: MartRecord) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for sale in mart.sales:
        for product_key, quantity in sale.quantities.items():
            totals[product_key] = totals.get(product_key, 0) + quantity
    return totals


def replay_stock(mart: MartRecord) -> Dict[str, int]:
    """Rebuild the stock snapshot from the two ledgers.

    Entries are replayed in creation order, taken from the timestamp embedded
    in their ids, with the same floor-at-zero rule :func:`apply_sale` uses.
    Products whose replayed stock is zero are omitted.

    Ids from :func:`unique_entry_id` never share a timestamp. For hand-built
    records that do, ties keep insertion order within a ledger and a refill
    is applied before a sale with the same timestamp.
    """

    entries: List[Union[RefillEntry, SalesEntry]] = [*mart.refills, *mart.sales]
    entries.sort(key=lambda entry: _creation_key(entry.entry_id))
    stock: Dict[str, int] = {}
    for entry in entries:
        sign = 1 if isinstance(entry, RefillEntry) else -1
        for product_key, quantity in entry.quantities.items():
            stock[product_key] = max(0, stock.get(product_key, 0) + sign * quantity)
    log.debug("Replayed %d ledger entries for mart '%s'", len(entries), mart.mart_id)
    return {key: value for key, value in stock.items() if value}


def verify_stock(mart: MartRecord) -> bool:
    """Check that the stored snapshot matches a replay of the ledgers."""

    stored = {key: value for key, value in mart.stock.items() if value}
    return stored == replay_stock(mart)


def outstanding_amount(sale: SalesEntry) -> Decimal:
    return max(Decimal("0"), sale.total_amount - sale.amount_received)


def payment_summary(mart: MartRecord) -> Dict[str, Union[Decimal, int]]:
    """Aggregate billed, received and outstanding money across a mart's sales.

    The returned mapping also carries one count per :class:`PaymentStatus`
    value, keyed by the status display string.
    """

    billed = Decimal("0")
    received = Decimal("0")
    outstanding = Decimal("0")
    summary: Dict[str, Union[Decimal, int]] = {status.value: 0 for status in PaymentStatus}
    for sale in mart.sales:
        billed += sale.total_amount
        received += sale.amount_received
        outstanding += outstanding_amount(sale)
        summary[sale.status.value] = int(summary[sale.status.value]) + 1
    summary["billed"] = billed
    summary["received"] = received
    summary["outstanding"] = outstanding
    return summary


def commission_due(mart: MartRecord) -> Decimal:
    """Commission owed to the mart on everything billed so far."""

    if not mart.commission_percent:
        return Decimal("0")
    billed = sum((sale.total_amount for sale in mart.sales), Decimal("0"))
    return billed * mart.commission_percent / Decimal("100")


__all__ = [
    "LedgerError",
    "InvalidQuantity",
    "InvalidAmount",
    "InsufficientStock",
    "UnresolvablePrice",
    "NotFound",
    "DuplicateEntry",
    "GatewayFailure",
    "ProductRow",
    "ProductCatalog",
    "RefillEntry",
    "SalesEntry",
    "MartRecord",
    "SaleTotal",
    "validate_quantities",
    "require_finite",
    "to_money",
    "apply_refill",
    "apply_sale",
    "resolve_unit_price",
    "price_resolver",
    "compute_sale_total",
    "set_price_override",
    "clear_price_override",
    "reconcile_payment",
    "find_sale",
    "replace_sale",
    "generate_entry_id",
    "entry_ids",
    "unique_entry_id",
    "total_refilled",
    "total_sold",
    "replay_stock",
    "verify_stock",
    "outstanding_amount",
    "payment_summary",
    "commission_due",
]
