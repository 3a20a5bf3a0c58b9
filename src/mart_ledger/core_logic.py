"""Business logic layer for the mart ledger.

Each public ``record_*``/``update_*`` function follows the same sequence:
load the whole mart through the gateway, derive the next state with the pure
functions of :mod:`mart_ledger.ledger`, and hand the complete record back to
the gateway in a single write. Nothing is committed locally before that write
succeeds, and gateway errors reach the caller unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from . import data_manager, ledger, log
from .constants import EXPECTED_SCHEMA_VERSION, REFILL_ID_PREFIX, SALE_ID_PREFIX, MartRegion, PaymentStatus


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, persistence gateway and product catalog used by the BLL."""

    settings: data_manager.ConfigSettings
    gateway: data_manager.WorkbookMartGateway
    catalog: ledger.ProductCatalog


@dataclass(frozen=True)
class OnboardMartCommand:
    """User intent for onboarding a new retail partner."""

    name: str
    mobile: str
    sector: str = ""
    address: str = ""
    onboarding_date: Optional[date] = None
    region: Optional[MartRegion] = None
    commission_percent: Optional[Decimal] = None
    price_overrides: Mapping[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class MartProfileCommand:
    """Edit of a mart's identity fields. ``None`` leaves a field unchanged."""

    mart_id: str
    name: Optional[str] = None
    mobile: Optional[str] = None
    sector: Optional[str] = None
    address: Optional[str] = None
    onboarding_date: Optional[date] = None
    commission_percent: Optional[Decimal] = None


@dataclass(frozen=True)
class PriceOverrideCommand:
    """User intent for setting a mart-specific unit price."""

    mart_id: str
    product_key: str
    unit_price: Decimal


@dataclass(frozen=True)
class RefillCommand:
    """User intent for delivering stock to a mart."""

    mart_id: str
    quantities: Mapping[str, int]
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording units sold by a mart."""

    mart_id: str
    quantities: Mapping[str, int]
    status: PaymentStatus = PaymentStatus.PENDING
    amount_received: Decimal = Decimal("0")
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for reconciling the payment of an existing sale."""

    mart_id: str
    sale_id: str
    status: PaymentStatus
    amount_received: Decimal


@dataclass(frozen=True)
class SaleOutcome:
    """Result of :func:`record_sale`.

    ``unresolved`` lists the product keys that had no price and were left out
    of ``sale.total_amount``.
    """

    mart: ledger.MartRecord
    sale: ledger.SalesEntry
    unresolved: Tuple[str, ...] = ()


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration, open the workbook and build the catalog.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for the orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    gateway = data_manager.WorkbookMartGateway(workbook, settings.data_file)
    catalog = data_manager.load_catalog(workbook)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, gateway=gateway, catalog=catalog)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a workbook whose declared schema differs from ours.

    Raises:
        RuntimeError: If ``config.ini`` declares another schema version than
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_marts(context: RuntimeContext, *, region: Optional[MartRegion] = None) -> List[ledger.MartRecord]:
    """Return every stored mart, optionally restricted to one region."""
    marts = context.gateway.load_all()
    if region is None:
        return marts
    return [mart for mart in marts if mart.region == region]


def get_mart(context: RuntimeContext, mart_id: str) -> ledger.MartRecord:
    """Load one mart by id.

    Raises:
        NotFound: If the gateway has no mart with ``mart_id``.
    """
    return context.gateway.load(mart_id)


def create_mart(context: RuntimeContext, command: OnboardMartCommand, *, when: Optional[datetime] = None) -> ledger.MartRecord:
    """Onboard a mart with empty stock and empty ledgers.

    The gateway assigns the id, prefixed by region. Initial price overrides
    are validated like later :func:`set_mart_price` calls.

    Raises:
        InvalidAmount: If the commission is outside 0-100 or an override price
            is not positive.
        ValueError: If name or mobile is blank.
    """
    if not command.name.strip():
        raise ValueError("Mart name is required")
    if not command.mobile.strip():
        raise ValueError("Mart mobile number is required")
    ledger.require_commission_range(command.commission_percent)

    moment = _resolve_timestamp(when)
    mart = ledger.MartRecord(
        mart_id="",
        name=command.name.strip(),
        mobile=command.mobile.strip(),
        sector=command.sector.strip(),
        address=command.address.strip(),
        onboarding_date=(command.onboarding_date or moment.date()).isoformat(),
        region=command.region or context.settings.default_region,
        commission_percent=command.commission_percent,
    )
    for product_key, unit_price in command.price_overrides.items():
        mart = ledger.set_price_override(mart, product_key, unit_price)

    stored = context.gateway.add(mart, when=moment)
    log.info("Onboarded mart '%s' (%s, %s)", stored.mart_id, stored.name, stored.region.value)
    return stored


def update_mart_profile(context: RuntimeContext, command: MartProfileCommand) -> ledger.MartRecord:
    """Change identity fields of a mart without touching stock or ledgers."""
    mart = context.gateway.load(command.mart_id)
    ledger.require_commission_range(command.commission_percent)

    changes: Dict[str, object] = {}
    for field_name in ("name", "mobile", "sector", "address"):
        value = getattr(command, field_name)
        if value is not None:
            changes[field_name] = value.strip()
    if command.onboarding_date is not None:
        changes["onboarding_date"] = command.onboarding_date.isoformat()
    if command.commission_percent is not None:
        changes["commission_percent"] = command.commission_percent
    if changes.get("name") == "" or changes.get("mobile") == "":
        raise ValueError("Mart name and mobile number cannot be blank")

    updated = context.gateway.update(replace(mart, **changes))
    log.info("Updated profile of mart '%s' (%s)", updated.mart_id, ", ".join(sorted(changes)) or "no changes")
    return updated


def set_mart_price(context: RuntimeContext, command: PriceOverrideCommand) -> ledger.MartRecord:
    """Store a mart-specific unit price. Past sale totals are not recomputed."""
    mart = context.gateway.load(command.mart_id)
    updated = context.gateway.update(ledger.set_price_override(mart, command.product_key, command.unit_price))
    log.info(
        "Set price override for '%s' on mart '%s' to %s",
        command.product_key,
        command.mart_id,
        command.unit_price,
    )
    return updated


def clear_mart_price(context: RuntimeContext, mart_id: str, product_key: str) -> ledger.MartRecord:
    """Drop a mart-specific price so the catalog default applies again."""
    mart = context.gateway.load(mart_id)
    updated = context.gateway.update(ledger.clear_price_override(mart, product_key))
    log.info("Cleared price override for '%s' on mart '%s'", product_key, mart_id)
    return updated


def record_refill(context: RuntimeContext, command: RefillCommand) -> ledger.MartRecord:
    """Deliver stock to a mart and persist the whole updated record.

    Args:
        context (RuntimeContext): Runtime context providing the gateway.
        command (RefillCommand): Delivery intent.

    Returns:
        ledger.MartRecord: Record as stored by the gateway, with increased
            stock and the new entry at the end of ``refills``.

    Raises:
        InvalidQuantity: If a quantity is negative or not an integer.
        NotFound: If the mart does not exist.
        GatewayFailure: If the record cannot be stored.
    """
    ledger.validate_quantities(command.quantities)
    mart = context.gateway.load(command.mart_id)

    timestamp = _resolve_timestamp(command.timestamp)
    refill = build_refill_entry(command, entry_id=ledger.unique_entry_id(mart, REFILL_ID_PREFIX, timestamp), timestamp=timestamp)
    updated = context.gateway.update(ledger.apply_refill(mart, refill))
    log.info(
        "Recorded refill '%s' for mart '%s' (%s)",
        refill.entry_id,
        command.mart_id,
        _describe_quantities(refill.quantities),
    )
    return updated


def record_sale(context: RuntimeContext, command: SaleCommand) -> SaleOutcome:
    """Price, total and record a sale, then persist the whole updated record.

    Prices are resolved with the mart's overrides first and the catalog
    second. Lines without any price are excluded from the total and reported
    in :attr:`SaleOutcome.unresolved`, with one warning logged per line.

    Raises:
        InvalidQuantity: If a quantity is negative or not an integer.
        InvalidAmount: If the initial amount received is negative, or above the
            total while the payment ceiling is enforced.
        InsufficientStock: When ``StrictStock`` is enabled and a line exceeds
            the mart's stock.
        NotFound: If the mart does not exist.
        GatewayFailure: If the record cannot be stored.
    """
    quantities = ledger.validate_quantities(command.quantities)
    mart = context.gateway.load(command.mart_id)

    total = ledger.compute_sale_total(quantities, ledger.price_resolver(mart, context.catalog))
    for warning in total.unresolved:
        log.warning("Sale on mart '%s': %s; line excluded from total", command.mart_id, warning)

    timestamp = _resolve_timestamp(command.timestamp)
    sale = build_sales_entry(
        command,
        entry_id=ledger.unique_entry_id(mart, SALE_ID_PREFIX, timestamp),
        timestamp=timestamp,
        total_amount=total.amount,
    )
    sale = ledger.reconcile_payment(
        sale,
        command.status,
        command.amount_received,
        enforce_ceiling=context.settings.enforce_payment_ceiling,
    )
    next_state = ledger.apply_sale(mart, sale, strict=context.settings.strict_stock)
    updated = context.gateway.update(next_state)
    log.info(
        "Recorded sale '%s' for mart '%s' (%s, total=%s, status=%s)",
        sale.entry_id,
        command.mart_id,
        _describe_quantities(sale.quantities),
        sale.total_amount,
        sale.status.value,
    )
    return SaleOutcome(mart=updated, sale=next_state.sales[-1], unresolved=tuple(total.unresolved_keys))


def update_sale_payment(context: RuntimeContext, command: PaymentCommand) -> ledger.MartRecord:
    """Reconcile the payment of one sale, keeping its ledger position.

    Stock is never affected.

    Raises:
        NotFound: If the mart or the sale does not exist.
        InvalidAmount: If the amount is negative, or above the total while the
            payment ceiling is enforced.
        GatewayFailure: If the record cannot be stored.
    """
    mart = context.gateway.load(command.mart_id)
    sale = ledger.find_sale(mart, command.sale_id)
    reconciled = ledger.reconcile_payment(
        sale,
        command.status,
        command.amount_received,
        enforce_ceiling=context.settings.enforce_payment_ceiling,
    )
    updated = context.gateway.update(ledger.replace_sale(mart, reconciled))
    log.info(
        "Updated payment of sale '%s' on mart '%s': %s -> %s, received %s",
        command.sale_id,
        command.mart_id,
        sale.status.value,
        reconciled.status.value,
        reconciled.amount_received,
    )
    return updated


def delete_mart(context: RuntimeContext, mart_id: str) -> None:
    """Remove a mart and, with it, its stock snapshot and both ledgers."""
    context.gateway.delete(mart_id)
    log.info("Deleted mart '%s'", mart_id)


def calculate_stock(context: RuntimeContext) -> Dict[str, Dict[str, int]]:
    """Return the stored stock snapshot of every mart keyed by mart id."""
    stock = {mart.mart_id: dict(mart.stock) for mart in context.gateway.load_all()}
    log.debug("Calculated stock for %d marts", len(stock))
    return stock


def calculate_outstanding_dues(context: RuntimeContext) -> Dict[str, Decimal]:
    """Return the unpaid balance per mart, omitting marts that owe nothing."""
    dues: Dict[str, Decimal] = {}
    for mart in context.gateway.load_all():
        outstanding = ledger.payment_summary(mart)["outstanding"]
        if outstanding > Decimal("0"):
            dues[mart.mart_id] = Decimal(outstanding)
    return dues


def build_refill_entry(command: RefillCommand, *, entry_id: str, timestamp: datetime) -> ledger.RefillEntry:
    """Materialize a :class:`RefillCommand` into a ledger entry."""
    return ledger.RefillEntry(
        entry_id=entry_id,
        date_iso=timestamp.isoformat(),
        quantities=dict(command.quantities),
    )


def build_sales_entry(
    command: SaleCommand,
    *,
    entry_id: str,
    timestamp: datetime,
    total_amount: Decimal,
) -> ledger.SalesEntry:
    """Materialize a :class:`SaleCommand` into a pending ledger entry.

    The payment fields are applied afterwards through
    :func:`ledger.reconcile_payment` so the same validation runs at creation
    and during later follow-ups.
    """
    return ledger.SalesEntry(
        entry_id=entry_id,
        date_iso=timestamp.isoformat(),
        quantities=dict(command.quantities),
        total_amount=total_amount,
    )


def _describe_quantities(quantities: Mapping[str, int]) -> str:
    return ", ".join(f"{key} x{quantity}" for key, quantity in quantities.items()) or "no lines"
