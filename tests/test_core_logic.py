"""Unit tests verifying the business logic layer against an in-memory gateway."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from mart_ledger import constants, core_logic, data_manager, ledger
from mart_ledger.constants import MartRegion, PaymentStatus


def _with_settings(context, **changes):
    return core_logic.RuntimeContext(
        settings=replace(context.settings, **changes),
        gateway=context.gateway,
        catalog=context.catalog,
    )


@pytest.fixture
def stored_mart(gateway, make_mart):
    """Seed the gateway with one mart holding 10 units of gir500."""

    mart = make_mart(stock={"gir500": 10})
    gateway.records[mart.mart_id] = mart
    return mart


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings, gateway and catalog."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "mart_ledger.xlsx",
        business_name="Dairy",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")
    catalog = ledger.ProductCatalog()

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)
    load_catalog = Mock(return_value=catalog)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)
    monkeypatch.setattr(data_manager, "load_catalog", load_catalog)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.catalog is catalog
    assert isinstance(context.gateway, data_manager.WorkbookMartGateway)
    assert context.gateway.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)
    load_catalog.assert_called_once_with(workbook)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(_with_settings(context, schema_version="0.9"))


def test_ensure_schema_version_accepts_expected(context):
    core_logic.ensure_schema_version(context)


# ---------------------------------------------------------------------------
# Mart onboarding and profile
# ---------------------------------------------------------------------------


def test_create_mart_starts_empty_with_region_prefix(context, gateway):
    """A new mart has no stock, no ledgers and an id from the gateway."""

    moment = datetime(2026, 1, 5, 8, 30, tzinfo=UTC)
    command = core_logic.OnboardMartCommand(
        name="  Sector 14 Mart ",
        mobile="9876543210",
        sector="14",
        price_overrides={"gir500": Decimal("850")},
    )

    mart = core_logic.create_mart(context, command, when=moment)

    assert mart.mart_id == "GGM-0001"
    assert mart.name == "Sector 14 Mart"
    assert mart.onboarding_date == "2026-01-05"
    assert mart.region is MartRegion.GURUGRAM
    assert mart.stock == {}
    assert mart.refills == ()
    assert mart.sales == ()
    assert mart.price_overrides == {"gir500": Decimal("850")}
    assert gateway.records["GGM-0001"] == mart


def test_create_mart_uses_configured_default_region(context):
    delhi_context = _with_settings(context, default_region=MartRegion.DELHI)

    mart = core_logic.create_mart(delhi_context, core_logic.OnboardMartCommand(name="Saket", mobile="91"))

    assert mart.mart_id.startswith("DLM-")


def test_create_mart_defaults_onboarding_date_to_today(context, set_fixed_datetime):
    set_fixed_datetime(datetime(2026, 4, 2, 23, 0, tzinfo=UTC))

    mart = core_logic.create_mart(context, core_logic.OnboardMartCommand(name="Mart", mobile="1"))

    assert mart.onboarding_date == "2026-04-02"


@pytest.mark.parametrize("name, mobile", [("", "123"), ("Mart", "   ")])
def test_create_mart_requires_name_and_mobile(context, gateway, name, mobile):
    with pytest.raises(ValueError):
        core_logic.create_mart(context, core_logic.OnboardMartCommand(name=name, mobile=mobile))

    assert gateway.records == {}


def test_create_mart_rejects_commission_out_of_range(context):
    command = core_logic.OnboardMartCommand(name="Mart", mobile="1", commission_percent=Decimal("120"))

    with pytest.raises(ledger.InvalidAmount):
        core_logic.create_mart(context, command)


def test_update_mart_profile_changes_only_given_fields(context, stored_mart):
    command = core_logic.MartProfileCommand(
        mart_id=stored_mart.mart_id,
        address=" Shop 9 ",
        onboarding_date=date(2026, 2, 1),
        commission_percent=Decimal("5"),
    )

    updated = core_logic.update_mart_profile(context, command)

    assert updated.address == "Shop 9"
    assert updated.onboarding_date == "2026-02-01"
    assert updated.commission_percent == Decimal("5")
    assert updated.name == stored_mart.name
    assert updated.stock == stored_mart.stock


def test_update_mart_profile_rejects_blank_name(context, stored_mart, gateway):
    with pytest.raises(ValueError):
        core_logic.update_mart_profile(context, core_logic.MartProfileCommand(stored_mart.mart_id, name=" "))

    assert gateway.writes == []


def test_list_marts_filters_by_region(context, gateway, make_mart):
    gateway.records["GGM-0001"] = make_mart("GGM-0001")
    gateway.records["DLM-0002"] = make_mart("DLM-0002", region=MartRegion.DELHI)

    assert len(core_logic.list_marts(context)) == 2
    assert [mart.mart_id for mart in core_logic.list_marts(context, region=MartRegion.DELHI)] == ["DLM-0002"]


def test_get_mart_raises_not_found(context):
    with pytest.raises(ledger.NotFound):
        core_logic.get_mart(context, "GGM-missing")


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------


def test_set_and_clear_mart_price(context, stored_mart):
    command = core_logic.PriceOverrideCommand(stored_mart.mart_id, "gir500", Decimal("800"))

    with_override = core_logic.set_mart_price(context, command)
    cleared = core_logic.clear_mart_price(context, stored_mart.mart_id, "gir500")

    assert with_override.price_overrides == {"gir500": Decimal("800")}
    assert cleared.price_overrides == {}


def test_set_mart_price_rejects_non_positive_price(context, stored_mart, gateway):
    with pytest.raises(ledger.InvalidAmount):
        core_logic.set_mart_price(
            context, core_logic.PriceOverrideCommand(stored_mart.mart_id, "gir500", Decimal("-5"))
        )

    assert gateway.writes == []


# ---------------------------------------------------------------------------
# Refills
# ---------------------------------------------------------------------------


def test_record_refill_persists_whole_record(context, gateway, stored_mart, set_fixed_datetime):
    """A refill is applied and written back in one gateway update."""

    set_fixed_datetime(datetime(2026, 2, 1, 10, 0, 0, 123456, tzinfo=UTC))

    updated = core_logic.record_refill(
        context, core_logic.RefillCommand(stored_mart.mart_id, {"gir500": 5, "desi1": 2})
    )

    assert updated.stock == {"gir500": 15, "desi1": 2}
    assert updated.refills[-1].entry_id == "REF-20260201100000123456"
    assert updated.refills[-1].date_iso == "2026-02-01T10:00:00.123456+00:00"
    assert gateway.writes == [updated]


def test_refills_at_the_same_moment_get_distinct_ids(context, stored_mart):
    """Callers may pin the timestamp, but each entry still gets its own id."""

    moment = datetime(2026, 2, 1, tzinfo=UTC)

    core_logic.record_refill(context, core_logic.RefillCommand(stored_mart.mart_id, {"gir500": 3}, timestamp=moment))
    updated = core_logic.record_refill(
        context, core_logic.RefillCommand(stored_mart.mart_id, {"desi1": 2}, timestamp=moment)
    )

    assert [entry.entry_id for entry in updated.refills] == [
        "REF-20260201000000000000",
        "REF-20260201000000000001",
    ]
    assert [entry.quantities for entry in updated.refills] == [{"gir500": 3}, {"desi1": 2}]
    assert {entry.date_iso for entry in updated.refills} == {"2026-02-01T00:00:00+00:00"}


def test_refill_and_sale_at_the_same_moment_replay_in_order(context, stored_mart):
    moment = datetime(2026, 2, 1, tzinfo=UTC)

    core_logic.record_refill(context, core_logic.RefillCommand(stored_mart.mart_id, {"desi1": 4}, timestamp=moment))
    outcome = core_logic.record_sale(
        context, core_logic.SaleCommand(stored_mart.mart_id, {"desi1": 3}, timestamp=moment)
    )

    assert outcome.sale.entry_id == "SAL-20260201000000000001"
    assert outcome.mart.stock == {"gir500": 10, "desi1": 1}
    assert ledger.replay_stock(outcome.mart)["desi1"] == 1


def test_record_refill_validates_before_loading(context, gateway):
    """Invalid quantities fail even for unknown marts, and nothing is written."""

    with pytest.raises(ledger.InvalidQuantity):
        core_logic.record_refill(context, core_logic.RefillCommand("GGM-missing", {"gir500": -3}))

    assert gateway.writes == []


def test_record_refill_for_unknown_mart(context):
    with pytest.raises(ledger.NotFound):
        core_logic.record_refill(context, core_logic.RefillCommand("GGM-missing", {"gir500": 3}))


def test_failed_refill_write_leaves_stored_state_unchanged(context, gateway, stored_mart):
    """A gateway outage surfaces to the caller and nothing is half-applied."""

    gateway.fail_next_write = True

    with pytest.raises(ledger.GatewayFailure):
        core_logic.record_refill(context, core_logic.RefillCommand(stored_mart.mart_id, {"gir500": 5}))

    assert gateway.load(stored_mart.mart_id) == stored_mart


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_record_sale_totals_with_catalog_prices(context, stored_mart):
    moment = datetime(2026, 2, 2, 9, 0, tzinfo=UTC)

    outcome = core_logic.record_sale(
        context, core_logic.SaleCommand(stored_mart.mart_id, {"gir500": 15}, timestamp=moment)
    )

    assert outcome.sale.entry_id == "SAL-20260202090000000000"
    assert outcome.sale.total_amount == Decimal("13500")
    assert outcome.sale.status is PaymentStatus.PENDING
    assert outcome.mart.stock == {"gir500": 0}
    assert outcome.unresolved == ()


def test_record_sale_prefers_override_price(context, gateway, make_mart):
    mart = make_mart(stock={"gir500": 2}, price_overrides={"gir500": Decimal("850")})
    gateway.records[mart.mart_id] = mart

    outcome = core_logic.record_sale(context, core_logic.SaleCommand(mart.mart_id, {"gir500": 2}))

    assert outcome.sale.total_amount == Decimal("1700")


def test_record_sale_reports_unpriced_lines(context, stored_mart, caplog):
    """Unpriced products are recorded but excluded from the total."""

    with caplog.at_level("WARNING", logger="mart_ledger"):
        outcome = core_logic.record_sale(
            context, core_logic.SaleCommand(stored_mart.mart_id, {"gir500": 1, "camel250": 3})
        )

    assert outcome.sale.total_amount == Decimal("900")
    assert outcome.sale.quantities == {"gir500": 1, "camel250": 3}
    assert outcome.unresolved == ("camel250",)
    assert "camel250" in caplog.text


def test_record_sale_with_initial_payment(context, stored_mart):
    command = core_logic.SaleCommand(
        stored_mart.mart_id,
        {"gir500": 1},
        status=PaymentStatus.PAID,
        amount_received=Decimal("900"),
    )

    outcome = core_logic.record_sale(context, command)

    assert outcome.sale.status is PaymentStatus.PAID
    assert outcome.sale.amount_received == Decimal("900")


def test_record_sale_strict_stock_rejects_oversell(context, gateway, stored_mart):
    strict_context = _with_settings(context, strict_stock=True)

    with pytest.raises(ledger.InsufficientStock):
        core_logic.record_sale(strict_context, core_logic.SaleCommand(stored_mart.mart_id, {"gir500": 11}))

    assert gateway.writes == []


def test_record_sale_enforces_payment_ceiling_when_configured(context, stored_mart):
    command = core_logic.SaleCommand(
        stored_mart.mart_id, {"gir500": 1}, status=PaymentStatus.PAID, amount_received=Decimal("1000")
    )

    with pytest.raises(ledger.InvalidAmount):
        core_logic.record_sale(_with_settings(context, enforce_payment_ceiling=True), command)

    assert core_logic.record_sale(context, command).sale.amount_received == Decimal("1000")


def test_failed_sale_write_leaves_stored_state_unchanged(context, gateway, stored_mart):
    gateway.fail_next_write = True

    with pytest.raises(ledger.GatewayFailure):
        core_logic.record_sale(context, core_logic.SaleCommand(stored_mart.mart_id, {"gir500": 4}))

    assert gateway.load(stored_mart.mart_id).stock == {"gir500": 10}
    assert gateway.load(stored_mart.mart_id).sales == ()


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def _record_three_sales(context, mart_id):
    sale_ids = []
    for second in range(3):
        moment = datetime(2026, 2, 3, 12, 0, second, tzinfo=UTC)
        outcome = core_logic.record_sale(
            context, core_logic.SaleCommand(mart_id, {"gir500": 1}, timestamp=moment)
        )
        sale_ids.append(outcome.sale.entry_id)
    return sale_ids


def test_update_sale_payment_keeps_position_and_stock(context, stored_mart):
    sale_ids = _record_three_sales(context, stored_mart.mart_id)
    before = core_logic.get_mart(context, stored_mart.mart_id)

    updated = core_logic.update_sale_payment(
        context,
        core_logic.PaymentCommand(stored_mart.mart_id, sale_ids[1], PaymentStatus.PAID, Decimal("900")),
    )

    assert [sale.entry_id for sale in updated.sales] == sale_ids
    assert updated.sales[1].status is PaymentStatus.PAID
    assert updated.sales[1].amount_received == Decimal("900")
    assert updated.sales[0] == before.sales[0]
    assert updated.stock == before.stock


def test_update_sale_payment_unknown_sale(context, stored_mart):
    with pytest.raises(ledger.NotFound):
        core_logic.update_sale_payment(
            context,
            core_logic.PaymentCommand(stored_mart.mart_id, "SAL-missing", PaymentStatus.PAID, Decimal("0")),
        )


def test_update_sale_payment_rejects_negative_amount(context, stored_mart):
    sale_id = _record_three_sales(context, stored_mart.mart_id)[0]

    with pytest.raises(ledger.InvalidAmount):
        core_logic.update_sale_payment(
            context,
            core_logic.PaymentCommand(stored_mart.mart_id, sale_id, PaymentStatus.PARTIAL_PAID, Decimal("-1")),
        )


# ---------------------------------------------------------------------------
# Deletion and reports
# ---------------------------------------------------------------------------


def test_delete_mart_removes_record(context, gateway, stored_mart):
    core_logic.delete_mart(context, stored_mart.mart_id)

    assert stored_mart.mart_id not in gateway.records
    with pytest.raises(ledger.NotFound):
        core_logic.delete_mart(context, stored_mart.mart_id)


def test_calculate_stock_and_outstanding_dues(context, gateway, make_mart):
    first = make_mart("GGM-0001", stock={"gir500": 5})
    second = make_mart("GGM-0002", stock={"desi1": 1})
    gateway.records.update({first.mart_id: first, second.mart_id: second})

    core_logic.record_sale(context, core_logic.SaleCommand("GGM-0001", {"gir500": 2}))
    core_logic.record_sale(
        context,
        core_logic.SaleCommand(
            "GGM-0002", {"desi1": 1}, status=PaymentStatus.PAID, amount_received=Decimal("1350")
        ),
    )

    assert core_logic.calculate_stock(context) == {"GGM-0001": {"gir500": 3}, "GGM-0002": {"desi1": 0}}
    assert core_logic.calculate_outstanding_dues(context) == {"GGM-0001": Decimal("1800")}
