"""Shared pytest fixtures and utilities for mart ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from mart_ledger import cli, constants, core_logic, data_manager, ledger  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "StrictStock = {strict_stock}\n"
    "EnforcePaymentCeiling = {enforce_ceiling}\n\n"
    "[Defaults]\n"
    "Region = {region}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


class InMemoryMartGateway:
    """Gateway double keeping whole mart records in a dict.

    ``fail_next_write`` makes the next add/update/delete raise
    :class:`ledger.GatewayFailure` without storing anything.
    """

    def __init__(self) -> None:
        self.records: Dict[str, ledger.MartRecord] = {}
        self.writes: List[ledger.MartRecord] = []
        self.fail_next_write = False
        self._sequence = 0

    def load_all(self) -> List[ledger.MartRecord]:
        return list(self.records.values())

    def load(self, mart_id: str) -> ledger.MartRecord:
        try:
            return self.records[mart_id]
        except KeyError as exc:
            raise ledger.NotFound(f"Unknown mart id: {mart_id}") from exc

    def add(self, mart: ledger.MartRecord, *, when: Optional[datetime] = None) -> ledger.MartRecord:
        self._check_failure()
        if not mart.mart_id:
            self._sequence += 1
            mart = replace(mart, mart_id=f"{mart.region.id_prefix}-{self._sequence:04d}")
        self.records[mart.mart_id] = mart
        self.writes.append(mart)
        return mart

    def update(self, mart: ledger.MartRecord) -> ledger.MartRecord:
        self._check_failure()
        if mart.mart_id not in self.records:
            raise ledger.NotFound(f"Unknown mart id: {mart.mart_id}")
        self.records[mart.mart_id] = mart
        self.writes.append(mart)
        return mart

    def delete(self, mart_id: str) -> None:
        self._check_failure()
        if self.records.pop(mart_id, None) is None:
            raise ledger.NotFound(f"Unknown mart id: {mart_id}")

    def _check_failure(self) -> None:
        if self.fail_next_write:
            self.fail_next_write = False
            raise ledger.GatewayFailure("simulated storage outage")


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "mart_ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Dairy",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        strict_stock: bool = False,
        enforce_ceiling: bool = False,
        region: str = constants.MartRegion.GURUGRAM.value,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                strict_stock=str(strict_stock).lower(),
                enforce_ceiling=str(enforce_ceiling).lower(),
                region=region,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="mart-cli", description="Mart CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Ledger and business logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def catalog() -> ledger.ProductCatalog:
    """Synthetic catalog with two priced products."""

    return ledger.ProductCatalog(
        [
            ledger.ProductRow("gir500", "A2 Gir Cow Ghee", "500 ml", Decimal("900")),
            ledger.ProductRow("desi1", "A2 Desi Cow Ghee", "1000 ml", Decimal("1350")),
        ]
    )


@pytest.fixture
def make_mart() -> Callable[..., ledger.MartRecord]:
    """Factory for mart records with sensible identity fields."""

    def _make(
        mart_id: str = "GGM-0001",
        *,
        stock: Optional[Dict[str, int]] = None,
        price_overrides: Optional[Dict[str, Decimal]] = None,
        commission_percent: Optional[Decimal] = None,
        region: constants.MartRegion = constants.MartRegion.GURUGRAM,
    ) -> ledger.MartRecord:
        return ledger.MartRecord(
            mart_id=mart_id,
            name="Sector 14 Mart",
            mobile="9876543210",
            sector="14",
            address="Shop 3, Main Market",
            onboarding_date="2026-01-05",
            region=region,
            commission_percent=commission_percent,
            stock=dict(stock or {}),
            price_overrides=dict(price_overrides or {}),
        )

    return _make


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Default configuration settings for business logic tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "mart_ledger.xlsx",
        business_name="Test Dairy",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def gateway() -> InMemoryMartGateway:
    return InMemoryMartGateway()


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    gateway: InMemoryMartGateway,
    catalog: ledger.ProductCatalog,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory gateway."""

    return core_logic.RuntimeContext(settings=settings, gateway=gateway, catalog=catalog)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
