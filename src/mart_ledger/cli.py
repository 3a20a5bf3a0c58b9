"""Command-line entry points for the mart ledger.

This module only wires argparse and translates arguments into the command
objects consumed by :mod:`mart_ledger.core_logic`. Every write is persisted by
the gateway as part of the business call, so there is no separate save step.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, ledger, log
from .constants import MartRegion, PaymentStatus


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mart-cli",
        description="Stock and payment ledger for Mart retail partners.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to a search from the working directory).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "onboard-mart": onboard_mart_spec(),
        "edit-mart": edit_mart_spec(),
        "set-price": set_price_spec(),
        "clear-price": clear_price_spec(),
        "refill": refill_spec(),
        "sale": sale_spec(),
        "pay": pay_spec(),
        "delete-mart": delete_mart_spec(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "marts": marts_spec(),
        "stock": stock_spec(),
        "ledger": ledger_spec(),
        "dues": dues_spec(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_item(text: str) -> Tuple[str, int]:
    """Parse a ``KEY=QTY`` pair given to ``--item``."""
    key, separator, raw_quantity = text.partition("=")
    if not separator or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected KEY=QTY, got '{text}'")
    try:
        quantity = int(raw_quantity.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity for '{key.strip()}' must be a whole number") from exc
    return key.strip(), quantity


def parse_money(text: str) -> Decimal:
    """Parse a finite decimal amount; ``NaN`` and ``Infinity`` are refused."""
    try:
        return ledger.to_money(text)
    except ledger.InvalidAmount as exc:
        raise argparse.ArgumentTypeError(f"Not a monetary value: '{text}'") from exc


def parse_date(text: str) -> date:
    try:
        return date.fromisoformat(text.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected a YYYY-MM-DD date, got '{text}'") from exc


def collect_quantities(items: Optional[Iterable[Tuple[str, int]]]) -> Dict[str, int]:
    """Merge repeated ``--item`` pairs, adding quantities given twice for one key.

    Every pair is checked before merging so a negative line cannot be hidden
    by a positive one for the same key.
    """
    pairs = list(items or ())
    for key, quantity in pairs:
        if quantity < 0:
            log.error("Rejected --item %s=%s: quantity is negative", key, quantity)
            raise ledger.InvalidQuantity(f"Quantity for '{key}' must be zero or positive")
    quantities: Dict[str, int] = {}
    for key, quantity in pairs:
        quantities[key] = quantities.get(key, 0) + quantity
    return quantities


def _add_item_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_item,
        required=True,
        metavar="KEY=QTY",
        help="Product key and unit count; repeat for several products.",
    )


# ---------------------------------------------------------------------------
# Write commands
# ---------------------------------------------------------------------------


def onboard_mart_spec() -> CommandSpec:
    name = "onboard-mart"
    help_text = "Onboard a new mart with empty stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--mobile", required=True)
        parser.add_argument("--sector", default="")
        parser.add_argument("--address", default="")
        parser.add_argument("--date", dest="onboarding_date", type=parse_date, default=None)
        parser.add_argument("--region", choices=[member.value for member in MartRegion], default=None)
        parser.add_argument("--commission", type=parse_money, default=None, help="Commission percentage (0-100).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_onboard_mart)


def edit_mart_spec() -> CommandSpec:
    name = "edit-mart"
    help_text = "Edit the identity fields of a mart."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--mobile", default=None)
        parser.add_argument("--sector", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--date", dest="onboarding_date", type=parse_date, default=None)
        parser.add_argument("--commission", type=parse_money, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_mart)


def set_price_spec() -> CommandSpec:
    name = "set-price"
    help_text = "Set a mart-specific unit price for a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        parser.add_argument("--product-key", required=True)
        parser.add_argument("--price", type=parse_money, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_price)


def clear_price_spec() -> CommandSpec:
    name = "clear-price"
    help_text = "Remove a mart-specific unit price."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        parser.add_argument("--product-key", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear_price)


def refill_spec() -> CommandSpec:
    name = "refill"
    help_text = "Record a stock delivery to a mart."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        _add_item_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refill)


def sale_spec() -> CommandSpec:
    name = "sale"
    help_text = "Record units sold by a mart."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        _add_item_argument(parser)
        parser.add_argument(
            "--status",
            choices=[member.value for member in PaymentStatus],
            default=PaymentStatus.PENDING.value,
        )
        parser.add_argument("--amount-received", type=parse_money, default=Decimal("0"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def pay_spec() -> CommandSpec:
    name = "pay"
    help_text = "Update the payment status of a recorded sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in PaymentStatus], required=True)
        parser.add_argument("--amount-received", type=parse_money, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def delete_mart_spec() -> CommandSpec:
    name = "delete-mart"
    help_text = "Delete a mart together with its ledgers."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_mart)


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


def marts_spec() -> CommandSpec:
    name = "marts"
    help_text = "List onboarded marts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--region", choices=[member.value for member in MartRegion], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_marts_report)


def stock_spec() -> CommandSpec:
    name = "stock"
    help_text = "Display the current stock of every mart."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def ledger_spec() -> CommandSpec:
    name = "ledger"
    help_text = "Display the refill and sales ledgers of one mart."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--mart-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report)


def dues_spec() -> CommandSpec:
    name = "dues"
    help_text = "Display outstanding payments per mart."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dues_report)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_onboard_mart(args: argparse.Namespace) -> core_logic.OnboardMartCommand:
    return core_logic.OnboardMartCommand(
        name=args.name,
        mobile=args.mobile,
        sector=args.sector,
        address=args.address,
        onboarding_date=args.onboarding_date,
        region=MartRegion(args.region) if args.region else None,
        commission_percent=args.commission,
    )


def translate_edit_mart(args: argparse.Namespace) -> core_logic.MartProfileCommand:
    return core_logic.MartProfileCommand(
        mart_id=args.mart_id,
        name=args.name,
        mobile=args.mobile,
        sector=args.sector,
        address=args.address,
        onboarding_date=args.onboarding_date,
        commission_percent=args.commission,
    )


def translate_refill(args: argparse.Namespace) -> core_logic.RefillCommand:
    return core_logic.RefillCommand(mart_id=args.mart_id, quantities=collect_quantities(args.items))


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    return core_logic.SaleCommand(
        mart_id=args.mart_id,
        quantities=collect_quantities(args.items),
        status=PaymentStatus(args.status),
        amount_received=args.amount_received,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    return core_logic.PaymentCommand(
        mart_id=args.mart_id,
        sale_id=args.sale_id,
        status=PaymentStatus(args.status),
        amount_received=args.amount_received,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_onboard_mart(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    mart = core_logic.create_mart(context, translate_onboard_mart(args))
    print(mart.mart_id)
    return 0


def run_edit_mart(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_mart_profile(context, translate_edit_mart(args))
    return 0


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = core_logic.PriceOverrideCommand(mart_id=args.mart_id, product_key=args.product_key, unit_price=args.price)
    core_logic.set_mart_price(context, command)
    return 0


def run_clear_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.clear_mart_price(context, args.mart_id, args.product_key)
    return 0


def run_refill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    mart = core_logic.record_refill(context, translate_refill(args))
    print(mart.refills[-1].entry_id)
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    outcome = core_logic.record_sale(context, translate_sale(args))
    print(f"{outcome.sale.entry_id}\t{outcome.sale.total_amount}")
    for product_key in outcome.unresolved:
        print(f"warning: no price for '{product_key}', line left out of the total")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_sale_payment(context, translate_pay(args))
    return 0


def run_delete_mart(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_mart(context, args.mart_id)
    return 0


def run_marts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    region = MartRegion(args.region) if args.region else None
    for mart in core_logic.list_marts(context, region=region):
        print(f"{mart.mart_id}\t{mart.name}\t{mart.mobile}\t{mart.sector}\t{mart.region.value}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for mart_id, stock in core_logic.calculate_stock(context).items():
        lines = ", ".join(f"{key}={quantity}" for key, quantity in sorted(stock.items())) or "empty"
        print(f"{mart_id}\t{lines}")
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    mart = core_logic.get_mart(context, args.mart_id)
    for refill in mart.refills:
        print(f"{refill.entry_id}\t{refill.date_iso}\t{_format_quantities(refill.quantities)}")
    for sale in mart.sales:
        print(
            f"{sale.entry_id}\t{sale.date_iso}\t{_format_quantities(sale.quantities)}"
            f"\t{sale.total_amount}\t{sale.status.value}\t{sale.amount_received}"
        )
    return 0


def run_dues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for mart_id, outstanding in core_logic.calculate_outstanding_dues(context).items():
        print(f"{mart_id}\t{outstanding}")
    return 0


def _format_quantities(quantities: Mapping[str, int]) -> str:
    return ", ".join(f"{key}={quantity}" for key, quantity in quantities.items())


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes."""
    if isinstance(error, ledger.LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
