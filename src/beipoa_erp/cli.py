"""Command-line entry points for the BeiPoa back-office.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Write commands print the operation's result values; read commands print
tab-separated rows to stdout.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import PaymentMode, QuotationStatus
from .errors import BusinessRuleViolation, Busy, StoreWriteFailure


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def decimal_arg(value: str) -> Decimal:
    """argparse ``type`` that rejects anything :class:`Decimal` cannot parse."""

    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from exc


def sale_line_arg(value: str) -> core_logic.SaleLine:
    """Parse ``PRODUCT:QTY`` or ``PRODUCT:QTY:UNIT_PRICE``."""

    parts = value.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"expected PRODUCT:QTY[:PRICE], got {value!r}")
    unit_price = decimal_arg(parts[2]) if len(parts) == 3 else None
    return core_logic.SaleLine(parts[0], decimal_arg(parts[1]), unit_price)


def return_line_arg(value: str) -> core_logic.ReturnLine:
    """Parse ``PRODUCT:QTY``."""

    parts = value.split(":")
    if len(parts) != 2 or not parts[0]:
        raise argparse.ArgumentTypeError(f"expected PRODUCT:QTY, got {value!r}")
    return core_logic.ReturnLine(parts[0], decimal_arg(parts[1]))


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="beipoa-cli",
        description="Command-line tools for the BeiPoa back-office workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="User recorded on writes (defaults to [Defaults] DefaultUser).",
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


def _spec(
    name: str,
    help_text: str,
    arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and receipts."""
    specs = {
        "add-product": register_add_product_command(),
        "add-customer": register_add_customer_command(),
        "add-supplier": register_add_supplier_command(),
        "receive-stock": register_receive_stock_command(),
        "sale": register_sale_command(),
        "cancel-sale": register_cancel_sale_command(),
        "return-sale": register_return_sale_command(),
        "quote": register_quote_command(),
        "quote-status": register_quote_status_command(),
        "convert-quote": register_convert_quote_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as stock and dashboards."""
    specs = {
        "stock": _spec("stock", "Display current stock levels.", lambda parser: None, run_stock_report),
        "low-stock": _spec(
            "low-stock", "Display products at or below their reorder level.", lambda parser: None, run_low_stock_report),
        "sales": register_sales_command(),
        "quotations": register_quotations_command(),
        "customers": _spec("customers", "Display customers and balances.", lambda parser: None, run_customers_report),
        "dashboard": _spec("dashboard", "Display headline figures.", lambda parser: None, run_dashboard_report),
        "refresh": register_refresh_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--sell-price", required=True, type=decimal_arg)
        parser.add_argument("--category", default="General")
        parser.add_argument("--reorder-level", type=decimal_arg, default=Decimal("0"))
        parser.add_argument("--supplier-id", default=None)
        parser.add_argument("--product-id", default=None, help="Explicit ID; allocated when omitted.")

    return _spec("add-product", "Register a new product.", arguments, run_add_product)


def register_add_customer_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--credit-limit", type=decimal_arg, default=Decimal("0"))

    return _spec("add-customer", "Register a new customer.", arguments, run_add_customer)


def register_add_supplier_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--supplier-name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)

    return _spec("add-supplier", "Register a new supplier.", arguments, run_add_supplier)


def register_receive_stock_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True, type=decimal_arg)
        parser.add_argument("--unit-cost", required=True, type=decimal_arg)
        parser.add_argument("--supplier-id", default=None)
        parser.add_argument("--source-ref", default=None, help="Delivery note or purchase reference.")

    return _spec("receive-stock", "Receive a delivery as a new stock batch.", arguments, run_receive_stock)


def _add_line_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        required=True,
        type=sale_line_arg,
        help="PRODUCT:QTY[:PRICE]; repeat for each line.",
    )
    parser.add_argument("--customer-id", default=None)
    parser.add_argument("--delivery-charge", type=decimal_arg, default=Decimal("0"))
    parser.add_argument("--discount", type=decimal_arg, default=Decimal("0"))


def register_sale_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        _add_line_arguments(parser)
        parser.add_argument(
            "--payment-mode",
            choices=[member.value for member in PaymentMode],
            required=True,
        )

    return _spec("sale", "Record a sale.", arguments, run_sale)


def register_cancel_sale_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--reason", default=None)

    return _spec("cancel-sale", "Cancel a completed sale.", arguments, run_cancel_sale)


def register_return_sale_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            type=return_line_arg,
            help="PRODUCT:QTY; repeat for each returned product.",
        )
        parser.add_argument("--reason", default=None)

    return _spec("return-sale", "Return goods from a sale.", arguments, run_return_sale)


def register_quote_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        _add_line_arguments(parser)
        parser.add_argument("--draft", action="store_true", help="Create the quotation as a draft.")

    return _spec("quote", "Create a quotation.", arguments, run_quote)


def register_quote_status_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--quotation-id", required=True)
        parser.add_argument(
            "--status",
            required=True,
            choices=[status.value for status in QuotationStatus if status is not QuotationStatus.CONVERTED],
        )
        parser.add_argument("--reason", default=None)

    return _spec("quote-status", "Change a quotation's status.", arguments, run_quote_status)


def register_convert_quote_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--quotation-id", required=True)
        parser.add_argument(
            "--payment-mode",
            choices=[member.value for member in PaymentMode],
            required=True,
        )
        parser.add_argument("--customer-id", default=None)

    return _spec("convert-quote", "Convert a quotation into a sale.", arguments, run_convert_quote)


def register_sales_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--limit", type=int, default=20)

    return _spec("sales", "Display recent sales.", arguments, run_sales_report)


def register_quotations_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--status", choices=[status.value for status in QuotationStatus], default=None)

    return _spec("quotations", "Display quotations.", arguments, run_quotations_report)


def register_refresh_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--domain",
            default=None,
            help="Cache family to reload (inventory, customers, sales, ...).",
        )

    return _spec("refresh", "Bypass the cache and reload data.", arguments, run_refresh)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


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


def print_rows(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    print("\t".join(headers))
    for row in rows:
        print("\t".join("" if value is None else str(value) for value in row))


def report_result(result: core_logic.OperationResult) -> int:
    """Print a successful result's values, or raise the error it carries."""
    if not result.ok:
        raise result.exception
    for key, value in (result.value or {}).items():
        if isinstance(value, (list, tuple)):
            value = ",".join(str(item) for item in value)
        print(f"{key}\t{value}")
    return 0


def _user(args: argparse.Namespace) -> Optional[str]:
    return getattr(args, "user", None)


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        lines=list(args.lines),
        payment_mode=PaymentMode(args.payment_mode),
        customer_id=args.customer_id,
        delivery_charge=args.delivery_charge,
        discount=args.discount,
        user=_user(args),
    )


def translate_quote(args: argparse.Namespace) -> core_logic.QuotationCommand:
    """Translate CLI args into a quotation command object."""
    return core_logic.QuotationCommand(
        lines=list(args.lines),
        customer_id=args.customer_id,
        delivery_charge=args.delivery_charge,
        discount=args.discount,
        draft=args.draft,
        user=_user(args),
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.add_product(
        context,
        product_name=args.product_name,
        sell_price=args.sell_price,
        category=args.category,
        reorder_level=args.reorder_level,
        supplier_id=args.supplier_id,
        product_id=args.product_id,
        user=_user(args),
    ))


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.add_customer(
        context,
        customer_name=args.customer_name,
        phone=args.phone,
        email=args.email,
        credit_limit=args.credit_limit,
        user=_user(args),
    ))


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.add_supplier(
        context,
        supplier_name=args.supplier_name,
        phone=args.phone,
        email=args.email,
        user=_user(args),
    ))


def run_receive_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.receive_stock(
        context,
        args.product_id,
        args.quantity,
        args.unit_cost,
        supplier_id=args.supplier_id,
        source_ref=args.source_ref,
        user=_user(args),
    ))


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    return report_result(core_logic.create_sale(context, translate_sale(args)))


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = core_logic.CancelSaleCommand(
        transaction_id=args.transaction_id, reason=args.reason, user=_user(args))
    return report_result(core_logic.cancel_sale(context, command))


def run_return_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = core_logic.ReturnCommand(
        sale_id=args.sale_id, lines=list(args.lines), reason=args.reason, user=_user(args))
    return report_result(core_logic.return_sale(context, command))


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.create_quotation(context, translate_quote(args)))


def run_quote_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    status = QuotationStatus(args.status)
    if status is QuotationStatus.DELETED:
        result = core_logic.delete_quotation(context, args.quotation_id, user=_user(args), reason=args.reason)
    else:
        result = core_logic.update_quotation_status(
            context, args.quotation_id, status, user=_user(args), reason=args.reason)
    return report_result(result)


def run_convert_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = core_logic.ConvertQuotationCommand(
        quotation_id=args.quotation_id,
        payment_mode=PaymentMode(args.payment_mode),
        customer_id=args.customer_id,
        user=_user(args),
    )
    return report_result(core_logic.convert_quotation_to_sale(context, command))


def _product_rows(products: Sequence[Any], levels: Mapping[str, Decimal]) -> List[List[Any]]:
    return [
        [product.product_id, product.product_name, product.category, levels.get(product.product_id, Decimal("0")),
         product.reorder_level]
        for product in products
    ]


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    levels = core_logic.inventory_snapshot(context)
    print_rows(
        ["ProductID", "ProductName", "Category", "Stock", "ReorderLevel"],
        _product_rows(core_logic.list_products(context), levels),
    )
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    levels = core_logic.inventory_snapshot(context)
    print_rows(
        ["ProductID", "ProductName", "Category", "Stock", "ReorderLevel"],
        _product_rows(core_logic.low_stock_items(context), levels),
    )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print_rows(
        ["TransactionID", "DateTime", "CustomerID", "PaymentMode", "Status", "GrandTotal"],
        (
            [sale.transaction_id, sale.date_time, sale.customer_id, sale.payment_mode, sale.status, sale.grand_total]
            for sale in core_logic.list_recent_sales(context, limit=args.limit)
        ),
    )
    return 0


def run_quotations_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    status = QuotationStatus(args.status) if args.status else None
    print_rows(
        ["TransactionID", "DateTime", "CustomerID", "Status", "GrandTotal", "ValidUntil"],
        (
            [quote.transaction_id, quote.date_time, quote.customer_id, quote.status, quote.grand_total,
             quote.valid_until]
            for quote in core_logic.list_quotations(context, status=status)
        ),
    )
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print_rows(
        ["CustomerID", "CustomerName", "CreditLimit", "CurrentBalance", "TotalPurchases"],
        (
            [customer.customer_id, customer.customer_name, customer.credit_limit, customer.current_balance,
             customer.total_purchases]
            for customer in core_logic.list_customers(context)
        ),
    )
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.dashboard_summary(context)
    print_rows(["Metric", "Value"], vars(summary).items())
    return 0


def run_refresh(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.domain:
        core_logic.force_refresh_data(context, args.domain)
        print(f"Refreshed\t{args.domain}")
        return 0
    core_logic.refresh_context(context)
    print(f"Reloaded\t{context.settings.data_file}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, Busy):
        log.error("%s", error)
        return 4
    if isinstance(error, StoreWriteFailure):
        log.error("%s (transaction %s may not have completed)", error, error.transaction_id)
        return 5
    if isinstance(error, BusinessRuleViolation):
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
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
