"""Command-line entry points for the retail ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin means tests, scripts or another front-end can
reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import ExpenseType, PaymentMethod, PaymentType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def decimal_arg(raw: str) -> Decimal:
    """argparse ``type`` converting text into a :class:`Decimal`."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {raw!r}") from exc


def date_arg(raw: str) -> date:
    """argparse ``type`` converting ``YYYY-MM-DD`` into a :class:`date`."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Not an ISO date (YYYY-MM-DD): {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="retail-cli",
        description="Command-line tools for the retail ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched for upward from the current directory by default).",
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
    """Declare mutating CLI commands such as sales and purchases."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-supplier": register_add_party_command(subparsers, "add-supplier", "supplier"),
        "add-customer": register_add_party_command(subparsers, "add-customer", "customer"),
        "update-supplier": register_update_party_command(subparsers, "update-supplier", "supplier"),
        "update-customer": register_update_party_command(subparsers, "update-customer", "customer"),
        "delete-supplier": register_delete_party_command(subparsers, "delete-supplier", "supplier"),
        "delete-customer": register_delete_party_command(subparsers, "delete-customer", "customer"),
        "sale": register_sale_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "expense": register_expense_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": _simple_read_command("stock", "Display current stock levels.", run_stock_report),
        "low-stock": _simple_read_command("low-stock", "List products below their reorder level.", run_low_stock_report),
        "sales": _simple_read_command("sales", "List recorded sales, newest first.", run_sales_report),
        "purchases": _simple_read_command("purchases", "List recorded purchases, newest first.", run_purchases_report),
        "suppliers": _simple_read_command("suppliers", "List registered suppliers.", run_suppliers_report),
        "customers": _simple_read_command("customers", "List customers with their credit details.", run_customers_report),
        "summary": register_summary_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_item_argument(parser: argparse.ArgumentParser, price_label: str) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        nargs=3,
        action="append",
        required=True,
        metavar=("PRODUCT", "QUANTITY", price_label),
        help="Line item as product name or id, quantity and unit price. Repeat for more lines.",
    )


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--unit", default="pcs")
        parser.add_argument("--category", default=None)
        parser.add_argument("--quantity", type=decimal_arg, default=Decimal("0"))
        parser.add_argument("--buying-price", type=decimal_arg, default=Decimal("0"))
        parser.add_argument("--selling-price", type=decimal_arg, default=Decimal("0"))
        parser.add_argument("--reorder-level", type=decimal_arg, default=None)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--unit", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--quantity", type=decimal_arg, default=None)
        parser.add_argument("--buying-price", type=decimal_arg, default=None)
        parser.add_argument("--selling-price", type=decimal_arg, default=None)
        parser.add_argument("--reorder-level", type=decimal_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product that no transaction references."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_add_party_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    party: str,
) -> CommandSpec:
    """Register ``add-supplier`` or ``add-customer``."""
    help_text = f"Register a new {party}."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--contact-number", default=None)
        parser.add_argument("--address", default=None)
        if party == "customer":
            parser.add_argument("--credit-limit", type=decimal_arg, default=Decimal("0"))
        parser.set_defaults(command=name)
        return parser

    execute = run_add_supplier if party == "supplier" else run_add_customer
    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_update_party_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    party: str,
) -> CommandSpec:
    """Register ``update-supplier`` or ``update-customer``."""
    help_text = f"Edit fields of an existing {party}."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--contact-number", default=None)
        parser.add_argument("--address", default=None)
        if party == "customer":
            parser.add_argument("--credit-limit", type=decimal_arg, default=None)
            parser.add_argument("--outstanding-balance", type=decimal_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    execute = run_update_supplier if party == "supplier" else run_update_customer
    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_delete_party_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    party: str,
) -> CommandSpec:
    """Register ``delete-supplier`` or ``delete-customer``."""
    help_text = f"Delete a {party} that no transaction references."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.set_defaults(command=name)
        return parser

    execute = run_delete_supplier if party == "supplier" else run_delete_customer
    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale with one or more line items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_item_argument(parser, "PRICE")
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in PaymentType],
            default=None,
            help="Defaults to the configured payment type.",
        )
        parser.add_argument("--customer", default=None)
        parser.add_argument("--date", dest="sale_date", type=date_arg, default=None)
        parser.add_argument("--request-key", default=None, help="Client key making retries safe.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a purchase with one or more line items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_item_argument(parser, "COST")
        parser.add_argument("--supplier", default=None)
        parser.add_argument("--invoice-number", default=None)
        parser.add_argument("--date", dest="purchase_date", type=date_arg, default=None)
        parser.add_argument("--request-key", default=None, help="Client key making retries safe.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Record a shop expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="expense_type", choices=[m.value for m in ExpenseType], required=True)
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount", type=decimal_arg, required=True)
        parser.add_argument(
            "--payment-method",
            choices=[m.value for m in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--date", dest="expense_date", type=date_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expense)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display sales, purchases, expenses and net for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date_arg, default=None, help="Defaults to today.")
        parser.add_argument("--end", type=date_arg, default=None, help="Defaults to the start date.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report, mutates=False)


def _simple_read_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the configuration is searched for upward from the
    current working directory.
    """
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


def translate_items(raw_items: Sequence[Sequence[str]]) -> list[core_logic.LineItemRequest]:
    """Translate ``--item`` triples into line item requests."""
    items = []
    for index, (product, quantity, price) in enumerate(raw_items):
        try:
            items.append(core_logic.LineItemRequest(product=product, quantity=Decimal(quantity), unit_price=Decimal(price)))
        except InvalidOperation as exc:
            raise core_logic.InvalidTransaction(
                f"Quantity and price must be numbers on line {index + 1}",
                line_index=index,
            ) from exc
    return items


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "name": args.name,
        "unit": args.unit,
        "category": args.category,
        "quantity": args.quantity,
        "buying_price": args.buying_price,
        "selling_price": args.selling_price,
        "reorder_level": args.reorder_level,
        "product_id": args.product_id,
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the fields that were actually supplied."""
    candidates = {
        "name": args.name,
        "unit": args.unit,
        "category": args.category,
        "quantity": args.quantity,
        "buying_price": args.buying_price,
        "selling_price": args.selling_price,
        "reorder_level": args.reorder_level,
    }
    return {key: value for key, value in candidates.items() if value is not None}



def translate_update_party(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate supplier or customer edit args into the fields actually supplied."""
    candidates = {
        "name": args.name,
        "contact_number": args.contact_number,
        "address": args.address,
        "credit_limit": getattr(args, "credit_limit", None),
        "outstanding_balance": getattr(args, "outstanding_balance", None),
    }
    return {key: value for key, value in candidates.items() if value is not None}


def translate_sale(args: argparse.Namespace, default_payment: PaymentType = PaymentType.CASH) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    payment = PaymentType(args.payment_type) if args.payment_type else default_payment
    return core_logic.SaleCommand(
        items=translate_items(args.items),
        payment_type=payment,
        customer=args.customer,
        sale_date=args.sale_date,
        notes=args.notes,
        request_key=args.request_key,
    )


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        items=translate_items(args.items),
        supplier=args.supplier,
        invoice_number=args.invoice_number,
        purchase_date=args.purchase_date,
        notes=args.notes,
        request_key=args.request_key,
    )


def translate_expense(args: argparse.Namespace) -> core_logic.ExpenseCommand:
    """Translate CLI args into an expense command object."""
    return core_logic.ExpenseCommand(
        expense_type=ExpenseType(args.expense_type),
        description=args.description,
        amount=args.amount,
        payment_method=PaymentMethod(args.payment_method),
        expense_date=args.expense_date,
    )


def _money(context: core_logic.RuntimeContext, amount: Decimal) -> str:
    return f"{context.settings.currency_symbol}{amount:.2f}"


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added product {product.product_id}: {product.name}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    changes = translate_update_product(args)
    if not changes:
        log.error("update-product needs at least one field to change")
        return 1
    core_logic.update_product(context, args.product_id, **changes)
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.product_id)
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-supplier workflow in the BLL."""
    supplier = core_logic.add_supplier(
        context, name=args.name, contact_number=args.contact_number, address=args.address
    )
    print(f"Added supplier {supplier.party_id}: {supplier.name}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(
        context,
        name=args.name,
        contact_number=args.contact_number,
        address=args.address,
        credit_limit=args.credit_limit,
    )
    print(f"Added customer {customer.party_id}: {customer.name}")
    return 0


def _run_update_party(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    update: Callable[..., Any],
    label: str,
) -> int:
    changes = translate_update_party(args)
    if not changes:
        log.error("update-%s needs at least one field to change", label)
        return 1
    update(context, args.party_id, **changes)
    return 0


def run_update_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-supplier workflow in the BLL."""
    return _run_update_party(context, args, core_logic.update_supplier, "supplier")


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-customer workflow in the BLL."""
    return _run_update_party(context, args, core_logic.update_customer, "customer")


def run_delete_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-supplier workflow in the BLL."""
    core_logic.delete_supplier(context, args.party_id)
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-customer workflow in the BLL."""
    core_logic.delete_customer(context, args.party_id)
    return 0


def _print_receipt(context: core_logic.RuntimeContext, receipt: core_logic.TransactionReceipt) -> None:
    suffix = " (already recorded)" if receipt.replayed else ""
    print(f"{receipt.header.number}: total {_money(context, receipt.total_amount)}{suffix}")
    for product_id, quantity in receipt.quantities.items():
        print(f"  {product_id}: stock now {quantity}")


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args, context.settings.default_payment_type)
    _print_receipt(context, core_logic.record_sale(context, command))
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    command = translate_purchase(args)
    _print_receipt(context, core_logic.record_purchase(context, command))
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the expense workflow via the BLL."""
    core_logic.record_expense(context, translate_expense(args))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every product with its quantity."""
    for product in core_logic.list_products(context):
        print(f"{product.product_id}\t{product.name}\t{product.quantity} {product.unit}")
    print(f"Stock value: {_money(context, core_logic.calculate_stock_value(context))}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products below their reorder level."""
    for product in core_logic.list_low_stock(context):
        print(f"{product.product_id}\t{product.name}\t{product.quantity} < {product.reorder_level}")
    return 0


def _print_entries(context: core_logic.RuntimeContext, entries: Iterable[core_logic.LedgerEntry]) -> None:
    for entry in entries:
        header = entry.header
        print(
            f"{header.date_iso}\t{header.number}\t{entry.item_count} lines\t"
            f"{entry.total_quantity} units\t{_money(context, header.total_amount)}"
        )


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print recorded sales."""
    _print_entries(context, core_logic.list_sales(context))
    return 0


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print recorded purchases."""
    _print_entries(context, core_logic.list_purchases(context))
    return 0


def run_suppliers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print registered suppliers."""
    for supplier in core_logic.list_suppliers(context):
        print(f"{supplier.party_id}\t{supplier.name}\t{supplier.contact_number or '-'}")
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print customers with credit limit and outstanding balance."""
    for customer in core_logic.list_customers(context):
        print(
            f"{customer.party_id}\t{customer.name}\t{customer.contact_number or '-'}\t"
            f"limit {_money(context, customer.credit_limit)}\t"
            f"owes {_money(context, customer.outstanding_balance)}"
        )
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the period summary."""
    start = args.start or date.today()
    end = args.end or start
    summary = core_logic.calculate_period_summary(context, start, end)
    for key in ("total_sales", "total_purchases", "total_expenses", "net"):
        print(f"{key.replace('_', ' ').title()}: {_money(context, summary[key])}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
