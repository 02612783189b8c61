"""Command-line entry points for the POS ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end
that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, reporting
from .constants import DateRange, DiscountType, PaymentType


SETTLEMENT_TYPES = [member.value for member in PaymentType if not member.is_deferred]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the POS ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as sales and payments."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "set-profile": register_set_profile_command(subparsers),
        "sale": register_sale_command(subparsers),
        "pay": register_pay_command(subparsers),
        "deposit": register_deposit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "dashboard": register_dashboard_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "debts": register_debts_command(subparsers),
        "history": register_history_command(subparsers),
        "invoice": register_invoice_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--quantity", type=int, default=0)
        parser.add_argument("--reorder-threshold", type=int, default=0)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--photo", default=None)
        parser.add_argument("--product-id", default=None, help="Explicit identifier (generated when omitted).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Register a category or a sub-category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--parent-id", default=None, help="Top-level category to nest under.")
        parser.add_argument("--category-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category, mutates=True)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer with an empty credit balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer, mutates=True)


def register_set_profile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-profile``."""
    name = "set-profile"
    help_text = "Replace the company profile printed on receipts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--address", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--logo", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_profile, mutates=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in PaymentType],
            required=True,
        )
        parser.add_argument("--discount", default="0")
        parser.add_argument(
            "--discount-type",
            choices=[member.value for member in DiscountType],
            default=DiscountType.PERCENTAGE.value,
        )
        parser.add_argument("--vat", action="store_true", help="Add VAT to the discounted subtotal.")
        parser.add_argument("--operator", default=None, help="Operator recorded on the sale.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against a sale on credit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--payment-type", choices=SETTLEMENT_TYPES, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay, mutates=True)


def register_deposit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``deposit``."""
    name = "deposit"
    help_text = "Add store credit to a customer's balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_deposit, mutates=True)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display catalog counts, today's sales, and outstanding credit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Display products at or below their reorder threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--range",
            dest="date_range",
            choices=[member.value for member in DateRange],
            default=DateRange.TODAY.value,
        )
        parser.add_argument("--start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD) of a custom range.")
        parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last day (YYYY-MM-DD) of a custom range.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_debts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``debts``."""
    name = "debts"
    help_text = "Display sales with an outstanding balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_debts_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display a customer's purchase history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Display the invoice of an existing sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
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


def current_time() -> datetime:
    """Return the reference moment for reports."""
    return datetime.now(UTC)


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "name": args.name,
        "price": Decimal(args.price),
        "quantity": args.quantity,
        "reorder_threshold": args.reorder_threshold,
        "category_id": args.category_id,
        "photo": args.photo,
        "product_id": args.product_id,
    }


def translate_add_category(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-category request."""
    return {"name": args.name, "parent_id": args.parent_id, "category_id": args.category_id}


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-customer request."""
    return {
        "name": args.name,
        "email": args.email,
        "phone": args.phone,
        "customer_id": args.customer_id,
    }


def translate_set_profile(args: argparse.Namespace) -> data_manager.CompanyProfileRow:
    """Translate CLI args into a company profile row."""
    return data_manager.CompanyProfileRow(
        name=args.name,
        address=args.address,
        phone=args.phone,
        logo=args.logo,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        customer_id=args.customer_id,
        quantity=args.quantity,
        payment_type=PaymentType(args.payment_type),
        discount=core_logic.DiscountSpec(
            discount_type=DiscountType(args.discount_type),
            value=Decimal(args.discount),
        ),
        apply_vat=args.vat,
        created_by=args.operator,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        sale_id=args.sale_id,
        amount=Decimal(args.amount),
        payment_type=PaymentType(args.payment_type),
    )


def translate_deposit(args: argparse.Namespace) -> core_logic.DepositCommand:
    """Translate CLI args into a deposit command object."""
    return core_logic.DepositCommand(customer_id=args.customer_id, amount=Decimal(args.amount))


def format_sale(sale: data_manager.SaleRow) -> str:
    """Render a sale as a single report line."""
    return (
        f"{sale.sale_id}  {sale.sale_date}  {sale.customer_name}  {sale.product_name} x{sale.quantity}  "
        f"total={sale.total_price}  paid={sale.paid_amount}  {sale.payment_type}  {sale.status}"
    )


def print_sale_receipt(receipt: core_logic.SaleReceipt) -> None:
    """Print an invoice for a settled sale."""
    sale = receipt.sale
    profile = receipt.company_profile
    print(profile.name)
    for line in (profile.address, profile.phone):
        if line:
            print(line)
    print(f"Invoice {sale.sale_id}  {sale.sale_date}")
    print(f"Customer: {receipt.customer.name}")
    print(f"{receipt.product.name} x{sale.quantity} @ {receipt.product.price}")
    print(f"Subtotal: {sale.subtotal}")
    print(f"Discount: {sale.discount_amount}")
    print(f"VAT: {sale.vat_amount}")
    print(f"Total: {sale.total_price}")
    print(f"Paid: {sale.paid_amount} ({sale.payment_type})")


def print_payment_receipt(receipt: core_logic.PaymentReceipt) -> None:
    """Print a receipt for a payment on a credit sale."""
    payment = receipt.payment
    print(receipt.company_profile.name)
    print(f"Payment {payment.payment_id}  {payment.payment_date}")
    print(f"Sale: {payment.sale_id}  Customer: {payment.customer_name}")
    print(f"Amount: {payment.amount} ({payment.payment_type})")
    print(f"Remaining balance: {receipt.remaining_balance}")


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    payload = translate_add_product(args)
    product = core_logic.add_product(context, **payload)
    print(f"Added product {product.product_id}")
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow in the BLL."""
    payload = translate_add_category(args)
    category = core_logic.add_category(context, **payload)
    print(f"Added category {category.category_id}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    payload = translate_add_customer(args)
    customer = core_logic.add_customer(context, **payload)
    print(f"Added customer {customer.customer_id}")
    return 0


def run_set_profile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the company profile update in the BLL."""
    core_logic.save_company_profile(context, translate_set_profile(args))
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args)
    result = core_logic.record_sale(context, command)
    if result.receipt is not None:
        print_sale_receipt(result.receipt)
    else:
        print(f"Recorded sale {result.sale.sale_id} on credit: {result.sale.total_price} outstanding")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    command = translate_pay(args)
    print_payment_receipt(core_logic.apply_payment(context, command))
    return 0


def run_deposit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the deposit workflow via the BLL."""
    command = translate_deposit(args)
    customer = core_logic.record_deposit(context, command)
    print(f"{customer.name} balance: {customer.balance}")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard summary."""
    summary = reporting.summarize_dashboard(
        core_logic.list_products(context),
        core_logic.list_customers(context),
        core_logic.list_categories(context),
        core_logic.list_sales(context),
        current_time(),
    )
    print(f"Products: {summary.product_count}")
    print(f"Customers: {summary.customer_count}")
    print(f"Categories: {summary.category_count}")
    print(f"Today's sales: {summary.today_sales_total}")
    print(f"Outstanding credit: {summary.outstanding_credit}")
    print(f"Low stock: {len(summary.low_stock)}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the low-stock report."""
    for product in reporting.low_stock_products(core_logic.list_products(context)):
        print(f"{product.product_id}  {product.name}  qty={product.quantity}  threshold={product.reorder_threshold}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the date-range sales report."""
    sales = reporting.filter_sales_by_range(
        core_logic.list_sales(context),
        DateRange(args.date_range),
        now=current_time(),
        start=args.start,
        end=args.end,
    )
    for sale in sales:
        print(format_sale(sale))
    print(f"Total: {reporting.sales_total(sales)}")
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the outstanding debts report."""
    sales = core_logic.list_sales(context)
    for sale in reporting.credit_sales(sales):
        print(f"{format_sale(sale)}  remaining={sale.remaining_balance}")
    print(f"Outstanding: {reporting.outstanding_credit_total(sales)}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer purchase history report."""
    customer = core_logic.get_customer(context, args.customer_id)
    print(f"{customer.name}  balance={customer.balance}")
    for sale in reporting.customer_purchase_history(core_logic.list_sales(context), customer.customer_id):
        print(format_sale(sale))
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Re-issue the invoice of an existing sale."""
    print_sale_receipt(core_logic.build_sale_receipt(context, args.sale_id))
    for payment in core_logic.list_payments_for_sale(context, args.sale_id):
        print(f"Payment {payment.payment_id}  {payment.payment_date}  {payment.amount} ({payment.payment_type})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.StoreCommitFailure):
        log.error("%s", error)
        return 4
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
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
