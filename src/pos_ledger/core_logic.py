"""Business logic layer for the POS ledger.

This module contains the settlement engine that keeps stock levels, customer
credit balances, sale totals, and the payment ledger consistent. It consumes
the :class:`~pos_ledger.ledger_store.LedgerStore` port for all I/O: every
workflow reads current state, validates it, and issues one atomic batch whose
updates are guarded by the values the decision was based on. A guard conflict
makes the workflow re-read and re-validate, up to the configured number of
attempts.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Collection, DiscountType, PaymentType, SaleStatus
from .ledger_store import BatchOperation, LedgerStore, StoreConflict, StoreError, WorkbookLedgerStore


T = TypeVar("T")

HUNDRED = Decimal("100")
ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, category, or sale is unknown."""


class CustomerNotFoundError(MissingReferenceError):
    """Raised when a sale references a customer that does not exist."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale requests more units than the product has on hand."""


class InsufficientCreditError(BusinessRuleViolation):
    """Raised when a customer's balance cannot cover a credit-funded amount."""


class InvalidAmountError(BusinessRuleViolation, ValueError):
    """Raised for non-positive quantities or amounts and over-settlement."""


class InvalidDepositError(BusinessRuleViolation, ValueError):
    """Raised when a deposit targets an unknown customer or is not positive."""


class StoreCommitFailure(Exception):
    """Raised when the ledger store did not apply a workflow's batch."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the ledger store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: LedgerStore


@dataclass(frozen=True)
class DiscountSpec:
    """Discount requested at the counter, either a percentage or a fixed amount."""

    discount_type: DiscountType = DiscountType.PERCENTAGE
    value: Decimal = ZERO


NO_DISCOUNT = DiscountSpec()


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale."""

    product_id: str
    customer_id: str
    quantity: int
    payment_type: PaymentType
    discount: DiscountSpec = NO_DISCOUNT
    apply_vat: bool = False
    created_by: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for settling part or all of an outstanding sale."""

    sale_id: str
    amount: Decimal
    payment_type: PaymentType
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DepositCommand:
    """User intent for topping up a customer's store credit."""

    customer_id: str
    amount: Decimal


@dataclass(frozen=True)
class SalePricing:
    """Breakdown of a sale's price before it is written to the ledger."""

    subtotal: Decimal
    discount_amount: Decimal
    subtotal_after_discount: Decimal
    vat_amount: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class SaleReceipt:
    """Denormalized snapshot handed to the invoice renderer after a sale."""

    sale: data_manager.SaleRow
    product: data_manager.ProductRow
    customer: data_manager.CustomerRow
    company_profile: data_manager.CompanyProfileRow


@dataclass(frozen=True)
class SaleResult:
    """Outcome of :func:`record_sale`; ``receipt`` is ``None`` for credit sales."""

    sale: data_manager.SaleRow
    receipt: Optional[SaleReceipt]


@dataclass(frozen=True)
class PaymentReceipt:
    """Denormalized snapshot handed to the receipt renderer after a payment."""

    payment: data_manager.PaymentRow
    sale: data_manager.SaleRow
    customer: Optional[data_manager.CustomerRow]
    remaining_balance: Decimal
    company_profile: data_manager.CompanyProfileRow


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the ledger store.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores the ledger behind a :class:`WorkbookLedgerStore`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for workflow calls.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookLedgerStore.from_file(settings.data_file, lock_timeout=settings.lock_timeout)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory ledger to the configured workbook path."""
    context.store.save(context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened store.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    store = WorkbookLedgerStore(
        data_manager.refresh_workbook(context.settings.data_file),
        lock_timeout=context.settings.lock_timeout,
    )
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store)


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order."""
    return context.store.list(Collection.PRODUCTS)


def list_categories(context: RuntimeContext) -> List[data_manager.CategoryRow]:
    """Return every category in sheet order."""
    return context.store.list(Collection.CATEGORIES)


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return every customer in sheet order."""
    return context.store.list(Collection.CUSTOMERS)


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return every sale, newest first."""
    return context.store.list(Collection.SALES, key=lambda sale: sale.sale_date, reverse=True)


def list_payments(context: RuntimeContext) -> List[data_manager.PaymentRow]:
    """Return the payment ledger in the order payments were recorded."""
    return context.store.list(Collection.PAYMENTS)


def list_payments_for_sale(context: RuntimeContext, sale_id: str) -> List[data_manager.PaymentRow]:
    """Return the settlement history of a single sale."""
    return context.store.list(Collection.PAYMENTS, lambda payment: payment.sale_id == sale_id)


def _require(context: RuntimeContext, collection: Collection, record_id: str, label: str, error: type = MissingReferenceError):
    record = context.store.get(collection, record_id)
    if record is None:
        log.warning("%s lookup failed for id '%s'", label, record_id)
        raise error(f"Unknown {label.lower()} id: {record_id}")
    return record


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the ledger.
    """
    return _require(context, Collection.PRODUCTS, product_id, "Product")


def get_category(context: RuntimeContext, category_id: str) -> data_manager.CategoryRow:
    """Resolve a category record by its identifier.

    Raises:
        MissingReferenceError: If ``category_id`` is absent from the ledger.
    """
    return _require(context, Collection.CATEGORIES, category_id, "Category")


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        CustomerNotFoundError: If ``customer_id`` is absent from the ledger.
    """
    return _require(context, Collection.CUSTOMERS, customer_id, "Customer", CustomerNotFoundError)


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale record by its identifier.

    Raises:
        MissingReferenceError: If ``sale_id`` is absent from the ledger.
    """
    return _require(context, Collection.SALES, sale_id, "Sale")


def get_company_profile(context: RuntimeContext) -> data_manager.CompanyProfileRow:
    """Return the stored company profile, defaulting to the configured shop name."""
    profile = context.store.get_company_profile()
    if profile is None:
        return data_manager.CompanyProfileRow(name=context.settings.shop_name)
    return profile


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier from a UTC timestamp.

    Args:
        prefix (str): Designator identifying the collection, e.g. ``"S"`` for
            sales or ``"PAY"`` for payments.
        when (datetime | None): Timestamp used for the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{XXXX}``.

    The four trailing hex digits keep identifiers unique when several records
    share a timestamp, which happens with caller-supplied timestamps.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{secrets.token_hex(2).upper()}"


def _is_finite(value: Decimal) -> bool:
    return Decimal(value).is_finite()


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a whole number of at least one unit.

    Raises:
        InvalidAmountError: If ``quantity`` is not an integer or is below one.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidAmountError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        InvalidAmountError: If ``amount`` is not a finite number or is less than zero.
    """
    if not _is_finite(amount) or amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise InvalidAmountError("Amount must be a finite, nonnegative number")


def validate_discount(discount: DiscountSpec) -> None:
    """Reject negative discounts and percentages above one hundred."""
    if not _is_finite(discount.value):
        log.warning("Rejected non-finite discount %s", discount.value)
        raise InvalidAmountError("Discount must be a finite number")
    if discount.value < ZERO:
        log.warning("Rejected negative discount %s", discount.value)
        raise InvalidAmountError("Discount must be zero or positive")
    if discount.discount_type is DiscountType.PERCENTAGE and discount.value > HUNDRED:
        log.warning("Rejected discount of %s%%", discount.value)
        raise InvalidAmountError("Percentage discount cannot exceed 100%")


def compute_sale_pricing(
    price: Decimal,
    quantity: int,
    discount: DiscountSpec = NO_DISCOUNT,
    *,
    apply_vat: bool = False,
    vat_rate: Decimal = Decimal("0.18"),
) -> SalePricing:
    """Compute the subtotal, discount, VAT, and total owed for a sale.

    ``subtotal = price * quantity``; the discount is a percentage of the
    subtotal or a fixed amount; VAT applies to the discounted subtotal. All
    arithmetic is exact :class:`~decimal.Decimal` arithmetic with no rounding.

    Args:
        price (Decimal): Unit price of the product.
        quantity (int): Units sold.
        discount (DiscountSpec): Requested discount.
        apply_vat (bool): Whether VAT is added.
        vat_rate (Decimal): VAT rate as a fraction, ``0.18`` by default.

    Returns:
        SalePricing: Full price breakdown.

    Raises:
        InvalidAmountError: If the discount is invalid or exceeds the subtotal.
    """
    validate_discount(discount)
    subtotal = price * quantity
    if discount.discount_type is DiscountType.PERCENTAGE:
        discount_amount = subtotal * discount.value / HUNDRED
    else:
        discount_amount = discount.value
    if discount_amount > subtotal:
        log.warning("Rejected discount %s exceeding subtotal %s", discount_amount, subtotal)
        raise InvalidAmountError(
            f"Discount of {discount_amount} exceeds the sale subtotal of {subtotal}"
        )
    subtotal_after_discount = subtotal - discount_amount
    vat_amount = subtotal_after_discount * vat_rate if apply_vat else ZERO
    return SalePricing(
        subtotal=subtotal,
        discount_amount=discount_amount,
        subtotal_after_discount=subtotal_after_discount,
        vat_amount=vat_amount,
        total_price=subtotal_after_discount + vat_amount,
    )


def derive_status(paid_amount: Decimal, total_price: Decimal, has_any_payment: bool) -> SaleStatus:
    """Derive a sale's status from how much of it has been settled.

    Args:
        paid_amount (Decimal): Cumulative amount settled so far.
        total_price (Decimal): Amount owed for the sale.
        has_any_payment (bool): Whether any payment source has been applied.
            A sale without one cannot carry a paid amount.

    Returns:
        SaleStatus: ``COMPLETED`` when the sale is fully settled, otherwise
            ``CREDIT``.

    Raises:
        ValueError: If the amounts break ``0 <= paid_amount <= total_price`` or
            a paid amount exists without any payment.
    """
    if paid_amount < ZERO or paid_amount > total_price:
        raise ValueError(f"Paid amount {paid_amount} outside 0..{total_price}")
    if paid_amount > ZERO and not has_any_payment:
        raise ValueError("A sale without payments cannot carry a paid amount")
    if paid_amount == total_price:
        return SaleStatus.COMPLETED
    return SaleStatus.CREDIT


def _commit_with_retry(
    context: RuntimeContext,
    description: str,
    plan: Callable[[], Tuple[List[BatchOperation], T]],
) -> T:
    """Run ``plan`` and commit its operations, re-planning on guard conflicts.

    ``plan`` reads current state, raises a :class:`BusinessRuleViolation` when a
    precondition fails, and otherwise returns the batch to commit along with
    the value to hand back to the caller.

    Raises:
        StoreCommitFailure: If the store rejects the batch for any reason other
            than a conflict, or conflicts persist past
            ``settings.max_commit_attempts``.
    """
    attempts = context.settings.max_commit_attempts
    last_conflict: Optional[StoreConflict] = None
    for attempt in range(1, attempts + 1):
        operations, result = plan()
        try:
            context.store.commit_batch(operations)
        except StoreConflict as exc:
            last_conflict = exc
            log.warning(
                "Conflict while committing %s (attempt %d/%d): %s",
                description,
                attempt,
                attempts,
                exc,
            )
            continue
        except StoreError as exc:
            log.error("Store rejected %s: %s", description, exc)
            raise StoreCommitFailure(f"Could not commit {description}: {exc}") from exc
        return result

    log.error("Giving up on %s after %d conflicting attempts", description, attempts)
    raise StoreCommitFailure(
        f"Could not commit {description} after {attempts} attempts: {last_conflict}"
    ) from last_conflict


def add_category(
    context: RuntimeContext,
    *,
    name: str,
    parent_id: Optional[str] = None,
    category_id: Optional[str] = None,
) -> data_manager.CategoryRow:
    """Create a top-level category or a sub-category of a top-level one.

    Raises:
        MissingReferenceError: If ``parent_id`` is unknown.
        BusinessRuleViolation: If the parent is itself a sub-category.
    """

    def plan() -> Tuple[List[BatchOperation], data_manager.CategoryRow]:
        if parent_id is not None:
            parent = get_category(context, parent_id)
            if parent.parent_id is not None:
                log.warning("Rejected category nested under sub-category '%s'", parent_id)
                raise BusinessRuleViolation(
                    f"Category '{parent_id}' is a sub-category; only two levels are supported"
                )
        category = data_manager.CategoryRow(
            category_id=category_id or generate_record_id(prefix="CAT"),
            name=name,
            parent_id=parent_id,
        )
        return [BatchOperation.create(Collection.CATEGORIES, category)], category

    category = _commit_with_retry(context, "new category", plan)
    log.info("Added category '%s' (%s)", category.category_id, category.name)
    return category


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    price: Decimal,
    quantity: int = 0,
    reorder_threshold: int = 0,
    category_id: Optional[str] = None,
    photo: Optional[str] = None,
    product_id: Optional[str] = None,
) -> data_manager.ProductRow:
    """Register a product in the catalog.

    Raises:
        InvalidAmountError: If the price is negative or a stock counter is not a
            nonnegative integer.
        MissingReferenceError: If ``category_id`` is unknown.
    """
    require_nonnegative_money(price)
    for counter in (quantity, reorder_threshold):
        if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0:
            raise InvalidAmountError("Stock quantities must be whole numbers of zero or more")

    def plan() -> Tuple[List[BatchOperation], data_manager.ProductRow]:
        if category_id is not None:
            get_category(context, category_id)
        product = data_manager.ProductRow(
            product_id=product_id or generate_record_id(prefix="P"),
            name=name,
            category_id=category_id,
            quantity=quantity,
            price=price,
            reorder_threshold=reorder_threshold,
            photo=photo,
        )
        return [BatchOperation.create(Collection.PRODUCTS, product)], product

    product = _commit_with_retry(context, "new product", plan)
    log.info("Added product '%s' (%s, stock=%d)", product.product_id, product.name, product.quantity)
    return product


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> data_manager.CustomerRow:
    """Register a customer with an empty credit balance."""

    def plan() -> Tuple[List[BatchOperation], data_manager.CustomerRow]:
        customer = data_manager.CustomerRow(
            customer_id=customer_id or generate_record_id(prefix="C"),
            name=name,
            email=email,
            phone=phone,
            balance=ZERO,
        )
        return [BatchOperation.create(Collection.CUSTOMERS, customer)], customer

    customer = _commit_with_retry(context, "new customer", plan)
    log.info("Added customer '%s' (%s)", customer.customer_id, customer.name)
    return customer


def save_company_profile(context: RuntimeContext, profile: data_manager.CompanyProfileRow) -> None:
    """Replace the company profile shown on receipts and invoices."""
    try:
        context.store.put_company_profile(profile)
    except StoreError as exc:
        log.error("Store rejected company profile: %s", exc)
        raise StoreCommitFailure(f"Could not save company profile: {exc}") from exc
    log.info("Saved company profile for '%s'", profile.name)


def record_sale(context: RuntimeContext, command: SaleCommand) -> SaleResult:
    """Validate a sale and commit it together with its stock and credit effects.

    Preconditions are checked in order: the product exists, it has enough stock,
    the customer exists, and, for customer-credit sales, the customer's balance
    covers the total. The batch then creates the sale, decrements the product
    quantity and, for customer-credit sales, debits the customer balance. Both
    updates are guarded by the values read, so a concurrent change forces a
    re-read instead of overselling or overdrawing.

    Deferred (credit note) sales are recorded with status ``CREDIT`` and no
    paid amount; every other payment type settles the sale immediately. No
    payment ledger entry is produced at sale time.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        SaleResult: The committed sale and, unless it was recorded on credit,
            the receipt snapshot for the invoice renderer.

    Raises:
        InvalidAmountError: If the quantity or discount is invalid.
        MissingReferenceError: If the product is unknown.
        InsufficientStockError: If stock on hand is below the quantity.
        CustomerNotFoundError: If the customer is unknown.
        InsufficientCreditError: If a customer-credit sale exceeds the balance.
        StoreCommitFailure: If the batch could not be committed.
    """
    require_positive_quantity(command.quantity)
    validate_discount(command.discount)
    payment_type = PaymentType(command.payment_type)

    def plan() -> Tuple[List[BatchOperation], SaleResult]:
        product = get_product(context, command.product_id)
        if product.quantity < command.quantity:
            log.warning(
                "Insufficient stock for product '%s': requested %d, available %d",
                product.product_id,
                command.quantity,
                product.quantity,
            )
            raise InsufficientStockError(
                f"Insufficient stock for '{product.name}': requested {command.quantity}, "
                f"available {product.quantity}"
            )
        customer = get_customer(context, command.customer_id)
        pricing = compute_sale_pricing(
            product.price,
            command.quantity,
            command.discount,
            apply_vat=command.apply_vat,
            vat_rate=context.settings.vat_rate,
        )
        uses_credit = payment_type is PaymentType.CUSTOMER_CREDIT
        if uses_credit and customer.balance < pricing.total_price:
            log.warning(
                "Insufficient credit for customer '%s': balance %s, total %s",
                customer.customer_id,
                customer.balance,
                pricing.total_price,
            )
            raise InsufficientCreditError(
                f"Insufficient customer credit for '{customer.name}': balance {customer.balance}, "
                f"required {pricing.total_price}"
            )

        paid_amount = ZERO if payment_type.is_deferred else pricing.total_price
        status = derive_status(paid_amount, pricing.total_price, has_any_payment=not payment_type.is_deferred)
        timestamp = _resolve_timestamp(command.timestamp)
        sale = data_manager.SaleRow(
            sale_id=generate_record_id(prefix="S", when=timestamp),
            sale_date=timestamp.isoformat(),
            product_id=product.product_id,
            product_name=product.name,
            customer_id=customer.customer_id,
            customer_name=customer.name,
            quantity=command.quantity,
            subtotal=pricing.subtotal,
            discount_amount=pricing.discount_amount,
            vat_amount=pricing.vat_amount,
            total_price=pricing.total_price,
            paid_amount=paid_amount,
            payment_type=payment_type.value,
            status=status.value,
            created_by=command.created_by or context.settings.default_operator,
        )
        remaining_stock = product.quantity - command.quantity
        operations = [
            BatchOperation.create(Collection.SALES, sale),
            BatchOperation.update(
                Collection.PRODUCTS,
                product.product_id,
                {"quantity": remaining_stock},
                expected={"quantity": product.quantity},
            ),
        ]
        if uses_credit:
            customer = replace(customer, balance=customer.balance - pricing.total_price)
            operations.append(
                BatchOperation.update(
                    Collection.CUSTOMERS,
                    customer.customer_id,
                    {"balance": customer.balance},
                    expected={"balance": customer.balance + pricing.total_price},
                )
            )

        receipt = None
        if status is not SaleStatus.CREDIT:
            receipt = SaleReceipt(
                sale=sale,
                product=replace(product, quantity=remaining_stock),
                customer=customer,
                company_profile=get_company_profile(context),
            )
        return operations, SaleResult(sale=sale, receipt=receipt)

    result = _commit_with_retry(context, "sale", plan)
    log.info(
        "Recorded sale '%s' of %d x '%s' for customer '%s' (total=%s, status=%s)",
        result.sale.sale_id,
        result.sale.quantity,
        result.sale.product_id,
        result.sale.customer_id,
        result.sale.total_price,
        result.sale.status,
    )
    return result


def apply_payment(context: RuntimeContext, command: PaymentCommand) -> PaymentReceipt:
    """Settle part or all of an outstanding sale.

    The payment may not exceed the sale's remaining balance. Customer-credit
    payments additionally require the customer's balance to cover the amount.
    The batch debits the customer (customer-credit only), appends a payment
    ledger entry, and updates the sale's paid amount and status. The sale's
    payment type is replaced by this payment's type only when the payment
    completes the settlement.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (PaymentCommand): Structured payment intent.

    Returns:
        PaymentReceipt: Snapshot for the receipt renderer, including the balance
            left on the sale after this payment.

    Raises:
        BusinessRuleViolation: If the deferred payment type is used to settle.
        InvalidAmountError: If the amount is not positive or exceeds the
            remaining balance.
        MissingReferenceError: If the sale is unknown.
        InsufficientCreditError: If a customer-credit payment exceeds the
            customer's balance.
        StoreCommitFailure: If the batch could not be committed.
    """
    payment_type = PaymentType(command.payment_type)
    if payment_type.is_deferred:
        log.warning("Rejected settlement of sale '%s' with a deferred payment type", command.sale_id)
        raise BusinessRuleViolation(f"A sale cannot be settled with '{payment_type.value}'")
    if not _is_finite(command.amount) or command.amount <= ZERO:
        log.warning("Rejected non-positive payment %s for sale '%s'", command.amount, command.sale_id)
        raise InvalidAmountError("Payment amount must be a finite number greater than zero")

    def plan() -> Tuple[List[BatchOperation], PaymentReceipt]:
        sale = get_sale(context, command.sale_id)
        remaining = sale.remaining_balance
        if command.amount > remaining:
            log.warning(
                "Rejected payment %s for sale '%s' exceeding remaining balance %s",
                command.amount,
                sale.sale_id,
                remaining,
            )
            raise InvalidAmountError(
                f"Payment of {command.amount} exceeds the remaining balance of {remaining}"
            )

        customer = context.store.get(Collection.CUSTOMERS, sale.customer_id)
        operations: List[BatchOperation] = []
        if payment_type is PaymentType.CUSTOMER_CREDIT:
            if customer is None or customer.balance < command.amount:
                log.warning("Insufficient customer credit to settle sale '%s'", sale.sale_id)
                raise InsufficientCreditError(
                    f"Insufficient customer credit to pay {command.amount} on sale '{sale.sale_id}'"
                )
            operations.append(
                BatchOperation.update(
                    Collection.CUSTOMERS,
                    customer.customer_id,
                    {"balance": customer.balance - command.amount},
                    expected={"balance": customer.balance},
                )
            )
            customer = replace(customer, balance=customer.balance - command.amount)

        new_paid_amount = sale.paid_amount + command.amount
        fully_settled = new_paid_amount >= sale.total_price
        status = derive_status(new_paid_amount, sale.total_price, has_any_payment=True)
        timestamp = _resolve_timestamp(command.timestamp)
        payment = data_manager.PaymentRow(
            payment_id=generate_record_id(prefix="PAY", when=timestamp),
            payment_date=timestamp.isoformat(),
            sale_id=sale.sale_id,
            customer_name=sale.customer_name,
            amount=command.amount,
            payment_type=payment_type.value,
        )
        changes = {"paid_amount": new_paid_amount, "status": status.value}
        if fully_settled:
            changes["payment_type"] = payment_type.value
        operations.append(BatchOperation.create(Collection.PAYMENTS, payment))
        operations.append(
            BatchOperation.update(
                Collection.SALES,
                sale.sale_id,
                changes,
                expected={"paid_amount": sale.paid_amount},
            )
        )
        receipt = PaymentReceipt(
            payment=payment,
            sale=replace(sale, **changes),
            customer=customer,
            remaining_balance=remaining - command.amount,
            company_profile=get_company_profile(context),
        )
        return operations, receipt

    receipt = _commit_with_retry(context, "payment", plan)
    log.info(
        "Recorded payment '%s' of %s on sale '%s' (remaining=%s, status=%s)",
        receipt.payment.payment_id,
        receipt.payment.amount,
        receipt.sale.sale_id,
        receipt.remaining_balance,
        receipt.sale.status,
    )
    return receipt


def record_deposit(context: RuntimeContext, command: DepositCommand) -> data_manager.CustomerRow:
    """Credit a customer's store balance.

    Returns:
        data_manager.CustomerRow: The customer with the increased balance.

    Raises:
        InvalidDepositError: If the customer is unknown or the amount is not
            positive.
        StoreCommitFailure: If the update could not be committed.
    """
    if not _is_finite(command.amount) or command.amount <= ZERO:
        log.warning("Rejected non-positive deposit %s for customer '%s'", command.amount, command.customer_id)
        raise InvalidDepositError("Deposit amount must be a finite number greater than zero")

    def plan() -> Tuple[List[BatchOperation], data_manager.CustomerRow]:
        customer = context.store.get(Collection.CUSTOMERS, command.customer_id)
        if customer is None:
            log.warning("Rejected deposit for unknown customer '%s'", command.customer_id)
            raise InvalidDepositError(f"Unknown customer id: {command.customer_id}")
        updated = replace(customer, balance=customer.balance + command.amount)
        operation = BatchOperation.update(
            Collection.CUSTOMERS,
            customer.customer_id,
            {"balance": updated.balance},
            expected={"balance": customer.balance},
        )
        return [operation], updated

    customer = _commit_with_retry(context, "deposit", plan)
    log.info(
        "Recorded deposit of %s for customer '%s' (balance=%s)",
        command.amount,
        customer.customer_id,
        customer.balance,
    )
    return customer


def build_sale_receipt(context: RuntimeContext, sale_id: str) -> SaleReceipt:
    """Assemble an invoice snapshot for an existing sale.

    When the product has since been removed from the catalog, the sale's own
    snapshot fields stand in for it.

    Raises:
        MissingReferenceError: If the sale is unknown.
        CustomerNotFoundError: If the sale's customer no longer exists.
    """
    sale = get_sale(context, sale_id)
    customer = get_customer(context, sale.customer_id)
    product = context.store.get(Collection.PRODUCTS, sale.product_id)
    if product is None:
        unit_price = sale.subtotal / sale.quantity if sale.quantity else ZERO
        product = data_manager.ProductRow(
            product_id=sale.product_id,
            name=sale.product_name,
            category_id=None,
            quantity=0,
            price=unit_price,
            reorder_threshold=0,
        )
    return SaleReceipt(
        sale=sale,
        product=product,
        customer=customer,
        company_profile=get_company_profile(context),
    )
