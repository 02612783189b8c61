"""Read-side projections over ledger collections.

Every function except :func:`watch_low_stock` is pure: it receives row
sequences already read from the store and recomputes its result from scratch.
Projections may therefore lag a concurrent write; callers that need fresh
figures simply read the collections again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import Collection, DateRange, SaleStatus
from .ledger_store import LedgerStore


DateBounds = Tuple[Optional[datetime], Optional[datetime]]


@dataclass(frozen=True)
class DashboardSummary:
    """Aggregates shown on the dashboard."""

    product_count: int
    customer_count: int
    category_count: int
    today_sales_total: Decimal
    outstanding_credit: Decimal
    low_stock: List[data_manager.ProductRow]


def _assume_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def parse_sale_date(value: str) -> datetime:
    """Parse a stored ISO timestamp, treating naive values as UTC."""
    return _assume_utc(datetime.fromisoformat(value))


def low_stock_products(products: Iterable[data_manager.ProductRow]) -> List[data_manager.ProductRow]:
    """Return products that are running low but not yet sold out.

    A product is low when ``0 < quantity <= reorder_threshold``. Sold-out
    products are excluded; they are out of stock rather than low.
    """
    low = [product for product in products if 0 < product.quantity <= product.reorder_threshold]
    log.debug("Found %d low-stock products", len(low))
    return low


def sales_total_for_day(sales: Iterable[data_manager.SaleRow], day: datetime) -> Decimal:
    """Sum ``total_price`` over sales made on the calendar day of ``day``.

    Sale timestamps are converted to the timezone of ``day`` before the
    calendar dates are compared. A naive ``day`` is taken as UTC.
    """
    day = _assume_utc(day)
    target = day.date()
    total = Decimal("0")
    for sale in sales:
        if parse_sale_date(sale.sale_date).astimezone(day.tzinfo).date() == target:
            total += sale.total_price
    return total


def outstanding_credit_total(sales: Iterable[data_manager.SaleRow]) -> Decimal:
    """Sum the unpaid balance of every sale still on credit."""
    return sum(
        (sale.remaining_balance for sale in sales if sale.status == SaleStatus.CREDIT.value),
        Decimal("0"),
    )


def credit_sales(sales: Iterable[data_manager.SaleRow]) -> List[data_manager.SaleRow]:
    """Return sales with an outstanding balance, newest first."""
    pending = [sale for sale in sales if sale.status == SaleStatus.CREDIT.value]
    return _newest_first(pending)


def resolve_date_range(
    date_range: DateRange,
    now: datetime,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> DateBounds:
    """Translate a named range into inclusive datetime bounds.

    Args:
        date_range (DateRange): Named range to resolve.
        now (datetime): Reference moment; its timezone anchors the calendar.
            A naive ``now`` is taken as UTC.
        start (date | None): First day of a custom range.
        end (date | None): Last day of a custom range.

    Returns:
        tuple[datetime | None, datetime | None]: Closed ``(lower, upper)``
            interval. ``DateRange.ALL`` yields ``(None, None)``. Weeks start on
            Monday; a custom range spans from the start of ``start`` through
            the last microsecond of ``end``.

    Raises:
        ValueError: If a custom range lacks a bound or ends before it starts.
    """

    date_range = DateRange(date_range)
    now = _assume_utc(now)
    tz = now.tzinfo
    today = now.date()

    def day_start(day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=tz)

    if date_range is DateRange.ALL:
        return None, None
    if date_range is DateRange.TODAY:
        return day_start(today), now
    if date_range is DateRange.THIS_WEEK:
        return day_start(today - timedelta(days=today.weekday())), now
    if date_range is DateRange.THIS_MONTH:
        return day_start(today.replace(day=1)), now
    if date_range is DateRange.THIS_YEAR:
        return day_start(today.replace(month=1, day=1)), now

    if start is None or end is None:
        raise ValueError("A custom date range needs both a start and an end date")
    if end < start:
        raise ValueError(f"Custom date range ends ({end}) before it starts ({start})")
    return day_start(start), datetime.combine(end, time.max, tzinfo=tz)


def filter_sales_by_range(
    sales: Iterable[data_manager.SaleRow],
    date_range: DateRange,
    *,
    now: datetime,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[data_manager.SaleRow]:
    """Return the sales inside a named or custom range, newest first."""
    lower, upper = resolve_date_range(date_range, now, start, end)
    selected = []
    for sale in sales:
        moment = parse_sale_date(sale.sale_date)
        if lower is not None and moment < lower:
            continue
        if upper is not None and moment > upper:
            continue
        selected.append(sale)
    log.debug("Selected %d sales for range '%s'", len(selected), DateRange(date_range).value)
    return _newest_first(selected)


def sales_total(sales: Iterable[data_manager.SaleRow]) -> Decimal:
    """Sum ``total_price`` over ``sales``."""
    return sum((sale.total_price for sale in sales), Decimal("0"))


def customer_purchase_history(
    sales: Iterable[data_manager.SaleRow],
    customer_id: str,
) -> List[data_manager.SaleRow]:
    """Return every sale made to ``customer_id``, newest first."""
    return _newest_first([sale for sale in sales if sale.customer_id == customer_id])


def summarize_dashboard(
    products: Sequence[data_manager.ProductRow],
    customers: Sequence[data_manager.CustomerRow],
    categories: Sequence[data_manager.CategoryRow],
    sales: Sequence[data_manager.SaleRow],
    now: datetime,
) -> DashboardSummary:
    """Compute the dashboard aggregates in one pass over each collection."""
    summary = DashboardSummary(
        product_count=len(products),
        customer_count=len(customers),
        category_count=len(categories),
        today_sales_total=sales_total_for_day(sales, now),
        outstanding_credit=outstanding_credit_total(sales),
        low_stock=low_stock_products(products),
    )
    log.debug(
        "Dashboard: today=%s outstanding=%s low_stock=%d",
        summary.today_sales_total,
        summary.outstanding_credit,
        len(summary.low_stock),
    )
    return summary


def watch_low_stock(store: LedgerStore, *, timeout: Optional[float] = None) -> Iterator[List[data_manager.ProductRow]]:
    """Stream the low-stock set, recomputed for every product snapshot.

    The first value reflects the current catalog; each later value follows a
    committed change to the products collection. The stream never ends on its
    own.

    Raises:
        StoreError: If ``timeout`` elapses without a product change.
    """
    for products in store.subscribe(Collection.PRODUCTS, timeout=timeout):
        yield low_stock_products(products)


def _newest_first(sales: List[data_manager.SaleRow]) -> List[data_manager.SaleRow]:
    return sorted(sales, key=lambda sale: parse_sale_date(sale.sale_date), reverse=True)
