"""Enumerations shared across the POS ledger modules.

Centralises domain constants so that the data access layer (DAL), the ledger
store, the business logic layer (BLL), and the presentation layers rely on a
single source of truth for payment types, statuses, and collection names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_VAT_RATE = Decimal("0.18")


class PaymentType(str, Enum):
    """Enumerate supported payment mechanisms for sales and settlements."""

    CASH = "Cash"
    MOBILE_MONEY_A = "Wave"
    MOBILE_MONEY_B = "Orange Money"
    CREDIT_NOTE = "Credit Note"
    CUSTOMER_CREDIT = "Customer Credit"

    @property
    def is_deferred(self) -> bool:
        """Whether the sale stays unpaid until a later settlement."""
        return self is PaymentType.CREDIT_NOTE


class SaleStatus(str, Enum):
    """Enumerate the lifecycle states a sale can carry.

    ``PARTIALLY_RETURNED`` and ``RETURNED`` are recognised when reading
    existing records but no workflow produces them.
    """

    COMPLETED = "Completed"
    PARTIALLY_RETURNED = "Partially Returned"
    RETURNED = "Returned"
    CREDIT = "Credit"


class DiscountType(str, Enum):
    """Enumerate how a sale discount value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DateRange(str, Enum):
    """Enumerate the named windows offered by the sales history filter."""

    TODAY = "today"
    THIS_WEEK = "week"
    THIS_MONTH = "month"
    THIS_YEAR = "year"
    ALL = "all"
    CUSTOM = "custom"


class Collection(str, Enum):
    """Enumerate the workbook sheet names managed by the ledger store."""

    PRODUCTS = "Products"
    CATEGORIES = "Categories"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    PAYMENTS = "Payments"
    COMPANY_PROFILE = "CompanyProfile"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_VAT_RATE",
    "PaymentType",
    "SaleStatus",
    "DiscountType",
    "DateRange",
    "Collection",
]
