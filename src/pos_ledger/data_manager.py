"""Data access layer for the POS ledger.

This module provides low-level helpers that read from and write to the
``pos_master_data.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows for every ledger collection.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_VAT_RATE, Collection


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = Collection.PRODUCTS.value
CATEGORIES_SHEET = Collection.CATEGORIES.value
CUSTOMERS_SHEET = Collection.CUSTOMERS.value
SALES_SHEET = Collection.SALES.value
PAYMENTS_SHEET = Collection.PAYMENTS.value
COMPANY_PROFILE_SHEET = Collection.COMPANY_PROFILE.value

DEFAULT_MAX_COMMIT_ATTEMPTS = 3
DEFAULT_LOCK_TIMEOUT = 5.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_operator: str
    vat_rate: Decimal = DEFAULT_VAT_RATE
    max_commit_attempts: int = DEFAULT_MAX_COMMIT_ATTEMPTS
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category_id: Optional[str]
    quantity: int
    price: Decimal
    reorder_threshold: int
    photo: Optional[str] = None


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from the ``Categories`` sheet."""

    category_id: str
    name: str
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    email: Optional[str]
    phone: Optional[str]
    balance: Decimal = Decimal("0")


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    sale_date: str
    product_id: str
    product_name: str
    customer_id: str
    customer_name: str
    quantity: int
    subtotal: Decimal
    discount_amount: Decimal
    vat_amount: Decimal
    total_price: Decimal
    paid_amount: Decimal
    payment_type: str
    status: str
    created_by: Optional[str]

    @property
    def remaining_balance(self) -> Decimal:
        return self.total_price - self.paid_amount


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: str
    payment_date: str
    sale_id: str
    customer_name: str
    amount: Decimal
    payment_type: str


@dataclass(frozen=True)
class CompanyProfileRow:
    """In-memory view of the single data row of the ``CompanyProfile`` sheet."""

    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    logo: Optional[str] = None


LedgerRow = Union[ProductRow, CategoryRow, CustomerRow, SaleRow, PaymentRow]


# (header, attribute) pairs in worksheet column order.
SHEET_COLUMNS: Dict[Collection, Tuple[Tuple[str, str], ...]] = {
    Collection.PRODUCTS: (
        ("ProductID", "product_id"),
        ("ProductName", "name"),
        ("CategoryID", "category_id"),
        ("Quantity", "quantity"),
        ("Price", "price"),
        ("ReorderThreshold", "reorder_threshold"),
        ("Photo", "photo"),
    ),
    Collection.CATEGORIES: (
        ("CategoryID", "category_id"),
        ("CategoryName", "name"),
        ("ParentID", "parent_id"),
    ),
    Collection.CUSTOMERS: (
        ("CustomerID", "customer_id"),
        ("CustomerName", "name"),
        ("Email", "email"),
        ("Phone", "phone"),
        ("Balance", "balance"),
    ),
    Collection.SALES: (
        ("SaleID", "sale_id"),
        ("SaleDate", "sale_date"),
        ("ProductID", "product_id"),
        ("ProductName", "product_name"),
        ("CustomerID", "customer_id"),
        ("CustomerName", "customer_name"),
        ("Quantity", "quantity"),
        ("Subtotal", "subtotal"),
        ("DiscountAmount", "discount_amount"),
        ("VatAmount", "vat_amount"),
        ("TotalPrice", "total_price"),
        ("PaidAmount", "paid_amount"),
        ("PaymentType", "payment_type"),
        ("Status", "status"),
        ("CreatedBy", "created_by"),
    ),
    Collection.PAYMENTS: (
        ("PaymentID", "payment_id"),
        ("PaymentDate", "payment_date"),
        ("SaleID", "sale_id"),
        ("CustomerName", "customer_name"),
        ("Amount", "amount"),
        ("PaymentType", "payment_type"),
    ),
    Collection.COMPANY_PROFILE: (
        ("Name", "name"),
        ("Address", "address"),
        ("Phone", "phone"),
        ("Logo", "logo"),
    ),
}

KEY_COLUMNS: Dict[Collection, str] = {
    Collection.PRODUCTS: "ProductID",
    Collection.CATEGORIES: "CategoryID",
    Collection.CUSTOMERS: "CustomerID",
    Collection.SALES: "SaleID",
    Collection.PAYMENTS: "PaymentID",
}


def sheet_headers(collection: Collection) -> list[str]:
    """Return the worksheet header titles for ``collection`` in column order."""
    return [header for header, _ in SHEET_COLUMNS[collection]]


def record_key(record: LedgerRow) -> str:
    """Return the primary identifier of any keyed ledger row."""
    return str(getattr(record, fields(record)[0].name))


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` entries are mandatory. The ``[Sales]`` and
    ``[Store]`` sections are optional and fall back to the module defaults.
    Relative ``DataFile`` paths are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional numeric entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_operator = parser.get("Defaults", "Operator")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    vat_raw = parser.get("Sales", "VatRate", fallback=str(DEFAULT_VAT_RATE))
    try:
        vat_rate = Decimal(vat_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid VatRate in configuration: {vat_raw!r}") from exc
    max_attempts = parser.getint("Store", "MaxCommitAttempts", fallback=DEFAULT_MAX_COMMIT_ATTEMPTS)
    lock_timeout = parser.getfloat("Store", "LockTimeout", fallback=DEFAULT_LOCK_TIMEOUT)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_operator=default_operator,
        vat_rate=vat_rate,
        max_commit_attempts=max(1, max_attempts),
        lock_timeout=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_records(workbook: Workbook, collection: Collection) -> Iterable[LedgerRow]:
    """Stream typed records from the worksheet backing ``collection``.

    The generator skips the header row and rows whose cells are all ``None``.
    Each meaningful row is handed to the collection's deserializer so numeric
    fields become :class:`~decimal.Decimal` or ``int`` values and blank
    optional text fields remain ``None``.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (Collection): Keyed collection to read. The company profile
            singleton is read with :func:`read_company_profile` instead.

    Yields:
        LedgerRow: Normalized record for each populated row.
    """

    deserialize = DESERIALIZERS[collection]
    sheet = workbook[collection.value]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def find_record(workbook: Workbook, collection: Collection, record_id: str) -> Optional[LedgerRow]:
    """Return the record whose key column equals ``record_id`` or ``None``."""

    row_index = locate_row(workbook, collection.value, KEY_COLUMNS[collection], record_id)
    if row_index is None:
        return None
    sheet = workbook[collection.value]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return DESERIALIZERS[collection](raw)


def append_record(workbook: Workbook, collection: Collection, record: LedgerRow) -> int:
    """Append a record to the worksheet backing ``collection``.

    Args:
        workbook (Workbook): Workbook whose sheet should be modified.
        collection (Collection): Target collection.
        record (LedgerRow): Structured row ready for persistence.

    Returns:
        int: 1-based worksheet row index of the appended row.
    """

    sheet = workbook[collection.value]
    sheet.append(serialize_record(collection, record))
    return sheet.max_row


def remove_row(workbook: Workbook, collection: Collection, row_index: int) -> None:
    """Delete a single worksheet row, shifting the rows below it up."""

    workbook[collection.value].delete_rows(row_index)


def update_record(
    workbook: Workbook,
    collection: Collection,
    record_id: str,
    *,
    field_values: Mapping[str, Any],
) -> Dict[str, Any]:
    """Update selected columns for an existing record.

    The function locates the row whose key column matches ``record_id``,
    translates each attribute name into its worksheet header, validates that
    the header exists, and writes the provided values into the corresponding
    cells. Only the specified fields are modified.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (Collection): Keyed collection holding the record.
        record_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Mapping of row attribute names to
            replacement values.

    Returns:
        dict[str, Any]: Raw cell values that were overwritten, keyed by
            attribute name, so callers can restore them.

    Raises:
        KeyError: If the record or any referenced field cannot be found.
    """

    sheet_name = collection.value
    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[collection], record_id)
    if row_index is None:
        raise KeyError(f"{sheet_name} record not found: {record_id}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    attribute_headers = {attribute: header for header, attribute in SHEET_COLUMNS[collection]}

    columns: Dict[str, int] = {}
    for attribute in field_values:
        header = attribute_headers.get(attribute)
        if header is None or header not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {attribute}")
        columns[attribute] = header_map[header]

    previous: Dict[str, Any] = {}
    for attribute, value in field_values.items():
        cell = sheet.cell(row=row_index, column=columns[attribute])
        previous[attribute] = cell.value
        cell.value = _to_cell(value)
    return previous


def read_company_profile(workbook: Workbook) -> Optional[CompanyProfileRow]:
    """Return the company profile stored on row 2 of its sheet, if any."""

    sheet = workbook[COMPANY_PROFILE_SHEET]
    for raw in sheet.iter_rows(min_row=2, max_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            return deserialize_company_profile(raw)
    return None


def write_company_profile(workbook: Workbook, profile: CompanyProfileRow) -> None:
    """Overwrite the singleton company profile row."""

    sheet = workbook[COMPANY_PROFILE_SHEET]
    values = serialize_record(Collection.COMPANY_PROFILE, profile)
    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=2, column=column_index, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        # Excel may hand numeric-looking identifiers back as numbers.
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


def _header_map(sheet: Any) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _to_cell(value: Any) -> Any:
    # Enum members are persisted by value.
    return getattr(value, "value", value)


def serialize_record(collection: Collection, record: Any) -> list[object]:
    """Convert a row dataclass into the worksheet column ordering.

    Args:
        collection (Collection): Collection whose column layout applies.
        record: Row dataclass matching ``collection``.

    Returns:
        list[object]: Values ordered to match the sheet headers, preserving
            :class:`~decimal.Decimal` instances for monetary fields.
    """

    return [_to_cell(getattr(record, attribute)) for _, attribute in SHEET_COLUMNS[collection]]


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _integer(raw: object) -> int:
    return int(Decimal(str(raw))) if raw is not None else 0


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifier and name fields are coerced to ``str`` to avoid surprises caused
    by Excel automatically interpreting numbers; stock counters become ``int``
    and the price becomes a :class:`~decimal.Decimal`.
    """

    product_id, name, category_id, quantity, price, reorder_threshold, photo = raw_row[:7]
    return ProductRow(
        product_id=str(product_id),
        name=str(name),
        category_id=_optional_text(category_id),
        quantity=_integer(quantity),
        price=_decimal(price),
        reorder_threshold=_integer(reorder_threshold),
        photo=_optional_text(photo),
    )


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    """Convert a raw worksheet row into a category record."""

    category_id, name, parent_id = raw_row[:3]
    return CategoryRow(category_id=str(category_id), name=str(name), parent_id=_optional_text(parent_id))


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a customer record.

    A blank balance cell is read as zero, matching customers created before
    store credit was tracked.
    """

    customer_id, name, email, phone, balance = raw_row[:5]
    return CustomerRow(
        customer_id=str(customer_id),
        name=str(name),
        email=_optional_text(email),
        phone=_optional_text(phone),
        balance=_decimal(balance),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale record.

    Monetary columns are normalized into :class:`~decimal.Decimal` instances,
    a blank ``PaidAmount`` is read as zero, and the operator column stays
    ``None`` when blank.
    """

    (
        sale_id,
        sale_date,
        product_id,
        product_name,
        customer_id,
        customer_name,
        quantity,
        subtotal,
        discount_amount,
        vat_amount,
        total_price,
        paid_amount,
        payment_type,
        status,
        created_by,
    ) = raw_row[:15]

    return SaleRow(
        sale_id=str(sale_id),
        sale_date=str(sale_date) if sale_date is not None else "",
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        quantity=_integer(quantity),
        subtotal=_decimal(subtotal),
        discount_amount=_decimal(discount_amount),
        vat_amount=_decimal(vat_amount),
        total_price=_decimal(total_price),
        paid_amount=_decimal(paid_amount),
        payment_type=str(payment_type) if payment_type is not None else "",
        status=str(status) if status is not None else "",
        created_by=_optional_text(created_by),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    """Convert a raw worksheet row into a payment ledger record."""

    payment_id, payment_date, sale_id, customer_name, amount, payment_type = raw_row[:6]
    return PaymentRow(
        payment_id=str(payment_id),
        payment_date=str(payment_date) if payment_date is not None else "",
        sale_id=str(sale_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        amount=_decimal(amount),
        payment_type=str(payment_type) if payment_type is not None else "",
    )


def deserialize_company_profile(raw_row: Sequence[object]) -> CompanyProfileRow:
    """Convert the raw company profile row into its dataclass."""

    name, address, phone, logo = raw_row[:4]
    return CompanyProfileRow(
        name=str(name) if name is not None else "",
        address=_optional_text(address),
        phone=_optional_text(phone),
        logo=_optional_text(logo),
    )


DESERIALIZERS: Dict[Collection, Callable[[Sequence[object]], Any]] = {
    Collection.PRODUCTS: deserialize_product,
    Collection.CATEGORIES: deserialize_category,
    Collection.CUSTOMERS: deserialize_customer,
    Collection.SALES: deserialize_sale,
    Collection.PAYMENTS: deserialize_payment,
}

ROW_TYPES: Dict[Collection, type] = {
    Collection.PRODUCTS: ProductRow,
    Collection.CATEGORIES: CategoryRow,
    Collection.CUSTOMERS: CustomerRow,
    Collection.SALES: SaleRow,
    Collection.PAYMENTS: PaymentRow,
}
