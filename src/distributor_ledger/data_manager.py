"""Data access layer for the distributor ledger.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Table operations: the :class:`WorkbookLedgerStore` exposes every sheet as a
   table of typed rows with ``insert``, ``update``, ``delete`` and ``query``.
   Each call is atomic for the rows it touches; there is no transaction that
   spans several calls or several sheets.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, fields, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_PAGE_SIZE, SheetName
from .exceptions import PersistenceError


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    distributor_name: str
    schema_version: str
    page_size: int = DEFAULT_PAGE_SIZE
    compensate_on_failure: bool = True


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet.

    One customer (client and branch) may own several rows, one per SKU it
    buys, each with its own negotiated price.
    """

    customer_id: str
    client_name: str
    branch: Optional[str] = None
    sku: Optional[str] = None
    price_per_case: Optional[Decimal] = None
    price_per_bottle: Optional[Decimal] = None

    @property
    def display_name(self) -> str:
        return self.client_name


@dataclass(frozen=True)
class LedgerRow:
    """In-memory view of a row from the ``SalesTransactions`` sheet."""

    id: Optional[str]
    sequence: Optional[int]
    customer_id: str
    transaction_type: str
    transaction_date: str
    amount: Optional[Decimal]
    quantity: Optional[int] = None
    sku: Optional[str] = None
    branch: Optional[str] = None
    description: Optional[str] = None
    created_at: str = ""


@dataclass(frozen=True)
class ProductionRow:
    """In-memory view of a row from the ``FactoryPayables`` sheet."""

    id: Optional[str]
    sequence: Optional[int]
    source_sale_id: Optional[str]
    customer_id: Optional[str]
    transaction_type: str
    transaction_date: str
    sku: Optional[str]
    quantity: Optional[int]
    amount: Optional[Decimal]
    description: Optional[str] = None
    created_at: str = ""


@dataclass(frozen=True)
class TransportRow:
    """In-memory view of a row from the ``TransportExpenses`` sheet."""

    id: Optional[str]
    sequence: Optional[int]
    source_sale_id: Optional[str]
    client_id: Optional[str]
    expense_group: Optional[str]
    expense_date: str
    branch: Optional[str]
    amount: Optional[Decimal]
    description: str = ""
    created_at: str = ""


@dataclass(frozen=True)
class PricingRow:
    """In-memory view of a row from the ``FactoryPricing`` sheet."""

    id: Optional[str]
    sequence: Optional[int]
    sku: str
    cost_per_case: Optional[Decimal]
    pricing_date: str
    created_at: str = ""


Row = Union[CustomerRow, LedgerRow, ProductionRow, TransportRow, PricingRow]
RowT = TypeVar("RowT", CustomerRow, LedgerRow, ProductionRow, TransportRow, PricingRow)


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _date_text(value: object) -> str:
    """Normalise a date cell into ISO text, leaving unparseable text as-is."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return "" if value is None else str(value)


def _decimal(value: object, default: Optional[Decimal] = Decimal("0.00")) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    return Decimal(str(value))


def _sort_value(value: object) -> Tuple[bool, object]:
    return (value is not None, "" if value is None else value)


def _integer(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(Decimal(str(value)))


def _readable_number(value: object) -> bool:
    """Return whether a numeric cell is blank or holds a finite number."""
    if value is None or value == "":
        return True
    try:
        return Decimal(str(value)).is_finite()
    except InvalidOperation:
        return False


def _unstorable_text(values: Iterable[object]) -> List[str]:
    """Return the text values Excel cannot store (control characters)."""
    return [value for value in values if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value)]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
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

    Validation of required entries happens in :func:`parse_settings`.

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

    ``[System]`` must provide ``DataFile``, ``DistributorName`` and
    ``SchemaVersion``. The ``[Ledger]`` section is optional; ``PageSize``
    defaults to :data:`~distributor_ledger.constants.DEFAULT_PAGE_SIZE` and
    ``CompensateOnFailure`` to ``true``. Relative ``DataFile`` entries are
    anchored to ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative data
            file.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``PageSize`` is not a positive integer or
            ``CompensateOnFailure`` is not a boolean.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        distributor_name = parser.get("System", "DistributorName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    page_size = parser.getint("Ledger", "PageSize", fallback=DEFAULT_PAGE_SIZE)
    if page_size <= 0:
        raise ValueError(f"PageSize must be a positive integer, got {page_size}")
    compensate = parser.getboolean("Ledger", "CompensateOnFailure", fallback=True)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        distributor_name=distributor_name,
        schema_version=schema_version,
        page_size=page_size,
        compensate_on_failure=compensate,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

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
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Row (de)serialization
# ---------------------------------------------------------------------------


def serialize_record(record: Row) -> list[object]:
    """Convert a row dataclass into its sheet column ordering.

    Column order always follows the dataclass field order, so the headers
    declared in :data:`TABLES` must list the fields in the same sequence.
    Decimal values stay :class:`~decimal.Decimal` so Excel keeps precision.
    """

    return [getattr(record, f.name) for f in fields(record)]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw ``Customers`` row into a :class:`CustomerRow`."""

    customer_id, client_name, branch, sku, price_per_case, price_per_bottle = raw_row[:6]
    return CustomerRow(
        customer_id=str(customer_id),
        client_name=str(client_name) if client_name is not None else "",
        branch=_text(branch),
        sku=_text(sku),
        price_per_case=_decimal(price_per_case, None),
        price_per_bottle=_decimal(price_per_bottle, None),
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerRow:
    """Convert a raw ``SalesTransactions`` row into a :class:`LedgerRow`.

    ``transaction_date`` is kept as text even when it cannot be parsed; the
    balance engine decides what to do with such rows.
    """

    (
        entry_id,
        sequence,
        customer_id,
        transaction_type,
        transaction_date,
        amount,
        quantity,
        sku,
        branch,
        description,
        created_at,
    ) = raw_row[:11]
    return LedgerRow(
        id=_text(entry_id),
        sequence=_integer(sequence),
        customer_id=str(customer_id) if customer_id is not None else "",
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        transaction_date=_date_text(transaction_date),
        amount=_decimal(amount),
        quantity=_integer(quantity),
        sku=_text(sku),
        branch=_text(branch),
        description=_text(description),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_production_entry(raw_row: Sequence[object]) -> ProductionRow:
    """Convert a raw ``FactoryPayables`` row into a :class:`ProductionRow`."""

    (
        entry_id,
        sequence,
        source_sale_id,
        customer_id,
        transaction_type,
        transaction_date,
        sku,
        quantity,
        amount,
        description,
        created_at,
    ) = raw_row[:11]
    return ProductionRow(
        id=_text(entry_id),
        sequence=_integer(sequence),
        source_sale_id=_text(source_sale_id),
        customer_id=_text(customer_id),
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        transaction_date=_date_text(transaction_date),
        sku=_text(sku),
        quantity=_integer(quantity),
        amount=_decimal(amount),
        description=_text(description),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_transport_entry(raw_row: Sequence[object]) -> TransportRow:
    """Convert a raw ``TransportExpenses`` row into a :class:`TransportRow`."""

    (
        entry_id,
        sequence,
        source_sale_id,
        client_id,
        expense_group,
        expense_date,
        branch,
        amount,
        description,
        created_at,
    ) = raw_row[:10]
    return TransportRow(
        id=_text(entry_id),
        sequence=_integer(sequence),
        source_sale_id=_text(source_sale_id),
        client_id=_text(client_id),
        expense_group=_text(expense_group),
        expense_date=_date_text(expense_date),
        branch=_text(branch),
        amount=_decimal(amount),
        description=str(description) if description is not None else "",
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_pricing(raw_row: Sequence[object]) -> PricingRow:
    """Convert a raw ``FactoryPricing`` row into a :class:`PricingRow`."""

    entry_id, sequence, sku, cost_per_case, pricing_date, created_at = raw_row[:6]
    return PricingRow(
        id=_text(entry_id),
        sequence=_integer(sequence),
        sku=str(sku) if sku is not None else "",
        cost_per_case=_decimal(cost_per_case, None),
        pricing_date=_date_text(pricing_date),
        created_at=str(created_at) if created_at is not None else "",
    )


@dataclass(frozen=True)
class TableSpec:
    """Describe how one row type maps onto a worksheet."""

    sheet: str
    headers: Tuple[str, ...]
    deserialize: Callable[[Sequence[object]], Any]
    required: Tuple[str, ...]
    key_field: str = "id"
    id_prefix: Optional[str] = None
    numeric: Tuple[str, ...] = ()

    @property
    def assigns_ids(self) -> bool:
        return self.id_prefix is not None


TABLES: Dict[type, TableSpec] = {
    CustomerRow: TableSpec(
        sheet=SheetName.CUSTOMERS.value,
        headers=("CustomerID", "ClientName", "Branch", "SKU", "PricePerCase", "PricePerBottle"),
        deserialize=deserialize_customer,
        required=("customer_id", "client_name"),
        key_field="customer_id",
        numeric=("PricePerCase", "PricePerBottle"),
    ),
    LedgerRow: TableSpec(
        sheet=SheetName.SALES_TRANSACTIONS.value,
        headers=(
            "ID",
            "Sequence",
            "CustomerID",
            "TransactionType",
            "TransactionDate",
            "Amount",
            "Quantity",
            "SKU",
            "Branch",
            "Description",
            "CreatedAt",
        ),
        deserialize=deserialize_ledger_entry,
        required=("customer_id", "transaction_type", "transaction_date", "amount"),
        id_prefix="S",
        numeric=("Sequence", "Amount", "Quantity"),
    ),
    ProductionRow: TableSpec(
        sheet=SheetName.FACTORY_PAYABLES.value,
        headers=(
            "ID",
            "Sequence",
            "SourceSaleID",
            "CustomerID",
            "TransactionType",
            "TransactionDate",
            "SKU",
            "Quantity",
            "Amount",
            "Description",
            "CreatedAt",
        ),
        deserialize=deserialize_production_entry,
        required=("transaction_type", "transaction_date", "amount"),
        id_prefix="P",
        numeric=("Sequence", "Quantity", "Amount"),
    ),
    TransportRow: TableSpec(
        sheet=SheetName.TRANSPORT_EXPENSES.value,
        headers=(
            "ID",
            "Sequence",
            "SourceSaleID",
            "ClientID",
            "ExpenseGroup",
            "ExpenseDate",
            "Branch",
            "Amount",
            "Description",
            "CreatedAt",
        ),
        deserialize=deserialize_transport_entry,
        required=("expense_date", "amount", "description"),
        id_prefix="X",
        numeric=("Sequence", "Amount"),
    ),
    PricingRow: TableSpec(
        sheet=SheetName.FACTORY_PRICING.value,
        headers=("ID", "Sequence", "SKU", "CostPerCase", "PricingDate", "CreatedAt"),
        deserialize=deserialize_pricing,
        required=("sku", "pricing_date"),
        id_prefix="Q",
        numeric=("Sequence", "CostPerCase"),
    ),
}

_STORE_ASSIGNED = frozenset({"id", "sequence", "created_at"})


def table_spec(row_type: type) -> TableSpec:
    """Return the :class:`TableSpec` registered for ``row_type``."""
    try:
        return TABLES[row_type]
    except KeyError as exc:
        raise PersistenceError(f"No table is registered for {row_type.__name__}") from exc


def generate_record_id(prefix: str, *, when: datetime, sequence: int) -> str:
    """Generate an opaque record identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}-{sequence}``. The sequence suffix
            keeps identifiers unique for inserts sharing one clock tick. Callers
            must not rely on identifiers for ordering; use ``sequence``.
    """
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{sequence}"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class WorkbookLedgerStore:
    """Table-oriented ledger store over the sheets of an ``openpyxl`` workbook.

    ``match`` arguments are mappings of dataclass field names to the exact
    values a row must carry. Unknown sheets or fields are reported as
    :class:`PersistenceError` (schema mismatch), as are missing required
    values (constraint violation).
    """

    def __init__(self, workbook: Workbook, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.workbook = workbook
        self._clock = clock or (lambda: datetime.now(UTC))

    def _sheet(self, spec: TableSpec):
        try:
            return self.workbook[spec.sheet]
        except KeyError as exc:
            raise PersistenceError(f"Workbook is missing the '{spec.sheet}' sheet") from exc

    def _rows(self, spec: TableSpec) -> List[Tuple[int, Any]]:
        sheet = self._sheet(spec)
        rows = []
        for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if not any(cell is not None for cell in raw):
                continue
            padded = tuple(raw) + (None,) * (len(spec.headers) - len(raw))
            rows.append((row_idx, self._read_row(spec, row_idx, padded)))
        return rows

    @staticmethod
    def _read_row(spec: TableSpec, row_idx: int, cells: Sequence[object]) -> Any:
        """Deserialize one sheet row, reading unreadable numeric cells as blank.

        A blanked numeric field is ``None`` on the returned row (not the
        column's usual default) so callers can tell it apart from zero.
        """
        cells = list(cells)
        blanked = [
            spec.headers.index(header)
            for header in spec.numeric
            if not _readable_number(cells[spec.headers.index(header)])
        ]
        for column in blanked:
            log.warning(
                "Unreadable %s value %r in row %d of sheet '%s'; reading it as blank",
                spec.headers[column],
                cells[column],
                row_idx,
                spec.sheet,
            )
            cells[column] = None
        try:
            record = spec.deserialize(cells)
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise PersistenceError(
                f"Unreadable row {row_idx} in sheet '{spec.sheet}': {exc}"
            ) from exc
        if blanked:
            names = [f.name for f in fields(record)]
            record = replace(record, **{names[column]: None for column in blanked})
        return record

    @staticmethod
    def _check_fields(row_type: type, names: Iterable[str]) -> None:
        known = {f.name for f in fields(row_type)}
        unknown = sorted(set(names) - known)
        if unknown:
            raise PersistenceError(
                f"Unknown {row_type.__name__} field(s): {', '.join(unknown)}"
            )

    @staticmethod
    def _check_required(spec: TableSpec, record: Row) -> None:
        missing = [name for name in spec.required if getattr(record, name) in (None, "")]
        if missing:
            raise PersistenceError(
                f"Constraint violation in '{spec.sheet}': missing {', '.join(missing)}"
            )

    @staticmethod
    def _storable_values(spec: TableSpec, record: Row) -> List[object]:
        """Serialize ``record``, refusing values the sheet cannot hold."""
        values = serialize_record(record)
        rejected = _unstorable_text(values)
        if rejected:
            raise PersistenceError(
                f"Constraint violation in '{spec.sheet}': text with control characters "
                f"cannot be stored ({', '.join(repr(value) for value in rejected)})"
            )
        return values

    @staticmethod
    def _matches(record: Row, match: Mapping[str, Any]) -> bool:
        return all(getattr(record, name) == value for name, value in match.items())

    def _next_sequence(self, spec: TableSpec) -> int:
        sequences = [record.sequence for _, record in self._rows(spec) if record.sequence is not None]
        return max(sequences, default=0) + 1

    def insert(self, record: RowT) -> RowT:
        """Append ``record`` and return it with store-assigned values filled in.

        For tables with store-assigned identifiers the ``id``, ``sequence`` and
        ``created_at`` fields are generated here. Customer rows keep their
        caller-supplied key, which must be unique.
        """
        spec = table_spec(type(record))
        sheet = self._sheet(spec)
        self._check_required(spec, record)

        if spec.assigns_ids:
            when = self._clock()
            sequence = self._next_sequence(spec)
            record = replace(
                record,
                id=generate_record_id(spec.id_prefix, when=when, sequence=sequence),
                sequence=sequence,
                created_at=when.isoformat(),
            )
        else:
            key = getattr(record, spec.key_field)
            if any(getattr(existing, spec.key_field) == key for _, existing in self._rows(spec)):
                raise PersistenceError(
                    f"Constraint violation in '{spec.sheet}': duplicate {spec.key_field} '{key}'"
                )

        values = self._storable_values(spec, record)
        last_row = sheet.max_row
        try:
            sheet.append(values)
        except (IllegalCharacterError, ValueError, TypeError) as exc:
            if sheet.max_row > last_row:
                sheet.delete_rows(last_row + 1, sheet.max_row - last_row)
            raise PersistenceError(f"Could not write row to '{spec.sheet}': {exc}") from exc
        log.debug("Inserted %s row '%s'", spec.sheet, getattr(record, spec.key_field))
        return record

    def query(
        self,
        row_type: type,
        match: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Union[str, Sequence[str], None] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Return rows of ``row_type`` matching ``match``.

        Args:
            row_type (type): Row dataclass naming the table.
            match (Mapping[str, Any] | None): Field equality filter.
            order_by (str | Sequence[str] | None): Field name(s) to sort by.
                Blank values sort before populated ones in ascending order.
            descending (bool): Reverse the sort.
            limit (int | None): Maximum number of rows to return.

        Returns:
            list: Matching rows, in sheet order unless ``order_by`` is given.
        """
        spec = table_spec(row_type)
        match = dict(match or {})
        self._check_fields(row_type, match)
        records = [record for _, record in self._rows(spec) if self._matches(record, match)]

        if order_by is not None:
            keys = (order_by,) if isinstance(order_by, str) else tuple(order_by)
            self._check_fields(row_type, keys)
            records.sort(
                key=lambda record: tuple(_sort_value(getattr(record, name)) for name in keys),
                reverse=descending,
            )
        if limit is not None:
            records = records[:limit]
        return records

    def update(self, row_type: type, match: Mapping[str, Any], field_values: Mapping[str, Any]) -> int:
        """Overwrite ``field_values`` on every row matching ``match``.

        Returns:
            int: Number of rows updated. Zero matches is not an error here;
                callers decide whether that is acceptable.
        """
        spec = table_spec(row_type)
        self._check_fields(row_type, match)
        self._check_fields(row_type, field_values)
        locked = sorted(set(field_values) & (_STORE_ASSIGNED | {spec.key_field}))
        if locked:
            raise PersistenceError(f"Store-managed field(s) cannot be updated: {', '.join(locked)}")
        if not match:
            raise PersistenceError(f"Refusing unfiltered update of '{spec.sheet}'")

        sheet = self._sheet(spec)
        pending = []
        for row_idx, record in self._rows(spec):
            if not self._matches(record, match):
                continue
            changed = replace(record, **field_values)
            self._check_required(spec, changed)
            pending.append((row_idx, self._storable_values(spec, changed)))

        for row_idx, values in pending:
            previous = [sheet.cell(row=row_idx, column=column).value for column in range(1, len(values) + 1)]
            try:
                for column, value in enumerate(values, start=1):
                    sheet.cell(row=row_idx, column=column, value=value)
            except (IllegalCharacterError, ValueError, TypeError) as exc:
                for column, value in enumerate(previous, start=1):
                    sheet.cell(row=row_idx, column=column, value=value)
                raise PersistenceError(f"Could not write row {row_idx} of '{spec.sheet}': {exc}") from exc
        log.debug("Updated %d %s row(s) matching %s", len(pending), spec.sheet, match)
        return len(pending)

    def delete(self, row_type: type, match: Mapping[str, Any]) -> int:
        """Physically delete every row matching ``match``.

        Returns:
            int: Number of rows removed.
        """
        spec = table_spec(row_type)
        self._check_fields(row_type, match)
        if not match:
            raise PersistenceError(f"Refusing unfiltered delete of '{spec.sheet}'")

        sheet = self._sheet(spec)
        doomed = [row_idx for row_idx, record in self._rows(spec) if self._matches(record, match)]
        for row_idx in reversed(doomed):
            sheet.delete_rows(row_idx, 1)
        log.debug("Deleted %d %s row(s) matching %s", len(doomed), spec.sheet, match)
        return len(doomed)
