"""Business logic layer for the distributor ledger.

Every sale in ``SalesTransactions`` owns two derived records: a production
cost entry in ``FactoryPayables`` and a transport entry in
``TransportExpenses``. This module keeps the three in step across create,
update and delete, records payments, and serves the balance-annotated ledger
list. All I/O goes through the store held by the :class:`RuntimeContext`.

The store only guarantees single-call atomicity. Creating a sale therefore
runs as a small saga: when a derived insert fails, the records already written
are deleted again (``CompensateOnFailure``), or the failure is raised as a
:class:`~distributor_ledger.exceptions.DerivedSyncWarning` carrying the
persisted sale when compensation is switched off. Updates and deletes never
raise for derived records; their problems come back in a
:class:`~distributor_ledger.exceptions.SyncResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.workbook import Workbook

from . import data_manager, log, pricing
from .balances import BalanceIndex, BalanceRow, CustomerTotals, customer_totals
from .constants import EXPECTED_SCHEMA_VERSION, ExpenseGroup, TransactionType
from .data_manager import CustomerRow, LedgerRow, PricingRow, ProductionRow, TransportRow
from .exceptions import (
    DerivedSyncWarning,
    MissingReferenceError,
    PersistenceError,
    SyncResult,
    ValidationError,
)
from .pipeline import FilterState, PageResult, apply_pipeline


DateInput = Union[date, str, None]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and store used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: data_manager.WorkbookLedgerStore
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale."""

    customer_id: str
    sku: str
    quantity: int
    amount: Decimal
    transaction_date: DateInput
    branch: str
    description: Optional[str] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment received from a customer."""

    customer_id: str
    amount: Decimal
    transaction_date: DateInput
    description: Optional[str] = None
    branch: Optional[str] = None


@dataclass(frozen=True)
class SaleUpdate:
    """Fields to change on an existing ledger entry; ``None`` leaves a field as is."""

    customer_id: Optional[str] = None
    sku: Optional[str] = None
    quantity: Optional[int] = None
    amount: Optional[Decimal] = None
    transaction_date: DateInput = None
    branch: Optional[str] = None
    description: Optional[str] = None


# ---------------------------------------------------------------------------
# Context and caches
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so later reads see the new rows."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "customers")
    if "all" not in bucket:
        all_customers = context.store.query(CustomerRow)
        bucket["all"] = all_customers
        bucket["by_id"] = {customer.customer_id: customer for customer in all_customers}
        log.debug("Populated customers cache with %d entries", len(all_customers))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the ledger cache bucket on demand.

    The bucket holds the ``all`` entries in sheet order, a ``by_id`` lookup,
    and lazily a ``balances`` :class:`BalanceIndex` built over the same
    snapshot, so running balances are computed once per customer until the
    next write invalidates the bucket.
    """

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_entries = context.store.query(LedgerRow)
        bucket["all"] = all_entries
        bucket["by_id"] = {entry.id: entry for entry in all_entries}
        log.debug("Populated transactions cache with %d entries", len(all_entries))
    return bucket


def _balance_index(context: RuntimeContext) -> BalanceIndex:
    bucket = _ensure_transactions_cache(context)
    if "balances" not in bucket:
        bucket["balances"] = BalanceIndex(bucket["all"])
    return bucket["balances"]


def create_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> RuntimeContext:
    """Bundle settings and an open workbook with a store over that workbook."""
    store = data_manager.WorkbookLedgerStore(workbook, clock=clock)
    return RuntimeContext(settings=settings, workbook=workbook, store=store)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context with settings, workbook, store and an empty
            cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return create_context(settings, workbook)


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
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved edits and caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return create_context(context.settings, workbook)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_text(value: Optional[str], name: str) -> str:
    """Return ``value`` stripped, rejecting blanks.

    Raises:
        ValidationError: If ``value`` is ``None`` or blank.
    """
    if value is None or not str(value).strip():
        log.error("Required field '%s' is missing", name)
        raise ValidationError(f"{name} is required")
    return storable_text(str(value).strip(), name)


def storable_text(value: Optional[str], name: str) -> Optional[str]:
    """Return ``value`` unchanged if the workbook can store it.

    Raises:
        ValidationError: If ``value`` contains control characters Excel
            rejects.
    """
    if value is not None and ILLEGAL_CHARACTERS_RE.search(str(value)):
        log.error("Field '%s' contains characters the workbook cannot store: %r", name, value)
        raise ValidationError(f"{name} contains control characters that cannot be stored")
    return value


def require_date(value: DateInput, name: str = "transaction_date") -> str:
    """Normalise a calendar date into ISO text.

    Raises:
        ValidationError: If ``value`` is absent or not an ISO date.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = require_text(value, name)
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError as exc:
        log.error("Field '%s' is not an ISO date: %s", name, text)
        raise ValidationError(f"{name} must be an ISO date (YYYY-MM-DD), got '{text}'") from exc


def require_nonnegative_money(amount: Any, name: str = "amount") -> Decimal:
    """Coerce ``amount`` to a finite, nonnegative :class:`Decimal`.

    Raises:
        ValidationError: If the value is missing, not numeric, not finite or
            negative.
    """
    if amount is None or isinstance(amount, bool):
        log.error("Monetary field '%s' is missing", name)
        raise ValidationError(f"{name} is required")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        log.error("Monetary field '%s' is not numeric: %s", name, amount)
        raise ValidationError(f"{name} must be a number, got '{amount}'") from exc
    if not value.is_finite() or value < Decimal("0"):
        log.error("Monetary value validation failed for '%s': %s", name, value)
        raise ValidationError(f"{name} must be zero or positive")
    return value


def require_quantity(quantity: Any) -> int:
    """Validate a case count as a nonnegative whole number.

    Raises:
        ValidationError: If ``quantity`` is missing, fractional or negative.
    """
    if quantity is None or isinstance(quantity, bool):
        log.error("Quantity is missing")
        raise ValidationError("quantity is required")
    try:
        value = Decimal(str(quantity))
    except InvalidOperation as exc:
        raise ValidationError(f"quantity must be a whole number, got '{quantity}'") from exc
    if not value.is_finite() or value != value.to_integral_value() or value < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("quantity must be a whole number of cases, zero or more")
    return int(value)


# ---------------------------------------------------------------------------
# Customers and pricing
# ---------------------------------------------------------------------------


def add_customer(
    context: RuntimeContext,
    *,
    customer_id: str,
    client_name: str,
    branch: Optional[str] = None,
    sku: Optional[str] = None,
    price_per_case: Optional[Decimal] = None,
    price_per_bottle: Optional[Decimal] = None,
) -> CustomerRow:
    """Register a customer row (one per client, branch and SKU)."""
    customer = CustomerRow(
        customer_id=require_text(customer_id, "customer_id"),
        client_name=require_text(client_name, "client_name"),
        branch=storable_text(branch, "branch"),
        sku=storable_text(sku, "sku"),
        price_per_case=None if price_per_case is None else require_nonnegative_money(price_per_case, "price_per_case"),
        price_per_bottle=None if price_per_bottle is None else require_nonnegative_money(price_per_bottle, "price_per_bottle"),
    )
    stored = context.store.insert(customer)
    _invalidate_cache(context, "customers")
    log.info("Registered customer '%s' (%s / %s)", stored.customer_id, stored.client_name, stored.branch)
    return stored


def list_customers(context: RuntimeContext) -> List[CustomerRow]:
    return list(_ensure_customers_cache(context)["all"])


def get_customer(context: RuntimeContext, customer_id: str) -> CustomerRow:
    """Resolve a customer row by its identifier.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    cache = _ensure_customers_cache(context)
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def unique_customers(context: RuntimeContext) -> List[CustomerRow]:
    """Return the first row of every distinct (client name, branch) pair."""
    seen = set()
    unique: List[CustomerRow] = []
    for customer in sorted(list_customers(context), key=lambda c: c.client_name.lower()):
        key = (customer.client_name, customer.branch)
        if key not in seen:
            seen.add(key)
            unique.append(customer)
    return unique


def _customer_group(context: RuntimeContext, customer_id: str) -> List[CustomerRow]:
    selected = get_customer(context, customer_id)
    return [
        customer
        for customer in list_customers(context)
        if customer.client_name == selected.client_name and customer.branch == selected.branch
    ]


def available_skus(context: RuntimeContext, customer_id: str) -> List[str]:
    """SKUs configured for the client and branch of ``customer_id``."""
    return [customer.sku for customer in _customer_group(context, customer_id) if customer.sku]


def suggest_sale_amount(context: RuntimeContext, customer_id: str, sku: str, quantity: Optional[int]) -> Optional[Decimal]:
    """Billed amount for ``quantity`` cases at the customer's price per case.

    Returns ``None`` when the customer has no price for ``sku`` or no quantity
    is given.
    """
    if not quantity:
        return None
    for customer in _customer_group(context, customer_id):
        if customer.sku == sku and customer.price_per_case:
            return Decimal(quantity) * customer.price_per_case
    return None


def add_pricing(context: RuntimeContext, *, sku: str, cost_per_case: Decimal, pricing_date: DateInput) -> PricingRow:
    """Record a factory pricing quote for ``sku``."""
    quote = PricingRow(
        id=None,
        sequence=None,
        sku=require_text(sku, "sku"),
        cost_per_case=require_nonnegative_money(cost_per_case, "cost_per_case"),
        pricing_date=require_date(pricing_date, "pricing_date"),
    )
    stored = context.store.insert(quote)
    log.info("Recorded pricing '%s' for SKU '%s' at %s per case", stored.id, stored.sku, stored.cost_per_case)
    return stored


# ---------------------------------------------------------------------------
# Ledger reads
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext) -> List[LedgerRow]:
    """Snapshot of every ledger entry in sheet order."""
    return list(_ensure_transactions_cache(context)["all"])


def get_transaction(context: RuntimeContext, transaction_id: str) -> LedgerRow:
    """Retrieve a ledger entry by its identifier.

    Raises:
        MissingReferenceError: If the ledger lacks ``transaction_id``.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


def list_with_balances(context: RuntimeContext, customer_id: Optional[str] = None) -> List[BalanceRow]:
    """Return ledger entries annotated with their running outstanding.

    Balances always come from the customer's full history, whatever
    ``customer_id`` filter is applied to the returned rows. Each customer's
    history is walked once per ledger snapshot.

    Args:
        context (RuntimeContext): Runtime context providing the store and
            caches.
        customer_id (str | None): Restrict the rows to one customer.

    Returns:
        list[BalanceRow]: Rows in sheet order. ``outstanding`` is ``None`` for
            entries whose date could not be parsed.
    """
    index = _balance_index(context)
    customers = _ensure_customers_cache(context)["by_id"]
    rows: List[BalanceRow] = []
    for entry in list_transactions(context):
        if customer_id is not None and entry.customer_id != customer_id:
            continue
        customer = customers.get(entry.customer_id)
        rows.append(
            BalanceRow(
                entry=entry,
                outstanding=index.outstanding_for(entry),
                customer_name=customer.client_name if customer else "",
                branch=entry.branch or (customer.branch if customer and customer.branch else ""),
            )
        )
    return rows


def list_page(context: RuntimeContext, state: FilterState, customer_id: Optional[str] = None) -> PageResult:
    """Run the list pipeline over the balance-annotated ledger.

    ``customer_id`` narrows the rows before search and filters apply; totals
    in the result count only that customer's entries.
    """
    return apply_pipeline(list_with_balances(context, customer_id=customer_id), state)


def outstanding_for_transaction(context: RuntimeContext, transaction_id: str) -> Optional[Decimal]:
    """Outstanding of the entry's customer as of that entry."""
    return _balance_index(context).outstanding_for(get_transaction(context, transaction_id))


def customer_summary(context: RuntimeContext) -> Dict[str, CustomerTotals]:
    """Lifetime sales, payments and outstanding keyed by customer id."""
    return customer_totals(list_transactions(context))


# ---------------------------------------------------------------------------
# Derived record builders
# ---------------------------------------------------------------------------


def build_sale_entry(command: SaleCommand, *, quantity: int, amount: Decimal, transaction_date: str) -> LedgerRow:
    return LedgerRow(
        id=None,
        sequence=None,
        customer_id=command.customer_id,
        transaction_type=TransactionType.SALE.value,
        transaction_date=transaction_date,
        amount=amount,
        quantity=quantity,
        sku=command.sku,
        branch=command.branch,
        description=command.description,
    )


def build_production_entry(sale: LedgerRow, customer: Optional[CustomerRow], amount: Decimal) -> ProductionRow:
    """Production cost entry derived from ``sale``.

    The description carries the customer's display name for people reading
    the factory ledger; matching uses ``source_sale_id``.
    """
    return ProductionRow(
        id=None,
        sequence=None,
        source_sale_id=sale.id,
        customer_id=sale.customer_id,
        transaction_type=TransactionType.PRODUCTION.value,
        transaction_date=sale.transaction_date,
        sku=sale.sku,
        quantity=sale.quantity,
        amount=amount,
        description=customer.display_name if customer else sale.customer_id,
    )


def transport_description(customer: Optional[CustomerRow], branch: Optional[str]) -> str:
    name = customer.display_name if customer else "Unknown customer"
    return f"{name}-{branch or ''} Transport"


def build_transport_entry(sale: LedgerRow, customer: Optional[CustomerRow]) -> TransportRow:
    """Transport entry derived from ``sale``; priced later, so the amount starts at 0."""
    return TransportRow(
        id=None,
        sequence=None,
        source_sale_id=sale.id,
        client_id=sale.customer_id,
        expense_group=ExpenseGroup.CLIENT_SALE_TRANSPORT.value,
        expense_date=sale.transaction_date,
        branch=sale.branch,
        amount=Decimal("0"),
        description=transport_description(customer, sale.branch),
    )


def production_natural_key(sale: LedgerRow) -> Dict[str, Any]:
    return {
        "customer_id": sale.customer_id,
        "transaction_date": sale.transaction_date,
        "sku": sale.sku,
        "transaction_type": TransactionType.PRODUCTION.value,
    }


def transport_natural_key(sale: LedgerRow) -> Dict[str, Any]:
    return {
        "client_id": sale.customer_id,
        "expense_date": sale.transaction_date,
        "expense_group": ExpenseGroup.CLIENT_SALE_TRANSPORT.value,
    }


def locate_sibling(context: RuntimeContext, row_type: type, sale: LedgerRow):
    """Find the single derived record of ``row_type`` belonging to ``sale``.

    Records are matched by ``source_sale_id``. Rows written before that link
    existed are matched by their natural key, ignoring rows already linked to
    another sale.

    Raises:
        DerivedSyncWarning: If no record or more than one record matches.
        PersistenceError: If the store query fails.
    """
    linked = context.store.query(row_type, {"source_sale_id": sale.id})
    if len(linked) == 1:
        return linked[0]
    table = data_manager.table_spec(row_type).sheet
    if len(linked) > 1:
        raise DerivedSyncWarning(
            f"{len(linked)} {table} rows are linked to sale '{sale.id}': "
            f"{', '.join(row.id for row in linked)}",
            sale_id=sale.id,
        )

    natural_key = production_natural_key(sale) if row_type is ProductionRow else transport_natural_key(sale)
    legacy = [row for row in context.store.query(row_type, natural_key) if not row.source_sale_id]
    if not legacy:
        raise DerivedSyncWarning(f"No {table} row found for sale '{sale.id}'", sale_id=sale.id)
    if len(legacy) > 1:
        raise DerivedSyncWarning(
            f"Ambiguous {table} match for sale '{sale.id}': natural key {natural_key} "
            f"matched {len(legacy)} rows ({', '.join(row.id for row in legacy)}); none were changed",
            sale_id=sale.id,
        )
    log.info("Matched legacy %s row '%s' to sale '%s' by natural key", table, legacy[0].id, sale.id)
    return legacy[0]


def _collect_warning(result: SyncResult, error: Exception, sale: LedgerRow, action: str) -> None:
    if isinstance(error, DerivedSyncWarning):
        warning = error
    else:
        warning = DerivedSyncWarning(f"Could not {action} for sale '{sale.id}': {error}", sale_id=sale.id)
        warning.__cause__ = error
    log.warning("%s", warning)
    result.sibling_warnings.append(warning)


# ---------------------------------------------------------------------------
# Sales and payments
# ---------------------------------------------------------------------------


def _rollback(context: RuntimeContext, sale: LedgerRow, written: List[Any], error: PersistenceError) -> None:
    """Apply the configured partial-failure policy for a sale creation. Always raises."""
    if not context.settings.compensate_on_failure:
        log.warning("Sale '%s' kept without complete derived records: %s", sale.id, error)
        raise DerivedSyncWarning(
            f"Sale '{sale.id}' was recorded but its derived records were not: {error}",
            sale_id=sale.id,
            record=sale,
        ) from error

    leftovers: List[str] = []
    for record in reversed(written):
        try:
            context.store.delete(type(record), {"id": record.id})
        except PersistenceError as compensation_error:
            log.error("Compensating delete of '%s' failed: %s", record.id, compensation_error)
            leftovers.append(record.id)
    if leftovers:
        log.error("Sale '%s' left partial records behind: %s", sale.id, ", ".join(leftovers))
    else:
        log.warning("Rolled back sale '%s' after derived insert failure: %s", sale.id, error)
    raise PersistenceError(
        f"Sale could not be recorded: {error}",
        partial_writes=leftovers,
    ) from error


def record_sale(context: RuntimeContext, command: SaleCommand) -> LedgerRow:
    """Record a sale with its production and transport entries.

    Input is validated and the production cost is resolved before the first
    write, so a :class:`ValidationError` leaves the store untouched. The sale,
    the production entry and the transport entry are then inserted one after
    another. If a derived insert fails, the configured partial-failure policy
    applies (see the module docstring).

    Args:
        context (RuntimeContext): Runtime context providing the store and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        LedgerRow: The stored sale including its store-assigned id.

    Raises:
        ValidationError: When required input is missing or invalid, or the
            cost fallback has no quantity to work with.
        MissingReferenceError: If the customer is unknown.
        PersistenceError: If the sale insert fails, or a derived insert fails
            and the written records were rolled back.
        DerivedSyncWarning: If a derived insert fails while compensation is
            disabled; the sale remains stored.
    """
    customer_id = require_text(command.customer_id, "customer_id")
    sku = require_text(command.sku, "sku")
    require_text(command.branch, "branch")
    storable_text(command.description, "description")
    quantity = require_quantity(command.quantity)
    amount = require_nonnegative_money(command.amount)
    transaction_date = require_date(command.transaction_date)
    customer = get_customer(context, customer_id)

    unit_cost = pricing.resolve_unit_cost(
        context.store,
        sku,
        amount=amount,
        quantity=quantity,
        transaction_date=transaction_date,
    )
    production_amount = pricing.compute_production_amount(quantity, unit_cost)

    sale = build_sale_entry(
        replace(command, customer_id=customer_id, sku=sku),
        quantity=quantity,
        amount=amount,
        transaction_date=transaction_date,
    )
    try:
        sale = context.store.insert(sale)
        written: List[Any] = [sale]
        try:
            written.append(context.store.insert(build_production_entry(sale, customer, production_amount)))
            written.append(context.store.insert(build_transport_entry(sale, customer)))
        except PersistenceError as exc:
            _rollback(context, sale, written, exc)
    finally:
        _invalidate_cache(context, "transactions")

    log.info(
        "Recorded sale '%s' for customer '%s' (sku=%s, quantity=%s, amount=%s, production=%s)",
        sale.id,
        customer_id,
        sku,
        quantity,
        amount,
        production_amount,
    )
    return sale


def record_payment(context: RuntimeContext, command: PaymentCommand) -> LedgerRow:
    """Record a payment received from a customer.

    Raises:
        ValidationError: When required input is missing or invalid.
        MissingReferenceError: If the customer is unknown.
        PersistenceError: If the store rejects the insert.
    """
    customer_id = require_text(command.customer_id, "customer_id")
    amount = require_nonnegative_money(command.amount)
    transaction_date = require_date(command.transaction_date)
    get_customer(context, customer_id)

    payment = LedgerRow(
        id=None,
        sequence=None,
        customer_id=customer_id,
        transaction_type=TransactionType.PAYMENT.value,
        transaction_date=transaction_date,
        amount=amount,
        branch=storable_text(command.branch, "branch"),
        description=storable_text(command.description, "description"),
    )
    try:
        payment = context.store.insert(payment)
    finally:
        _invalidate_cache(context, "transactions")
    log.info("Recorded payment '%s' from customer '%s' (amount=%s)", payment.id, customer_id, amount)
    return payment


def _validated_changes(entry: LedgerRow, update: SaleUpdate) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if update.customer_id is not None:
        changes["customer_id"] = require_text(update.customer_id, "customer_id")
    if update.amount is not None:
        changes["amount"] = require_nonnegative_money(update.amount)
    if update.transaction_date is not None:
        changes["transaction_date"] = require_date(update.transaction_date)
    if update.branch is not None:
        changes["branch"] = storable_text(update.branch, "branch")
    if update.description is not None:
        changes["description"] = storable_text(update.description, "description")

    if update.sku is not None or update.quantity is not None:
        if entry.transaction_type != TransactionType.SALE.value:
            log.error("Cannot set sku or quantity on %s entry '%s'", entry.transaction_type, entry.id)
            raise ValidationError("sku and quantity apply to sales only")
        if update.sku is not None:
            changes["sku"] = require_text(update.sku, "sku")
        if update.quantity is not None:
            changes["quantity"] = require_quantity(update.quantity)
    return changes


def update_sale(context: RuntimeContext, transaction_id: str, update: SaleUpdate) -> SyncResult:
    """Update a ledger entry and carry the change to its derived records.

    The stored entry is read before anything changes; its id and original
    customer, date and SKU are what locate the derived records. When the SKU,
    quantity or amount of a sale changes, the production cost is re-resolved
    up front so invalid input is rejected before any write.

    After the ledger row is updated, the production entry gets the new SKU,
    quantity, amount, date and customer, and the transport entry the new
    client, date, branch and description. Its amount is left alone because it
    is priced separately. Derived record problems are logged and returned,
    never raised.

    Args:
        context (RuntimeContext): Runtime context providing the store and
            caches.
        transaction_id (str): Id of the sale or payment to change.
        update (SaleUpdate): Fields to change.

    Returns:
        SyncResult: ``primary_ok`` plus any sibling warnings.

    Raises:
        ValidationError: When new values are invalid (nothing is written).
        MissingReferenceError: If the entry or new customer is unknown.
        PersistenceError: If the ledger row itself cannot be updated.
    """
    original = get_transaction(context, transaction_id)
    changes = _validated_changes(original, update)
    result = SyncResult()
    if not changes:
        log.info("No changes requested for transaction '%s'", transaction_id)
        return result

    updated = replace(original, **changes)
    customer = get_customer(context, updated.customer_id) if "customer_id" in changes else None
    is_sale = original.transaction_type == TransactionType.SALE.value

    production_amount: Optional[Decimal] = None
    if is_sale and changes.keys() & {"sku", "quantity", "amount"}:
        unit_cost = pricing.resolve_unit_cost(
            context.store,
            updated.sku,
            amount=require_nonnegative_money(updated.amount),
            quantity=updated.quantity,
            transaction_date=updated.transaction_date,
        )
        production_amount = pricing.compute_production_amount(updated.quantity, unit_cost)

    try:
        count = context.store.update(LedgerRow, {"id": transaction_id}, changes)
    finally:
        _invalidate_cache(context, "transactions")
    if count != 1:
        log.error("Ledger update for '%s' touched %d rows", transaction_id, count)
        raise PersistenceError(f"Transaction '{transaction_id}' could not be updated")
    log.info("Updated transaction '%s': %s", transaction_id, ", ".join(sorted(changes)))

    if not is_sale:
        return result

    if customer is None:
        customer = _ensure_customers_cache(context)["by_id"].get(updated.customer_id)

    production_fields: Dict[str, Any] = {
        "source_sale_id": original.id,
        "customer_id": updated.customer_id,
        "transaction_date": updated.transaction_date,
        "sku": updated.sku,
        "quantity": updated.quantity,
    }
    if production_amount is not None:
        production_fields["amount"] = production_amount
    if customer is not None:
        production_fields["description"] = customer.display_name
    _update_sibling(context, ProductionRow, original, production_fields, result)

    transport_fields: Dict[str, Any] = {
        "source_sale_id": original.id,
        "client_id": updated.customer_id,
        "expense_date": updated.transaction_date,
        "branch": updated.branch,
    }
    if customer is not None:
        transport_fields["description"] = transport_description(customer, updated.branch)
    _update_sibling(context, TransportRow, original, transport_fields, result)
    return result


def _update_sibling(
    context: RuntimeContext,
    row_type: type,
    sale: LedgerRow,
    field_values: Mapping[str, Any],
    result: SyncResult,
) -> None:
    action = f"update {data_manager.table_spec(row_type).sheet} entry"
    try:
        sibling = locate_sibling(context, row_type, sale)
        context.store.update(row_type, {"id": sibling.id}, field_values)
        log.debug("Synchronised %s row '%s' with sale '%s'", row_type.__name__, sibling.id, sale.id)
    except (PersistenceError, DerivedSyncWarning) as exc:
        _collect_warning(result, exc, sale, action)


def delete_transaction(context: RuntimeContext, transaction_id: str) -> SyncResult:
    """Physically delete a ledger entry and, for sales, its derived records.

    Derived records go first and best-effort: failures are logged and
    returned. Deleting the ledger entry itself is the only step whose failure
    raises.

    Raises:
        MissingReferenceError: If ``transaction_id`` is unknown.
        PersistenceError: If the ledger entry cannot be deleted.
    """
    entry = get_transaction(context, transaction_id)
    result = SyncResult()

    try:
        if entry.transaction_type == TransactionType.SALE.value:
            for row_type in (ProductionRow, TransportRow):
                action = f"delete {data_manager.table_spec(row_type).sheet} entry"
                try:
                    sibling = locate_sibling(context, row_type, entry)
                    context.store.delete(row_type, {"id": sibling.id})
                except (PersistenceError, DerivedSyncWarning) as exc:
                    _collect_warning(result, exc, entry, action)

        removed = context.store.delete(LedgerRow, {"id": entry.id})
    finally:
        _invalidate_cache(context, "transactions")

    if removed != 1:
        log.error("Deleting transaction '%s' removed %d rows", transaction_id, removed)
        raise PersistenceError(f"Transaction '{transaction_id}' could not be deleted")
    log.info(
        "Deleted %s '%s' (%d derived warning(s))",
        entry.transaction_type,
        transaction_id,
        len(result.sibling_warnings),
    )
    return result
