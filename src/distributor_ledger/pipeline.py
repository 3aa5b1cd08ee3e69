"""Search, column filters, sorting and pagination for the ledger list.

The list state is an immutable :class:`FilterState` changed through small
reducer functions (each returns a new state). :func:`apply_pipeline` turns a
balance-annotated row list and a state into one page of rows plus the counts a
front-end needs. Nothing here touches the store.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from .balances import BalanceRow
from .constants import DEFAULT_PAGE_SIZE, SortDirection
from .exceptions import ValidationError


SINGLE_VALUE_FILTERS = frozenset({"date", "amount"})
MULTI_VALUE_FILTERS = frozenset({"customer", "branch", "sku", "type"})
FILTER_COLUMNS = SINGLE_VALUE_FILTERS | MULTI_VALUE_FILTERS

_COLUMN_VALUES: Dict[str, Callable[[BalanceRow], object]] = {
    "date": lambda row: row.entry.transaction_date,
    "customer": lambda row: row.customer_name,
    "branch": lambda row: row.branch,
    "type": lambda row: row.entry.transaction_type,
    "sku": lambda row: row.entry.sku,
    "amount": lambda row: row.entry.amount,
    "quantity": lambda row: row.entry.quantity,
    "outstanding": lambda row: row.outstanding,
}
SORT_COLUMNS = frozenset(_COLUMN_VALUES)

FilterValue = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class FilterState:
    """Current search, filter, sort and page selection of the ledger list."""

    search_term: str = ""
    column_filters: Mapping[str, FilterValue] = field(default_factory=dict)
    column_sort: Optional[Tuple[str, SortDirection]] = None
    current_page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass(frozen=True)
class PageResult:
    """One page of annotated rows and the counts around it."""

    rows: Tuple[BalanceRow, ...]
    page: int
    page_size: int
    page_count: int
    total_count: int
    filtered_count: int


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def set_search_term(state: FilterState, term: str) -> FilterState:
    return replace(state, search_term=term, current_page=1)


def set_column_filter(state: FilterState, column: str, value: Union[str, Iterable[str]]) -> FilterState:
    """Set the filter of ``column`` and go back to the first page.

    ``date`` and ``amount`` take one value; ``customer``, ``branch``, ``sku``
    and ``type`` take any number of values matched by set membership.
    """
    if column not in FILTER_COLUMNS:
        raise ValidationError(f"Unknown filter column: {column}")
    if column in SINGLE_VALUE_FILTERS:
        if not isinstance(value, str):
            raise ValidationError(f"Column '{column}' takes a single filter value")
        normalized: FilterValue = value
    else:
        normalized = (value,) if isinstance(value, str) else tuple(value)
    filters = dict(state.column_filters)
    filters[column] = normalized
    return replace(state, column_filters=filters, current_page=1)


def clear_column_filter(state: FilterState, column: str) -> FilterState:
    filters = dict(state.column_filters)
    filters.pop(column, None)
    return replace(state, column_filters=filters, current_page=1)


def set_column_sort(state: FilterState, column: str, direction: Union[SortDirection, str, None]) -> FilterState:
    """Sort by ``column``, replacing any other active sort.

    A ``None`` direction clears the sort when ``column`` is the sorted one.
    """
    if column not in SORT_COLUMNS:
        raise ValidationError(f"Unknown sort column: {column}")
    if direction is None:
        if state.column_sort is not None and state.column_sort[0] == column:
            return replace(state, column_sort=None)
        return state
    return replace(state, column_sort=(column, SortDirection(direction)))


def set_page(state: FilterState, page: int) -> FilterState:
    return replace(state, current_page=page)


def reset_page(state: FilterState) -> FilterState:
    return replace(state, current_page=1)


def reset_filters(state: FilterState) -> FilterState:
    """Drop search, filters and sort while keeping the page size."""
    return FilterState(page_size=state.page_size)


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


def _text(value: object) -> str:
    return "" if value is None else str(value)


def matches_search(row: BalanceRow, term: str) -> bool:
    needle = term.strip().lower()
    if not needle:
        return True
    haystack = (
        row.customer_name,
        row.branch,
        row.entry.sku,
        row.entry.description,
        row.entry.amount,
        row.entry.transaction_date,
        row.entry.transaction_type,
        row.outstanding,
    )
    return any(needle in _text(value).lower() for value in haystack)


def _amount_equals(amount: Decimal, wanted: str) -> bool:
    try:
        return amount == Decimal(wanted.strip())
    except InvalidOperation:
        return _text(amount) == wanted


def matches_filters(row: BalanceRow, column_filters: Mapping[str, FilterValue]) -> bool:
    for column, wanted in column_filters.items():
        if not wanted:
            continue
        if column == "amount":
            if not _amount_equals(row.entry.amount, wanted):
                return False
        elif column in SINGLE_VALUE_FILTERS:
            if _text(_COLUMN_VALUES[column](row)) != wanted:
                return False
        elif _text(_COLUMN_VALUES[column](row)) not in set(wanted):
            return False
    return True


def _sort_key(column: str) -> Callable[[BalanceRow], object]:
    if column == "date":
        return lambda row: (
            row.entry.transaction_date,
            row.entry.created_at,
            row.entry.sequence or 0,
        )
    getter = _COLUMN_VALUES[column]

    def key(row: BalanceRow) -> object:
        value = getter(row)
        return value.lower() if isinstance(value, str) else value

    return key


def sort_rows(rows: Sequence[BalanceRow], column_sort: Optional[Tuple[str, SortDirection]]) -> list[BalanceRow]:
    """Sort by the active column, newest date first when none is active.

    Rows without a value in the sorted column always go last.
    """
    column, direction = column_sort or ("date", SortDirection.DESC)
    getter = _COLUMN_VALUES[column]
    present = [row for row in rows if getter(row) not in (None, "")]
    missing = [row for row in rows if getter(row) in (None, "")]
    present.sort(key=_sort_key(column), reverse=direction == SortDirection.DESC)
    return present + missing


def paginate(rows: Sequence[BalanceRow], page: int, page_size: int) -> Tuple[int, int, Tuple[BalanceRow, ...]]:
    """Return ``(page, page_count, rows)`` with ``page`` clamped into range."""
    if page_size <= 0:
        raise ValidationError("page size must be positive")
    page_count = max(1, math.ceil(len(rows) / page_size))
    page = min(max(1, page), page_count)
    start = (page - 1) * page_size
    return page, page_count, tuple(rows[start:start + page_size])


def apply_pipeline(rows: Sequence[BalanceRow], state: FilterState) -> PageResult:
    """Search, filter, sort and slice ``rows`` according to ``state``."""
    filtered = [
        row
        for row in rows
        if matches_search(row, state.search_term) and matches_filters(row, state.column_filters)
    ]
    ordered = sort_rows(filtered, state.column_sort)
    page, page_count, page_rows = paginate(ordered, state.current_page, state.page_size)
    return PageResult(
        rows=page_rows,
        page=page,
        page_size=state.page_size,
        page_count=page_count,
        total_count=len(rows),
        filtered_count=len(filtered),
    )
