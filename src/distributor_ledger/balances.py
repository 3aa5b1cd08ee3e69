"""Running outstanding balances derived from the sales ledger.

No running total is stored anywhere. A customer's outstanding amount as of an
entry is rebuilt from the customer's full history: entries are walked in
chronological order ``(transaction_date, created_at, sequence)``, sales add
their amount, payments subtract it, and the running value is rounded half-up
to cents after every step.

Entries whose date cannot be parsed, or whose amount could not be read from
the sheet, are skipped (and logged) rather than aborting the whole
computation; their outstanding value is ``None``.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from . import log
from .constants import CENT, TransactionType
from .data_manager import LedgerRow


ChronologicalKey = Tuple[date, str, int]


@dataclass(frozen=True)
class BalanceRow:
    """A ledger entry annotated for display with its running outstanding."""

    entry: LedgerRow
    outstanding: Optional[Decimal]
    customer_name: str = ""
    branch: str = ""


@dataclass(frozen=True)
class CustomerTotals:
    """Lifetime totals for one customer."""

    customer_id: str
    total_sales: Decimal
    total_payments: Decimal
    outstanding: Decimal


def chronological_key(entry: LedgerRow) -> ChronologicalKey:
    """Return the canonical ordering key of ``entry``.

    Raises:
        ValueError: If ``transaction_date`` is not an ISO calendar date.
    """
    return (
        date.fromisoformat(entry.transaction_date),
        entry.created_at or "",
        entry.sequence if entry.sequence is not None else 0,
    )


def _safe_key(entry: LedgerRow) -> Optional[ChronologicalKey]:
    if entry.amount is None:
        log.warning("Skipping ledger entry '%s' with unreadable amount in balance computation", entry.id)
        return None
    try:
        return chronological_key(entry)
    except (TypeError, ValueError):
        log.warning(
            "Skipping ledger entry '%s' with unparseable date '%s' in balance computation",
            entry.id,
            entry.transaction_date,
        )
        return None


def signed_amount(entry: LedgerRow) -> Decimal:
    """Return the effect of ``entry`` on the customer's outstanding amount."""
    if entry.transaction_type == TransactionType.SALE.value:
        return entry.amount
    if entry.transaction_type == TransactionType.PAYMENT.value:
        return -entry.amount
    log.warning("Ledger entry '%s' has unknown type '%s'", entry.id, entry.transaction_type)
    return Decimal("0")


def _step(running: Decimal, entry: LedgerRow) -> Decimal:
    return (running + signed_amount(entry)).quantize(CENT, rounding=ROUND_HALF_UP)


def running_balances(entries: Iterable[LedgerRow]) -> Dict[str, Optional[Decimal]]:
    """Compute the outstanding amount as of each entry of one customer.

    Args:
        entries (Iterable[LedgerRow]): One customer's history, in any order.

    Returns:
        dict[str, Decimal | None]: Outstanding keyed by entry id. Entries with
            an unparseable date or unreadable amount map to ``None``.
    """
    keyed: List[Tuple[ChronologicalKey, LedgerRow]] = []
    result: Dict[str, Optional[Decimal]] = {}
    for entry in entries:
        key = _safe_key(entry)
        if key is None:
            result[entry.id] = None
        else:
            keyed.append((key, entry))

    running = Decimal("0.00")
    for _, entry in sorted(keyed, key=lambda pair: pair[0]):
        running = _step(running, entry)
        result[entry.id] = running
    return result


def outstanding_as_of(entries: Iterable[LedgerRow], target: LedgerRow) -> Optional[Decimal]:
    """Outstanding of ``target``'s customer as of (and including) ``target``.

    ``entries`` may be unsorted and may mix customers. Every entry of the same
    customer whose chronological key is not after the target's key is
    included. This rebuilds from scratch on every call; use
    :class:`BalanceIndex` when annotating many rows.
    """
    target_key = _safe_key(target)
    if target_key is None:
        return None

    same_customer = (entry for entry in entries if entry.customer_id == target.customer_id)
    history = [(key, entry) for key, entry in _dated(same_customer) if key <= target_key]
    return _walk(history)


class BalanceIndex:
    """Per-customer memo of running balances over one ledger snapshot.

    Each customer's history is walked at most once, the first time one of its
    entries is looked up, so annotating every visible row stays linear in the
    size of the ledger.
    """

    def __init__(self, entries: Iterable[LedgerRow]) -> None:
        self._by_customer: Dict[str, List[LedgerRow]] = defaultdict(list)
        for entry in entries:
            self._by_customer[entry.customer_id].append(entry)
        self._memo: Dict[str, Dict[str, Optional[Decimal]]] = {}

    @property
    def computed_customers(self) -> frozenset:
        return frozenset(self._memo)

    def balances_for(self, customer_id: str) -> Dict[str, Optional[Decimal]]:
        balances = self._memo.get(customer_id)
        if balances is None:
            balances = running_balances(self._by_customer.get(customer_id, ()))
            self._memo[customer_id] = balances
            log.debug("Computed running balances for customer '%s' (%d entries)", customer_id, len(balances))
        return balances

    def outstanding_for(self, entry: LedgerRow) -> Optional[Decimal]:
        return self.balances_for(entry.customer_id).get(entry.id)

    def final_balance(self, customer_id: str) -> Decimal:
        """Outstanding after the customer's last chronological entry."""
        return outstanding_after(self._by_customer.get(customer_id, ()))


def _dated(entries: Iterable[LedgerRow]) -> List[Tuple[ChronologicalKey, LedgerRow]]:
    keyed = []
    for entry in entries:
        key = _safe_key(entry)
        if key is not None:
            keyed.append((key, entry))
    return keyed


def _walk(keyed: List[Tuple[ChronologicalKey, LedgerRow]]) -> Decimal:
    running = Decimal("0.00")
    for _, entry in sorted(keyed, key=lambda pair: pair[0]):
        running = _step(running, entry)
    return running


def outstanding_after(entries: Iterable[LedgerRow]) -> Decimal:
    """Return the running value after the last dated entry of ``entries``."""
    return _walk(_dated(entries))


def customer_totals(entries: Iterable[LedgerRow]) -> Dict[str, CustomerTotals]:
    """Summarise sales, payments and outstanding for every customer."""
    grouped: Dict[str, List[LedgerRow]] = defaultdict(list)
    for entry in entries:
        grouped[entry.customer_id].append(entry)

    totals: Dict[str, CustomerTotals] = {}
    for customer_id, history in grouped.items():
        keyed = _dated(history)
        dated = [entry for _, entry in keyed]
        sales = sum(
            (e.amount for e in dated if e.transaction_type == TransactionType.SALE.value),
            Decimal("0.00"),
        )
        payments = sum(
            (e.amount for e in dated if e.transaction_type == TransactionType.PAYMENT.value),
            Decimal("0.00"),
        )
        totals[customer_id] = CustomerTotals(
            customer_id=customer_id,
            total_sales=sales,
            total_payments=payments,
            outstanding=_walk(keyed),
        )
    return totals
