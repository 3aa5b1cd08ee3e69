"""Production cost resolution for sales.

The factory bills the distributor per case produced. The unit cost of a sale
comes from the most recently dated ``FactoryPricing`` row for the SKU; when no
usable quote exists the cost falls back to half of the billed unit price.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from . import log
from .constants import COST_FALLBACK_RATIO
from .data_manager import PricingRow, WorkbookLedgerStore
from .exceptions import ValidationError


def latest_quote(store: WorkbookLedgerStore, sku: str) -> Optional[PricingRow]:
    """Return the latest known pricing row for ``sku``.

    Recency is decided by sort order alone (``pricing_date`` descending, then
    insertion sequence), not by the date of the sale being priced. A row whose
    ``cost_per_case`` is blank does not count as a quote. Rows whose
    ``pricing_date`` is not an ISO date are logged and skipped.

    Args:
        store (WorkbookLedgerStore): Store holding the pricing table.
        sku (str): Product code to price.

    Returns:
        PricingRow | None: The winning quote, or ``None`` when the SKU has no
            usable pricing row.
    """
    dated = []
    for row in store.query(PricingRow, {"sku": sku}):
        try:
            dated.append(((date.fromisoformat(row.pricing_date), row.sequence or 0), row))
        except ValueError:
            log.warning(
                "Ignoring pricing row '%s' for SKU '%s' with unparseable date '%s'",
                row.id,
                sku,
                row.pricing_date,
            )
    if not dated:
        log.debug("No pricing rows found for SKU '%s'", sku)
        return None
    _, quote = max(dated, key=lambda pair: pair[0])
    if quote.cost_per_case is None:
        log.warning("Latest pricing row '%s' for SKU '%s' has no cost per case", quote.id, sku)
        return None
    return quote


def fallback_unit_cost(amount: Decimal, quantity: Optional[int]) -> Decimal:
    """Estimate unit production cost as half of the billed unit price.

    Raises:
        ValidationError: If ``quantity`` is zero or absent.
    """
    if not quantity:
        log.error("Cost fallback requested without a quantity (amount=%s)", amount)
        raise ValidationError("quantity required for cost fallback")
    return (amount / Decimal(quantity)) * COST_FALLBACK_RATIO


def resolve_unit_cost(
    store: WorkbookLedgerStore,
    sku: str,
    *,
    amount: Decimal,
    quantity: Optional[int],
    transaction_date: Optional[str] = None,
) -> Decimal:
    """Return the unit production cost to book for a sale.

    Args:
        store (WorkbookLedgerStore): Store holding the pricing table.
        sku (str): Product code sold.
        amount (Decimal): Billed sale amount, used by the fallback.
        quantity (int | None): Cases sold, used by the fallback.
        transaction_date (str | None): Sale date in ISO form. Only used to
            report quotes dated after the sale; it never changes the result.

    Returns:
        Decimal: Quote cost per case, or the fallback estimate.

    Raises:
        ValidationError: If the fallback is needed and ``quantity`` is zero or
            absent.
    """
    quote = latest_quote(store, sku)
    if quote is None:
        unit_cost = fallback_unit_cost(amount, quantity)
        log.info("Using fallback unit cost %s for SKU '%s'", unit_cost, sku)
        return unit_cost

    if transaction_date and _is_after(quote.pricing_date, transaction_date):
        log.warning(
            "Pricing quote '%s' for SKU '%s' is dated %s, after the sale date %s",
            quote.id,
            sku,
            quote.pricing_date,
            transaction_date,
        )
    return quote.cost_per_case


def compute_production_amount(quantity: Optional[int], unit_cost: Decimal) -> Decimal:
    """Return ``max(0, quantity * unit_cost)`` for a production entry.

    Raises:
        ValidationError: If the result is not a finite number.
    """
    amount = Decimal(quantity or 0) * unit_cost
    if not amount.is_finite():
        log.error("Production amount is not finite: quantity=%s unit_cost=%s", quantity, unit_cost)
        raise ValidationError("production amount must be a finite number")
    return max(Decimal("0"), amount)


def _is_after(left: str, right: str) -> bool:
    try:
        return date.fromisoformat(left) > date.fromisoformat(right)
    except ValueError:
        return False
