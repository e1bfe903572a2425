"""
Batch summary statistics derived from the per-image outcomes.
"""
import logging
from collections import Counter
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from .models import AnalysisOutcome, BatchSummary, CombinedTotal, OutcomeKind

logger = logging.getLogger(__name__)

UNKNOWN_VEHICLE_TYPE = "unknown"


def _section(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key) if isinstance(payload, dict) else None
    return value if isinstance(value, dict) else {}


def _amount(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def round_cents(amount: float) -> float:
    """round(x * 100) / 100 with halves rounded away from zero"""
    cents = Decimal(amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(cents / 100)


def combined_total(tickets: Sequence[AnalysisOutcome]) -> Optional[CombinedTotal]:
    """Sum of ticket totals, only when every ticket shares one known currency.

    Requires at least two tickets. A single ticket without a currency voids
    the combination even if all the others agree.
    """
    if len(tickets) <= 1:
        return None

    currencies = [_section(t.payload, 'ticket').get('currency') for t in tickets]
    unique_currencies = {c for c in currencies if c is not None}
    if len(unique_currencies) != 1 or any(c is None for c in currencies):
        logger.debug(f"No combined total: ticket currencies {currencies}")
        return None

    total = sum(_amount(_section(t.payload, 'totals').get('total')) for t in tickets)
    return CombinedTotal(amount=round_cents(total), currency=unique_currencies.pop())


def summarize(outcomes: Sequence[AnalysisOutcome]) -> BatchSummary:
    """Reduce outcomes to ticket/vehicle counts and the combined total"""
    tickets: List[AnalysisOutcome] = [o for o in outcomes if o.kind is OutcomeKind.TICKET]
    vehicles: List[AnalysisOutcome] = [o for o in outcomes if o.kind is OutcomeKind.VEHICLE]

    vehicle_types = Counter(
        _section(v.payload, 'vehicle').get('vehicle_type') or UNKNOWN_VEHICLE_TYPE
        for v in vehicles
    )

    return BatchSummary(
        total_tickets=len(tickets),
        vehicles_detected=len(vehicles),
        vehicle_types=dict(vehicle_types),
        combined_total=combined_total(tickets),
    )
