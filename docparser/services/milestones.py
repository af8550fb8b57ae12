# docparser/services/milestones.py
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from docparser.schemas.contract import AnalysisMilestone

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
AMOUNT_TOLERANCE = Decimal("0.01")  # fraction of total
PERCENT_SUM_TOLERANCE = 1.0


def amount_for(total: Decimal, percentage: float) -> Decimal:
    return (total * Decimal(str(percentage)) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def _positive(v: Optional[Decimal]) -> Optional[Decimal]:
    return v if v is not None and v > 0 else None


def normalize_milestones(milestones: List[AnalysisMilestone], total: Decimal) -> List[AnalysisMilestone]:
    """
    Make amounts and percentages agree with the contract total:
      - fill whichever of amount/percentage is missing from the other
      - recompute an amount that drifts more than 1% of total from its percentage
      - clamp percentages to [0, 100], rescale them to 100 when the sum is off by > 1
    Order is preserved.
    """
    total = total if total is not None and total > 0 else Decimal("0")
    out: List[AnalysisMilestone] = []

    for m in milestones:
        amount = _positive(m.amount)
        pct = m.percentage if m.percentage is not None and m.percentage > 0 else None

        if total > 0 and pct is None and amount is not None:
            pct = float(amount / total * 100)
        if pct is not None:
            pct = min(max(pct, 0.0), 100.0)

        if total > 0:
            expected = amount_for(total, pct or 0.0)
            if amount is None or abs(amount - expected) > total * AMOUNT_TOLERANCE:
                if amount is not None:
                    logger.info(
                        "milestone '%s': amount %s disagrees with %.2f%% of %s, using %s",
                        m.description, amount, pct or 0.0, total, expected,
                    )
                amount = expected

        out.append(m.model_copy(update={"amount": amount, "percentage": pct}))

    pct_sum = sum(m.percentage or 0.0 for m in out)
    if out and pct_sum > 0 and abs(pct_sum - 100.0) > PERCENT_SUM_TOLERANCE:
        factor = 100.0 / pct_sum
        logger.info("milestone percentages sum to %.2f, rescaling", pct_sum)
        rescaled = []
        for m in out:
            pct = round((m.percentage or 0.0) * factor, 4)
            amount = amount_for(total, pct) if total > 0 else m.amount
            rescaled.append(m.model_copy(update={"percentage": pct, "amount": amount}))
        out = rescaled

    return out
