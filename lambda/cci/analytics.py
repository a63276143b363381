"""
Analytics - derived aggregates over claims and premiums for admins.
"""

from collections import Counter

from cci.auth import authorize
from cci.storage import list_claims, list_premiums
from cci.models import (
    Caller,
    Claim,
    ClaimAnalytics,
    PaymentState,
    Premium,
    PremiumAnalytics,
)


def claim_analytics(caller: Caller) -> ClaimAnalytics:
    authorize("claim_analytics", caller)
    return summarize_claims(list_claims())


def premium_analytics(caller: Caller) -> PremiumAnalytics:
    authorize("premium_analytics", caller)
    return summarize_premiums(list_premiums())


def summarize_claims(claims: list[Claim]) -> ClaimAnalytics:
    """Breakdown by current status; average over claims that pay out."""
    payouts = [
        c.evaluation.payout_amount
        for c in claims
        if c.evaluation.payout_amount is not None and c.evaluation.payout_amount > 0
    ]
    return ClaimAnalytics(
        total_claims=len(claims),
        status_breakdown=dict(Counter(c.current_status.value for c in claims)),
        average_payout=round(sum(payouts) / len(payouts), 2) if payouts else 0.0,
    )


def summarize_premiums(premiums: list[Premium]) -> PremiumAnalytics:
    amounts = [p.final_amount for p in premiums]
    return PremiumAnalytics(
        total_premiums=len(premiums),
        status_breakdown=dict(Counter(p.payment_status.status.value for p in premiums)),
        average_premium=round(sum(amounts) / len(amounts), 2) if amounts else 0.0,
        total_revenue=round(
            sum(p.final_amount for p in premiums if p.payment_status.status == PaymentState.PAID), 2
        ),
    )
