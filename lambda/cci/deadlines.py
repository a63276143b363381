"""
Deadline tracking - read-only views over claim and premium due dates.

Nothing here writes. A claim past its 72h resolution deadline is only
reported; it is never rejected or escalated automatically.
"""

from datetime import datetime, timedelta

from cci.audit import utcnow
from cci.auth import authorize
from cci.storage import list_claims, list_premiums
from cci.models import (
    Caller,
    Claim,
    PaymentState,
    Premium,
    TERMINAL_CLAIM_STATUSES,
)
from cci.config import AT_RISK_LOOKAHEAD_HOURS

UNPAID_STATES = frozenset({PaymentState.PENDING, PaymentState.FAILED})


# --- Admin Queries ---

def claims_at_risk(
    caller: Caller,
    lookahead: timedelta = timedelta(hours=AT_RISK_LOOKAHEAD_HOURS),
    now: datetime | None = None,
) -> list[Claim]:
    """Open claims whose deadline falls within the lookahead window, soonest first."""
    authorize("claims_at_risk", caller)
    return at_risk(list_claims(), now or utcnow(), lookahead)


def breached_claims(caller: Caller, now: datetime | None = None) -> list[Claim]:
    """Open claims already past their deadline, oldest breach first."""
    authorize("breached_claims", caller)
    return breached(list_claims(), now or utcnow())


def overdue_premiums(caller: Caller, now: datetime | None = None) -> list[Premium]:
    """Unpaid premiums past their due date. Does not change their status."""
    authorize("overdue_premiums", caller)
    return overdue(list_premiums(), now or utcnow())


# --- Pure Helpers ---

def is_open(claim: Claim) -> bool:
    return claim.current_status not in TERMINAL_CLAIM_STATUSES


def at_risk(claims: list[Claim], now: datetime, lookahead: timedelta) -> list[Claim]:
    horizon = now + lookahead
    return sorted(
        (c for c in claims if is_open(c) and now <= c.resolution_deadline <= horizon),
        key=lambda c: c.resolution_deadline,
    )


def breached(claims: list[Claim], now: datetime) -> list[Claim]:
    return sorted(
        (c for c in claims if is_open(c) and c.resolution_deadline < now),
        key=lambda c: c.resolution_deadline,
    )


def is_overdue(premium: Premium, now: datetime) -> bool:
    due = premium.payment_status.due_date
    return premium.payment_status.status in UNPAID_STATES and due is not None and due < now


def overdue(premiums: list[Premium], now: datetime) -> list[Premium]:
    return sorted(
        (p for p in premiums if is_overdue(p, now)),
        key=lambda p: p.payment_status.due_date,
    )
