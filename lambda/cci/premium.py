"""
Premium engine - computes, adjusts, and collects a policyholder's premium.

Every mutation follows fetch -> compute -> commit: the record is read,
slow collaborators (risk oracle, payment gateway) are called with no
lock held, and the result is written back under a version check.
Oracle trouble degrades to fallback amounts; persistence trouble
propagates as PersistenceError.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from cci.audit import append, utcnow
from cci.auth import authorize
from cci.deadlines import is_overdue
from cci.notifications import notify
from cci.oracle import RiskOracle, assess_premium, summarize_policyholder
from cci.payments import PaymentGateway, PaymentResult, get_default_gateway
from cci.storage import (
    fetch_policyholder,
    fetch_premium,
    list_premiums,
    save_policyholder,
    save_premium,
)
from cci.models import (
    AdjustmentFactors,
    AttemptOutcome,
    BillingCycle,
    CalculationEntry,
    CalculationTrigger,
    Caller,
    CCIError,
    Discount,
    InvalidStateError,
    PaymentAttempt,
    PaymentFailedError,
    PaymentMethod,
    PaymentState,
    Policyholder,
    PolicyholderNotFoundError,
    Premium,
    PremiumNotFoundError,
    RiskAssessment,
    StateConflictError,
    ValidationError,
    revise,
)
from cci.config import (
    BILLING_CYCLE_DAYS,
    DEFAULT_BASE_AMOUNT,
    VOLATILITY_CEILING,
    VOLATILITY_PER_INFRACTION,
)

logger = logging.getLogger(__name__)

RETRYABLE_PAYMENT_STATES = frozenset({
    PaymentState.PENDING,
    PaymentState.FAILED,
    PaymentState.OVERDUE,
})

SUMMARY_SYNC_ATTEMPTS = 3


# --- Creator / Admin Operations ---

def calculate_premium(caller: Caller, user_id: str, oracle: RiskOracle | None = None) -> Premium:
    """Creates the premium if needed and recalculates it from current platform data."""
    authorize("calculate_premium", caller, owner_id=user_id)
    policyholder = _load_policyholder(user_id)

    premium = refresh_premium(policyholder, oracle=oracle)

    notify(
        policyholder.email,
        "Your CCI Premium Calculated",
        f"Your premium has been calculated: {premium.final_amount:.2f} {premium.currency} "
        f"due by {_fmt_date(premium.payment_status.due_date)}.",
    )
    return premium


def get_premium(caller: Caller, user_id: str) -> Premium:
    authorize("get_premium", caller, owner_id=user_id)
    return _load_premium(user_id)


def adjust_premium(
    caller: Caller,
    user_id: str,
    base_amount: float | None = None,
    adjustment_factors: dict[str, Any] | None = None,
    discount: dict[str, Any] | None = None,
    final_amount: float | None = None,
) -> Premium:
    """
    Manual override by an admin. Sets the given fields directly, records a
    Manual calculation entry, and never consults the oracle.

    Raises:
        ForbiddenError: If caller is not an admin.
        PremiumNotFoundError: If the user has no premium.
        ValidationError: If any amount is negative or a field is malformed.
    """
    authorize("adjust_premium", caller)
    premium = _load_premium(user_id)

    _check_amount("Base amount", base_amount)
    _check_amount("Final amount", final_amount)

    try:
        factors = AdjustmentFactors(**{**premium.adjustment_factors.model_dump(), **(adjustment_factors or {})})
        new_discount = Discount(**{**premium.discount.model_dump(), **(discount or {})})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid premium adjustment: {e.error_count()} field error(s)")

    now = utcnow()
    base = premium.base_amount if base_amount is None else base_amount
    final = premium.final_amount if final_amount is None else final_amount

    entry = CalculationEntry(
        calculated_at=now,
        base_amount=base,
        adjustment_factors=factors,
        discount=new_discount,
        final_amount=final,
        currency=premium.currency,
        calculated_by=CalculationTrigger.MANUAL,
        actor_id=caller.user_id,
    )
    saved = save_premium(revise(premium, {
        "base_amount": base,
        "adjustment_factors": factors,
        "discount": new_discount,
        "final_amount": final,
        "calculation_history": append(premium.calculation_history, entry),
        "updated_at": now,
    }))
    logger.info("Premium %s manually adjusted by %s to %.2f", saved.premium_id, caller.user_id, saved.final_amount)

    policyholder = _sync_summary(user_id, saved, now)
    if policyholder is not None:
        notify(
            policyholder.email,
            "Premium Adjusted - CCI",
            f"Your premium has been manually adjusted to {saved.final_amount:.2f} {saved.currency}.",
        )
    return saved


def apply_discount(
    caller: Caller,
    user_id: str,
    discount_amount: float,
    reason: str,
    oracle: RiskOracle | None = None,
) -> Premium:
    """Records a discount (e.g. completed guideline training) and recalculates."""
    authorize("apply_discount", caller, owner_id=user_id)

    if not reason or not discount_amount or not (math.isfinite(discount_amount) and discount_amount > 0):
        raise ValidationError("Discount amount and reason are required")

    policyholder = _load_policyholder(user_id)
    premium = _load_premium(user_id)

    discounted = revise(premium, {"discount": Discount(amount=discount_amount, reason=reason)})
    saved = recalculate(discounted, policyholder=policyholder, oracle=oracle)

    _sync_summary(user_id, saved, saved.updated_at, discount_applied=True)
    notify(
        policyholder.email,
        "Premium Discount Applied - CCI",
        f"A discount of {discount_amount:.2f} {saved.currency} has been applied to your premium "
        f"for: {reason}. New amount: {saved.final_amount:.2f}.",
    )
    logger.info("Discount %.2f applied to premium %s", discount_amount, saved.premium_id)
    return saved


def change_billing_cycle(caller: Caller, user_id: str, cycle: BillingCycle | str) -> Premium:
    """
    Switches billing cycle. The only operation that moves an existing due date.
    """
    authorize("change_billing_cycle", caller, owner_id=user_id)
    premium = _load_premium(user_id)

    try:
        cycle = BillingCycle(cycle)
    except ValueError:
        raise ValidationError(
            f"Invalid billing cycle: {cycle}. Must be one of {[c.value for c in BillingCycle]}"
        )

    now = utcnow()
    cycle_end = now + _cycle_length(cycle)
    saved = save_premium(revise(premium, {
        "billing_cycle": cycle,
        "payment_status": revise(premium.payment_status, {"due_date": cycle_end}),
        "next_calculation_date": cycle_end,
        "updated_at": now,
    }))
    logger.info("Premium %s moved to %s billing, due %s", saved.premium_id, cycle.value, cycle_end.isoformat())
    return saved


def pay(
    caller: Caller,
    user_id: str,
    payment_method: PaymentMethod | dict[str, Any],
    gateway: PaymentGateway | None = None,
) -> Premium:
    """
    Charges the current premium.

    Raises:
        InvalidStateError: If the premium is already paid.
        PaymentFailedError: If the gateway declines (the attempt is recorded first).
    """
    authorize("pay_premium", caller, owner_id=user_id)
    premium = _load_premium(user_id)

    if premium.payment_status.status == PaymentState.PAID:
        raise InvalidStateError("Premium already paid")

    try:
        method = payment_method if isinstance(payment_method, PaymentMethod) else PaymentMethod(**payment_method)
    except (PydanticValidationError, TypeError):
        raise ValidationError("Invalid payment method")

    return _charge(premium, method, gateway or get_default_gateway(), "Payment")


def retry_payment(caller: Caller, user_id: str, gateway: PaymentGateway | None = None) -> Premium:
    """Charges again with the payment method on file."""
    authorize("retry_payment", caller, owner_id=user_id)
    premium = _load_premium(user_id)

    if premium.payment_status.status not in RETRYABLE_PAYMENT_STATES:
        raise InvalidStateError("Premium already paid")

    method = premium.payment_status.payment_method
    if method is None:
        policyholder = _load_policyholder(user_id)
        method = policyholder.payment_method
    if method is None:
        raise ValidationError("No payment method on file")

    return _charge(premium, method, gateway or get_default_gateway(), "Payment Retry")


def mark_overdue(caller: Caller, now: datetime | None = None) -> list[Premium]:
    """
    Moves unpaid premiums past their due date to Overdue and notifies owners.
    A premium that changes underneath the sweep is left for the next one.
    """
    authorize("mark_overdue", caller)
    now = now or utcnow()

    updated: list[Premium] = []
    for premium in list_premiums():
        if not is_overdue(premium, now):
            continue
        try:
            saved = save_premium(revise(premium, {
                "payment_status": revise(premium.payment_status, {"status": PaymentState.OVERDUE}),
                "updated_at": now,
            }))
        except StateConflictError:
            logger.warning("Premium %s changed during overdue sweep, skipped", premium.premium_id)
            continue
        updated.append(saved)

        _notify_owner(
            saved,
            "Overdue Premium Payment - CCI",
            f"Your premium of {saved.final_amount:.2f} {saved.currency} is overdue since "
            f"{_fmt_date(saved.payment_status.due_date)}. Please pay immediately to avoid "
            "service interruption.",
        )

    logger.info("Overdue sweep marked %d premium(s)", len(updated))
    return updated


def search_premiums(
    caller: Caller,
    status: PaymentState | str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Premium]:
    """Admin listing, soonest due first."""
    authorize("list_premiums", caller)
    premiums = list_premiums()

    if status is not None:
        premiums = [p for p in premiums if p.payment_status.status == status]
    if start is not None:
        premiums = [p for p in premiums if p.created_at >= start]
    if end is not None:
        premiums = [p for p in premiums if p.created_at <= end]

    return sorted(
        premiums,
        key=lambda p: (p.payment_status.due_date is None, p.payment_status.due_date or p.created_at),
    )


# --- Engine ---

def new_premium(policyholder: Policyholder, now: datetime, billing_cycle: BillingCycle = BillingCycle.MONTHLY) -> Premium:
    """Unsaved premium with factors taken from the policyholder."""
    return Premium(
        premium_id=f"PRM-{uuid.uuid4().hex[:12]}",
        user_id=policyholder.user_id,
        base_amount=DEFAULT_BASE_AMOUNT,
        currency=policyholder.currency,
        adjustment_factors=AdjustmentFactors(
            earnings=policyholder.monthly_earnings,
            audience_size=policyholder.total_audience,
            infraction_count=policyholder.total_infractions,
        ),
        final_amount=DEFAULT_BASE_AMOUNT,
        billing_cycle=billing_cycle,
        created_at=now,
        updated_at=now,
    )


def refresh_premium(
    policyholder: Policyholder,
    oracle: RiskOracle | None = None,
    now: datetime | None = None,
) -> Premium:
    """
    Creates the policyholder's premium if missing, recalculates it, and
    mirrors the amount onto the policyholder record.
    """
    now = now or utcnow()
    premium = fetch_premium(policyholder.user_id) or new_premium(policyholder, now)
    saved = recalculate(premium, policyholder=policyholder, oracle=oracle, now=now)
    _sync_summary(policyholder.user_id, saved, now)
    return saved


def recalculate(
    premium: Premium,
    policyholder: Policyholder | None = None,
    oracle: RiskOracle | None = None,
    trigger: CalculationTrigger = CalculationTrigger.AI,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Premium:
    """
    Recomputes the premium from current policyholder data.

    1. Gather earnings, total audience, total infractions
    2. Ask the oracle (defaults on any failure)
    3. Rebuild factors from the inputs; final = suggestion - discount, floored at 0
    4. Append a calculation snapshot
    5. First calculation sets the due date; later ones only move
       next_calculation_date

    Raises:
        PolicyholderNotFoundError: If the owner no longer exists.
        StateConflictError: If the premium changed since it was read.
        PersistenceError: If the write fails.
    """
    if policyholder is None:
        policyholder = _load_policyholder(premium.user_id)

    assessment = assess_premium(summarize_policyholder(policyholder), oracle)

    now = now or utcnow()
    factors = _factors_for(policyholder, assessment)
    final = max(0.0, round(assessment.suggested_amount - premium.discount.amount, 2))

    entry = CalculationEntry(
        calculated_at=now,
        base_amount=premium.base_amount,
        adjustment_factors=factors,
        discount=premium.discount,
        final_amount=final,
        currency=policyholder.currency,
        calculated_by=trigger,
        actor_id=actor_id,
    )

    cycle_end = now + _cycle_length(premium.billing_cycle)
    payment_status = premium.payment_status
    if payment_status.due_date is None:
        payment_status = revise(payment_status, {"due_date": cycle_end})

    saved = save_premium(revise(premium, {
        "adjustment_factors": factors,
        "final_amount": final,
        "currency": policyholder.currency,
        "calculation_history": append(premium.calculation_history, entry),
        "payment_status": payment_status,
        "next_calculation_date": cycle_end,
        "updated_at": now,
    }))

    logger.info(
        "Premium %s recalculated for %s: %.2f %s, risk %s%s",
        saved.premium_id,
        saved.user_id,
        saved.final_amount,
        saved.currency,
        factors.content_risk.value,
        " (fallback)" if assessment.used_fallback else "",
    )
    return saved


# --- Internal ---

def _factors_for(policyholder: Policyholder, assessment: RiskAssessment) -> AdjustmentFactors:
    infractions = policyholder.total_infractions
    return AdjustmentFactors(
        earnings=policyholder.monthly_earnings,
        audience_size=policyholder.total_audience,
        content_risk=assessment.risk_tier,
        platform_volatility=min(VOLATILITY_CEILING, infractions * VOLATILITY_PER_INFRACTION),
        infraction_count=infractions,
        risk_explanation=assessment.explanation,
    )


def _charge(premium: Premium, method: PaymentMethod, gateway: PaymentGateway, label: str) -> Premium:
    # One attempt per call; the key lets the gateway dedupe a retried commit
    idempotency_key = f"{premium.premium_id}-{len(premium.payment_status.attempts) + 1}"

    try:
        result = gateway.charge(premium.final_amount, premium.currency, method, idempotency_key)
    except Exception as e:
        logger.error("Payment gateway error for premium %s: %s", premium.premium_id, e)
        result = PaymentResult(success=False, error_message=str(e))

    now = utcnow()
    attempt = PaymentAttempt(
        attempted_at=now,
        status=AttemptOutcome.SUCCESS if result.success else AttemptOutcome.FAILED,
        amount=premium.final_amount,
        idempotency_key=idempotency_key,
        transaction_id=result.transaction_id,
        error_message=result.error_message,
    )

    status_update: dict[str, Any] = {
        "attempts": append(premium.payment_status.attempts, attempt),
        "payment_method": method,
    }
    if result.success:
        status_update.update({
            "status": PaymentState.PAID,
            "payment_date": now,
            "transaction_id": result.transaction_id,
        })
    else:
        status_update["status"] = PaymentState.FAILED

    saved = save_premium(revise(premium, {
        "payment_status": revise(premium.payment_status, status_update),
        "updated_at": now,
    }))

    if result.success:
        _notify_owner(
            saved,
            f"Premium {label} Successful - CCI",
            f"Your premium payment of {saved.final_amount:.2f} {saved.currency} was successful. "
            f"Transaction ID: {result.transaction_id}.",
        )
    else:
        _notify_owner(
            saved,
            f"Premium {label} Failed - CCI",
            "Your premium payment attempt failed. Please try again or contact support.",
        )

    if not result.success:
        logger.info("Premium %s payment failed: %s", saved.premium_id, result.error_message)
        raise PaymentFailedError(result.error_message or "Payment failed")

    logger.info("Premium %s paid: %s", saved.premium_id, result.transaction_id)
    return saved


def _sync_summary(
    user_id: str,
    premium: Premium,
    now: datetime,
    discount_applied: bool | None = None,
) -> Policyholder | None:
    """Mirrors the premium amount onto the policyholder, re-reading on conflict."""
    for _ in range(SUMMARY_SYNC_ATTEMPTS):
        policyholder = fetch_policyholder(user_id)
        if policyholder is None:
            return None
        update: dict[str, Any] = {
            "premium_amount": premium.final_amount,
            "premium_last_calculated": now,
        }
        if discount_applied is not None:
            update["discount_applied"] = discount_applied
        try:
            return save_policyholder(revise(policyholder, update))
        except StateConflictError:
            continue
    raise StateConflictError(f"Policyholder {user_id} kept changing while syncing premium summary")


def _notify_owner(premium: Premium, subject: str, body: str) -> None:
    """Best effort: runs after the commit, so a failed lookup is only logged."""
    try:
        policyholder = fetch_policyholder(premium.user_id)
    except CCIError as e:
        logger.warning("Owner lookup for premium %s failed, notification skipped: %s", premium.premium_id, e)
        return
    if policyholder is not None:
        notify(policyholder.email, subject, body)


def _load_policyholder(user_id: str) -> Policyholder:
    policyholder = fetch_policyholder(user_id)
    if policyholder is None:
        raise PolicyholderNotFoundError(f"Policyholder {user_id} not found")
    return policyholder


def _load_premium(user_id: str) -> Premium:
    premium = fetch_premium(user_id)
    if premium is None:
        raise PremiumNotFoundError(f"Premium for {user_id} not found")
    return premium


def _check_amount(label: str, value: float | None) -> None:
    if value is not None and not (math.isfinite(value) and value >= 0):
        raise ValidationError(f"{label} must be a non-negative number")


def _cycle_length(cycle: BillingCycle) -> timedelta:
    return timedelta(days=BILLING_CYCLE_DAYS[cycle.value])


def _fmt_date(value: datetime | None) -> str:
    return value.date().isoformat() if value else "-"
