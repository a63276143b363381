"""
Policy application - the insurance status state machine.

    NotApplied -> Pending -> {Approved, Rejected}
    Approved -> Surrendered
    {Rejected, Surrendered} -> Pending

Guards are checked before anything is written. Notifications go out
after the commit and never undo it.
"""

import logging
import math
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from cci.audit import utcnow
from cci.auth import authorize
from cci.notifications import notify
from cci.oracle import RiskOracle
from cci.premium import refresh_premium
from cci.storage import (
    fetch_policyholder,
    fetch_premium,
    remove_premium,
    save_policyholder,
)
from cci.models import (
    Caller,
    CCIError,
    ConflictError,
    InsuranceState,
    InsuranceStatus,
    InvalidStateError,
    NoActivePolicyError,
    NotEligibleError,
    PaymentMethod,
    Policyholder,
    PolicyholderNotFoundError,
    PlatformProfile,
    Premium,
    ValidationError,
    revise,
)
from cci.config import DEFAULT_CURRENCY, DEFAULT_SURRENDER_REASON

logger = logging.getLogger(__name__)

APPLICABLE_STATES = frozenset({
    InsuranceState.NOT_APPLIED,
    InsuranceState.REJECTED,
    InsuranceState.SURRENDERED,
})
PLATFORM_EDITABLE_STATES = frozenset({InsuranceState.PENDING, InsuranceState.APPROVED})


# --- Registration ---

def register_policyholder(
    user_id: str,
    email: str,
    full_name: str = "",
    currency: str = DEFAULT_CURRENCY,
    monthly_earnings: float = 0.0,
    payment_method: PaymentMethod | dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Policyholder:
    """
    Creates the policyholder record in NotApplied.

    Raises:
        ValidationError: If a field is missing or malformed.
        ConflictError: If user_id is already registered.
    """
    if not user_id or not email:
        raise ValidationError("User ID and email are required")

    try:
        policyholder = Policyholder(
            user_id=user_id,
            email=email,
            full_name=full_name,
            currency=currency,
            monthly_earnings=monthly_earnings,
            payment_method=payment_method,
            created_at=now or utcnow(),
        )
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid policyholder: {e.error_count()} field error(s)")

    if fetch_policyholder(user_id) is not None:
        raise ConflictError(f"Policyholder {user_id} already registered")

    saved = save_policyholder(policyholder)
    logger.info("Policyholder %s registered", user_id)
    return saved


# --- Creator Operations ---

def apply(
    caller: Caller,
    user_id: str,
    platform_data: list[PlatformProfile | dict[str, Any]],
    estimated_earnings: float | None = None,
    oracle: RiskOracle | None = None,
    now: datetime | None = None,
) -> tuple[Policyholder, Premium]:
    """
    Applies for coverage and prices it.

    Replaces the platform list, moves the status to Pending, then creates
    or recalculates the premium. A re-application clears the previous
    rejection or surrender.

    Raises:
        ForbiddenError: If caller is not the owning creator.
        ConflictError: If an application is pending or a policy is active.
        ValidationError: If platform data or earnings are malformed.
    """
    authorize("apply", caller, owner_id=user_id)
    policyholder = _load_policyholder(user_id)

    current = policyholder.insurance_status.status
    if current not in APPLICABLE_STATES:
        raise ConflictError(f"Insurance already {current.value.lower()}")

    platforms = _build_platforms(platform_data)
    if estimated_earnings is not None and not (math.isfinite(estimated_earnings) and estimated_earnings >= 0):
        raise ValidationError("Estimated earnings must be a non-negative number")

    now = now or utcnow()
    saved = save_policyholder(revise(policyholder, {
        "platforms": platforms,
        "monthly_earnings": (
            policyholder.monthly_earnings if estimated_earnings is None else estimated_earnings
        ),
        "insurance_status": InsuranceStatus(status=InsuranceState.PENDING, applied_at=now),
    }))
    logger.info("Policyholder %s applied for insurance (%s -> Pending)", user_id, current.value)

    premium = refresh_premium(saved, oracle=oracle, now=now)

    notify(
        saved.email,
        "Your CCI Insurance Application",
        f"Your application has been received. Your calculated premium is "
        f"{premium.final_amount:.2f} {premium.currency} per {premium.billing_cycle.value.lower()} cycle.",
    )
    return _reread(saved), premium


def add_platform(
    caller: Caller,
    user_id: str,
    platform: PlatformProfile | dict[str, Any],
    oracle: RiskOracle | None = None,
) -> tuple[Policyholder, Premium]:
    """Adds a platform profile and reprices the premium."""
    authorize("add_platform", caller, owner_id=user_id)
    policyholder = _load_policyholder(user_id)

    if policyholder.insurance_status.status not in PLATFORM_EDITABLE_STATES:
        raise NotEligibleError("No pending or active insurance policy")

    if isinstance(platform, dict) and (not platform.get("name") or not platform.get("handle")):
        raise ValidationError("Platform name and handle are required")
    [profile] = _build_platforms([platform])

    saved = save_policyholder(revise(policyholder, {
        "platforms": [*policyholder.platforms, profile],
    }))
    logger.info("Platform %s added for %s", profile.name.value, user_id)

    premium = refresh_premium(saved, oracle=oracle)

    notify(
        saved.email,
        "Platform Added - CCI",
        f"{profile.name.value} ({profile.handle}) was added to your coverage. "
        f"Your premium is now {premium.final_amount:.2f} {premium.currency}.",
    )
    return _reread(saved), premium


def surrender(caller: Caller, user_id: str, reason: str | None = None) -> Policyholder:
    """
    Ends an active policy and deletes its premium.

    Raises:
        NoActivePolicyError: If the policy is not Approved.
    """
    authorize("surrender", caller, owner_id=user_id)
    policyholder = _load_policyholder(user_id)

    if policyholder.insurance_status.status != InsuranceState.APPROVED:
        raise NoActivePolicyError("No active insurance policy to surrender")

    now = utcnow()
    saved = save_policyholder(revise(policyholder, {
        "insurance_status": revise(policyholder.insurance_status, {
            "status": InsuranceState.SURRENDERED,
            "surrendered_at": now,
            "surrender_reason": reason or DEFAULT_SURRENDER_REASON,
            "policy_end_date": now,
        }),
        "premium_amount": 0.0,
        "discount_applied": False,
    }))
    remove_premium(user_id)
    logger.info("Policyholder %s surrendered insurance", user_id)

    notify(
        saved.email,
        "Your CCI Insurance Surrendered",
        f"Your insurance has been surrendered. Reason: {saved.insurance_status.surrender_reason}.",
    )
    return saved


# --- Admin Operations ---

def approve(caller: Caller, user_id: str, notes: str = "") -> Policyholder:
    authorize("approve_application", caller)
    policyholder = _load_pending(user_id)

    now = utcnow()
    saved = save_policyholder(revise(policyholder, {
        "insurance_status": revise(policyholder.insurance_status, {
            "status": InsuranceState.APPROVED,
            "approved_at": now,
            "policy_start_date": now,
        }),
    }))
    logger.info("Insurance for %s approved by %s", user_id, caller.user_id)

    body = "Your insurance application has been approved. Your coverage starts today."
    if notes:
        body += f"\n\nNotes: {notes}"
    notify(saved.email, "Your CCI Insurance Approved", body)
    return saved


def reject(caller: Caller, user_id: str, reason: str) -> Policyholder:
    authorize("reject_application", caller)
    if not reason:
        raise ValidationError("Rejection reason is required")
    policyholder = _load_pending(user_id)

    saved = save_policyholder(revise(policyholder, {
        "insurance_status": revise(policyholder.insurance_status, {
            "status": InsuranceState.REJECTED,
            "rejected_at": utcnow(),
            "rejection_reason": reason,
        }),
    }))
    logger.info("Insurance for %s rejected by %s", user_id, caller.user_id)

    notify(
        saved.email,
        "Your CCI Insurance Application",
        f"Your insurance application was not approved. Reason: {reason}. You may apply again.",
    )
    return saved


def get_insurance_status(caller: Caller, user_id: str) -> tuple[InsuranceStatus, Premium | None]:
    authorize("get_insurance_status", caller, owner_id=user_id)
    policyholder = _load_policyholder(user_id)
    return policyholder.insurance_status, fetch_premium(user_id)


# --- Internal ---

def _build_platforms(platform_data: list[PlatformProfile | dict[str, Any]]) -> list[PlatformProfile]:
    if not platform_data:
        raise ValidationError("At least one platform is required")
    try:
        return [
            p if isinstance(p, PlatformProfile) else PlatformProfile(**p)
            for p in platform_data
        ]
    except (PydanticValidationError, TypeError):
        raise ValidationError("Invalid platform data: name and handle are required")


def _load_policyholder(user_id: str) -> Policyholder:
    policyholder = fetch_policyholder(user_id)
    if policyholder is None:
        raise PolicyholderNotFoundError(f"Policyholder {user_id} not found")
    return policyholder


def _reread(saved: Policyholder) -> Policyholder:
    """
    Fresh copy carrying the premium summary. Runs after the commit, so a
    failed read returns the committed copy instead of raising.
    """
    try:
        return fetch_policyholder(saved.user_id) or saved
    except CCIError as e:
        logger.warning("Re-read of policyholder %s failed, returning committed copy: %s", saved.user_id, e)
        return saved


def _load_pending(user_id: str) -> Policyholder:
    policyholder = _load_policyholder(user_id)
    status = policyholder.insurance_status.status
    if status != InsuranceState.PENDING:
        raise InvalidStateError(f"Application is {status.value}, not Pending")
    return policyholder
