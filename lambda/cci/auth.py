"""
Authorization - one declarative guard per engine operation.

Every operation is guarded before validating anything else. Where the
owner is only known from the stored record (claims by id), the role is
checked with `check_role` before the load and ownership with `authorize`
right after it. A guard names the role the caller must hold
and whether the caller must own the record. Admins pass ownership
checks only where the guard says so.
"""

from pydantic import BaseModel, ConfigDict

from cci.models import Caller, ForbiddenError, Role


class Guard(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role | None = None          # None: any role
    owner: bool = False               # caller must own the record
    admin_bypasses_owner: bool = False


_CREATOR_OWNER = Guard(role=Role.CREATOR, owner=True)
_ADMIN = Guard(role=Role.ADMIN)
_OWNER_OR_ADMIN = Guard(owner=True, admin_bypasses_owner=True)


GUARDS: dict[str, Guard] = {
    # Policy application
    "apply": _CREATOR_OWNER,
    "add_platform": _CREATOR_OWNER,
    "surrender": _CREATOR_OWNER,
    "approve_application": _ADMIN,
    "reject_application": _ADMIN,
    "get_insurance_status": _OWNER_OR_ADMIN,
    # Premium
    "calculate_premium": _OWNER_OR_ADMIN,
    "get_premium": _OWNER_OR_ADMIN,
    "adjust_premium": _ADMIN,
    "apply_discount": _CREATOR_OWNER,
    "change_billing_cycle": _OWNER_OR_ADMIN,
    "pay_premium": _CREATOR_OWNER,
    "retry_payment": _OWNER_OR_ADMIN,
    "mark_overdue": _ADMIN,
    "list_premiums": _ADMIN,
    # Claims
    "submit_claim": Guard(role=Role.CREATOR),
    "update_evidence": _CREATOR_OWNER,
    "delete_claim": _CREATOR_OWNER,
    "get_claim": _OWNER_OR_ADMIN,
    "list_my_claims": Guard(),
    "begin_review": _ADMIN,
    "evaluate_with_oracle": _ADMIN,
    "escalate_claim": _ADMIN,
    "review_manually": _ADMIN,
    "mark_paid": _ADMIN,
    "list_claims": _ADMIN,
    # Deadlines and analytics
    "claims_at_risk": _ADMIN,
    "breached_claims": _ADMIN,
    "overdue_premiums": _ADMIN,
    "claim_analytics": _ADMIN,
    "premium_analytics": _ADMIN,
}


def authorize(operation: str, caller: Caller, owner_id: str | None = None) -> None:
    """
    Checks caller against the guard registered for operation.

    Owner-guarded operations must pass owner_id (the user_id that owns
    the target record).

    Raises:
        ForbiddenError: If the role or ownership requirement is not met.
        KeyError: If operation has no registered guard.
    """
    guard = check_role(operation, caller)

    if not guard.owner:
        return
    if guard.admin_bypasses_owner and caller.role == Role.ADMIN:
        return
    if owner_id is None or caller.user_id != owner_id:
        raise ForbiddenError(f"Caller {caller.user_id} does not own this record")


def check_role(operation: str, caller: Caller) -> Guard:
    """
    Role half of the guard. Lets callers reject the wrong role before
    loading the record whose owner authorize() needs.
    """
    guard = GUARDS[operation]
    if guard.role is not None and caller.role != guard.role:
        raise ForbiddenError(f"{guard.role.value} access required for {operation}")
    return guard
