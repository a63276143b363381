"""
Claim adjudication - the claim status state machine.

    Submitted -> Under Review -> AI Reviewed -> Manual Review
              -> {Approved, Rejected} -> Paid

Under Review and Manual Review may be skipped; nothing moves backward.
The claimant owns a claim while it is Submitted (evidence may be
appended, the claim deleted). From review onwards only admins act on it.

Every mutation is fetch -> guard -> compute -> version-checked commit.
Two reviewers racing on one claim: the slower commit fails with
StateConflictError. A reviewer arriving after a decision fails the
state guard with InvalidStateError.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from cci.audit import append, ensure_extends, utcnow
from cci.auth import authorize, check_role
from cci.files import release_staged, upload_evidence
from cci.notifications import notify
from cci.oracle import RiskOracle, review_claim
from cci.storage import (
    fetch_claim,
    fetch_policyholder,
    list_claims,
    list_claims_for_user,
    remove_claim,
    save_claim,
    save_policyholder,
)
from cci.validator import validate_claim_details, validate_evidence
from cci.models import (
    AIAnalysis,
    Caller,
    CCIError,
    Claim,
    ClaimDetails,
    ClaimNotFoundError,
    ClaimReference,
    ClaimStatus,
    Evidence,
    EvidenceFile,
    EvidenceUpload,
    InvalidStateError,
    ManualReview,
    NotEligibleError,
    Platform,
    Policyholder,
    PolicyholderNotFoundError,
    StateConflictError,
    StatusEntry,
    ValidationError,
    revise,
)
from cci.config import (
    CLAIM_ELIGIBLE_STATUSES,
    MAX_DESCRIPTION_LENGTH,
    RESOLUTION_WINDOW_HOURS,
    VERIFIED_LOSS_RATIO,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.SUBMITTED: frozenset({ClaimStatus.UNDER_REVIEW, ClaimStatus.AI_REVIEWED}),
    ClaimStatus.UNDER_REVIEW: frozenset({ClaimStatus.AI_REVIEWED}),
    ClaimStatus.AI_REVIEWED: frozenset({
        ClaimStatus.MANUAL_REVIEW,
        ClaimStatus.APPROVED,
        ClaimStatus.REJECTED,
    }),
    ClaimStatus.MANUAL_REVIEW: frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED}),
    ClaimStatus.APPROVED: frozenset({ClaimStatus.PAID}),
}

AI_REVIEWABLE = frozenset({ClaimStatus.SUBMITTED, ClaimStatus.UNDER_REVIEW})
DECIDABLE = frozenset({ClaimStatus.AI_REVIEWED, ClaimStatus.MANUAL_REVIEW})

POLICYHOLDER_UPDATE_ATTEMPTS = 3


# --- Claimant Operations ---

def submit(
    caller: Caller,
    details: ClaimDetails | dict[str, Any],
    evidence_files: list[EvidenceUpload | dict[str, Any]],
    additional_notes: str = "",
) -> Claim:
    """
    Files a new claim against the caller's active policy.

    1. Check eligibility and validate details and evidence
    2. Upload evidence (staged)
    3. Write the claim with status history [Submitted]
    4. Link the claim from the policyholder's claim history

    Anything failing after step 2 releases every staged file and removes
    the claim record if it was already written.

    Raises:
        ForbiddenError: If caller is not a creator.
        NotEligibleError: If the caller has no approved policy.
        ValidationError: If details or evidence are missing or malformed.
        FileStorageError: If an upload fails.
    """
    authorize("submit_claim", caller)
    policyholder = fetch_policyholder(caller.user_id)
    if policyholder is None:
        raise PolicyholderNotFoundError(f"Policyholder {caller.user_id} not found")

    if policyholder.insurance_status.status.value not in CLAIM_ELIGIBLE_STATUSES:
        raise NotEligibleError("An approved insurance policy is required to file a claim")

    now = utcnow()
    claim_details = validate_claim_details(details, now)
    _check_notes(additional_notes)
    uploads = _build_uploads(evidence_files)
    checks = validate_evidence(uploads)

    staged: list[str] = []
    saved: Claim | None = None
    try:
        files = []
        for upload, check in zip(uploads, checks):
            url = upload_evidence(upload, caller.user_id)
            staged.append(url)
            files.append(EvidenceFile(
                url=url,
                type=check.evidence_type,
                filename=upload.filename,
                description=upload.description,
                uploaded_at=now,
            ))

        saved = save_claim(Claim(
            claim_id=f"CLM-{uuid.uuid4().hex[:12]}",
            user_id=caller.user_id,
            details=claim_details,
            evidence=Evidence(files=tuple(files), additional_notes=additional_notes),
            status_history=(StatusEntry(status=ClaimStatus.SUBMITTED, timestamp=now, actor_id=caller.user_id),),
            created_at=now,
            updated_at=now,
            resolution_deadline=now + timedelta(hours=RESOLUTION_WINDOW_HOURS),
        ))

        reference = ClaimReference(claim_id=saved.claim_id, submitted_at=now)
        _update_policyholder(
            caller.user_id,
            lambda p: {"claim_history": [*p.claim_history, reference]},
        )
    except Exception:
        logger.warning("Claim submission by %s failed, releasing %d staged file(s)", caller.user_id, len(staged))
        if saved is not None:
            _discard(saved)
        release_staged(staged)
        raise

    logger.info("Claim %s submitted by %s, deadline %s", saved.claim_id, caller.user_id, saved.resolution_deadline.isoformat())
    notify(
        policyholder.email,
        "Claim Submitted - CCI",
        f"Your claim {saved.claim_id} for {claim_details.reported_earnings_loss:.2f} "
        f"{claim_details.currency} has been received. We aim to resolve it by "
        f"{saved.resolution_deadline.strftime('%Y-%m-%d %H:%M UTC')}.",
    )
    return saved


def update_evidence(
    caller: Caller,
    claim_id: str,
    new_files: list[EvidenceUpload | dict[str, Any]] | None = None,
    notes: str | None = None,
) -> Claim:
    """
    Appends evidence and/or replaces the notes on a Submitted claim.
    Existing files are never removed.
    """
    check_role("update_evidence", caller)
    claim = _load_claim(claim_id)
    authorize("update_evidence", caller, owner_id=claim.user_id)

    if claim.current_status != ClaimStatus.SUBMITTED:
        raise InvalidStateError("Evidence can only be updated while the claim is Submitted")

    if not new_files and notes is None:
        raise ValidationError("Provide new evidence files or notes")
    if notes is not None:
        _check_notes(notes)

    uploads = _build_uploads(new_files or [])
    checks = validate_evidence(uploads, existing=len(claim.evidence.files), required=False)

    now = utcnow()
    staged: list[str] = []
    try:
        files = claim.evidence.files
        for upload, check in zip(uploads, checks):
            url = upload_evidence(upload, claim.user_id)
            staged.append(url)
            files = append(files, EvidenceFile(
                url=url,
                type=check.evidence_type,
                filename=upload.filename,
                description=upload.description,
                uploaded_at=now,
            ))
        ensure_extends(claim.evidence.files, files)

        saved = save_claim(revise(claim, {
            "evidence": Evidence(
                files=files,
                additional_notes=claim.evidence.additional_notes if notes is None else notes,
            ),
            "updated_at": now,
        }))
    except Exception:
        release_staged(staged)
        raise

    logger.info("Claim %s evidence updated (%d file(s) added)", claim_id, len(uploads))
    return saved


def delete_claim(caller: Caller, claim_id: str) -> None:
    """
    Deletes a Submitted claim, its evidence files, and its reference in
    the policyholder's claim history.

    Raises:
        InvalidStateError: If review has begun. The claim is left unchanged.
    """
    check_role("delete_claim", caller)
    claim = _load_claim(claim_id)
    authorize("delete_claim", caller, owner_id=claim.user_id)

    if claim.current_status != ClaimStatus.SUBMITTED:
        raise InvalidStateError("Claim can only be deleted while Submitted")

    remove_claim(claim)
    release_staged([f.url for f in claim.evidence.files])
    _update_policyholder(
        claim.user_id,
        lambda p: {"claim_history": [r for r in p.claim_history if r.claim_id != claim_id]},
    )
    logger.info("Claim %s deleted by %s", claim_id, caller.user_id)


def get_claim(caller: Caller, claim_id: str) -> Claim:
    check_role("get_claim", caller)
    claim = _load_claim(claim_id)
    authorize("get_claim", caller, owner_id=claim.user_id)
    return claim


def list_my_claims(caller: Caller) -> list[Claim]:
    authorize("list_my_claims", caller)
    return list_claims_for_user(caller.user_id)


# --- Reviewer Operations ---

def begin_review(caller: Caller, claim_id: str, notes: str = "") -> Claim:
    """Submitted -> Under Review. Evidence is frozen from here on."""
    authorize("begin_review", caller)
    claim = _load_claim(claim_id)
    return _transition(claim, ClaimStatus.UNDER_REVIEW, caller, notes or "Review started")


def evaluate_with_oracle(caller: Caller, claim_id: str, oracle: RiskOracle | None = None) -> Claim:
    """
    Records the oracle's validity verdict and a provisional verified loss
    (a fixed share of the reported loss when valid, else 0).
    """
    authorize("evaluate_with_oracle", caller)
    claim = _load_claim(claim_id)

    if claim.current_status not in AI_REVIEWABLE:
        raise InvalidStateError(f"Claim is {claim.current_status.value}; AI review already done")

    review = review_claim(claim, oracle)

    now = utcnow()
    reported = claim.details.reported_earnings_loss
    verified = round(reported * VERIFIED_LOSS_RATIO, 2) if review.is_valid else 0.0

    evaluation = revise(claim.evaluation, {
        "ai_analysis": AIAnalysis(
            is_valid=review.is_valid,
            confidence_score=review.confidence_score,
            reasons=review.reasons,
            analysed_at=now,
        ),
        "verified_earnings_loss": verified,
    })
    notes = f"AI validity {'confirmed' if review.is_valid else 'not confirmed'} ({review.confidence_score}% confidence)"
    if review.used_fallback:
        notes += "; estimated without oracle"

    return _transition(claim, ClaimStatus.AI_REVIEWED, caller, notes, now=now, evaluation=evaluation)


def escalate(caller: Caller, claim_id: str, notes: str = "") -> Claim:
    """AI Reviewed -> Manual Review."""
    authorize("escalate_claim", caller)
    claim = _load_claim(claim_id)
    return _transition(claim, ClaimStatus.MANUAL_REVIEW, caller, notes or "Escalated to manual review")


def review_manually(
    caller: Caller,
    claim_id: str,
    is_valid: bool,
    notes: str = "",
    payout_amount: float | None = None,
) -> Claim:
    """
    Final decision. A valid claim pays payout_amount, or the verified loss
    when none is given; an invalid claim pays 0.

    Raises:
        InvalidStateError: If the claim has not been AI reviewed or is decided.
        ValidationError: If the payout is negative or exceeds the reported loss.
        StateConflictError: If another reviewer decided first.
    """
    authorize("review_manually", caller)
    claim = _load_claim(claim_id)

    if claim.current_status not in DECIDABLE:
        raise InvalidStateError(f"Claim is {claim.current_status.value}; cannot be reviewed")

    reported = claim.details.reported_earnings_loss
    if is_valid:
        payout = payout_amount if payout_amount is not None else (claim.evaluation.verified_earnings_loss or 0.0)
        if not math.isfinite(payout) or payout < 0 or payout > reported:
            raise ValidationError(f"Payout must be between 0 and the reported loss ({reported:.2f})")
    else:
        payout = 0.0

    now = utcnow()
    evaluation = revise(claim.evaluation, {
        "manual_review": ManualReview(
            reviewer_id=caller.user_id,
            notes=notes,
            is_valid=is_valid,
            reviewed_at=now,
        ),
        "payout_amount": payout,
        "evaluation_date": now,
    })
    target = ClaimStatus.APPROVED if is_valid else ClaimStatus.REJECTED
    saved = _transition(claim, target, caller, notes, now=now, evaluation=evaluation)

    currency = saved.details.currency
    if is_valid:
        body = (
            f"Your claim {saved.claim_id} has been approved. Payout: {payout:.2f} {currency}."
        )
    else:
        body = f"Your claim {saved.claim_id} has been rejected."
    if notes:
        body += f"\n\nReviewer notes: {notes}"
    _notify_claimant(saved, f"Claim {target.value} - CCI", body)
    return saved


def mark_paid(caller: Caller, claim_id: str) -> Claim:
    """
    Approved -> Paid.

    Raises:
        InvalidStateError: If the claim is not Approved (including already Paid).
    """
    authorize("mark_paid", caller)
    claim = _load_claim(claim_id)

    if claim.current_status != ClaimStatus.APPROVED:
        raise InvalidStateError(f"Claim is {claim.current_status.value}, not Approved")

    saved = _transition(claim, ClaimStatus.PAID, caller, "Payout sent")
    _notify_claimant(
        saved,
        "Claim Paid - CCI",
        f"Your claim {saved.claim_id} has been paid: "
        f"{saved.evaluation.payout_amount or 0.0:.2f} {saved.details.currency}.",
    )
    return saved


def search_claims(
    caller: Caller,
    status: ClaimStatus | str | None = None,
    platform: Platform | str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Claim]:
    """Admin listing, newest first."""
    authorize("list_claims", caller)
    claims = list_claims()

    if status is not None:
        claims = [c for c in claims if c.current_status == status]
    if platform is not None:
        claims = [c for c in claims if c.details.platform == platform]
    if start is not None:
        claims = [c for c in claims if c.created_at >= start]
    if end is not None:
        claims = [c for c in claims if c.created_at <= end]

    return sorted(claims, key=lambda c: c.created_at, reverse=True)


# --- Internal ---

def _transition(
    claim: Claim,
    target: ClaimStatus,
    caller: Caller,
    notes: str = "",
    now: datetime | None = None,
    **changes: Any,
) -> Claim:
    current = claim.current_status
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidStateError(f"Claim {claim.claim_id} cannot move from {current.value} to {target.value}")

    now = now or utcnow()
    entry = StatusEntry(status=target, timestamp=now, actor_id=caller.user_id, notes=notes)
    saved = save_claim(revise(claim, {
        **changes,
        "status_history": append(claim.status_history, entry),
        "updated_at": now,
    }))
    logger.info("Claim %s: %s -> %s by %s", claim.claim_id, current.value, target.value, caller.user_id)
    return saved


def _load_claim(claim_id: str) -> Claim:
    claim = fetch_claim(claim_id)
    if claim is None:
        raise ClaimNotFoundError(f"Claim {claim_id} not found")
    return claim


def _build_uploads(raw: list[EvidenceUpload | dict[str, Any]]) -> list[EvidenceUpload]:
    try:
        return [u if isinstance(u, EvidenceUpload) else EvidenceUpload(**u) for u in raw]
    except (PydanticValidationError, TypeError):
        raise ValidationError("Invalid evidence file: filename and data are required")


def _check_notes(notes: str) -> None:
    if len(notes) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Notes too long (max {MAX_DESCRIPTION_LENGTH} characters)")


def _update_policyholder(user_id: str, changes: Callable[[Policyholder], dict[str, Any]]) -> Policyholder:
    """Applies changes to a fresh copy of the policyholder, re-reading on conflict."""
    for _ in range(POLICYHOLDER_UPDATE_ATTEMPTS):
        policyholder = fetch_policyholder(user_id)
        if policyholder is None:
            raise PolicyholderNotFoundError(f"Policyholder {user_id} not found")
        try:
            return save_policyholder(revise(policyholder, changes(policyholder)))
        except StateConflictError:
            continue
    raise StateConflictError(f"Policyholder {user_id} kept changing while updating claim history")


def _discard(claim: Claim) -> None:
    try:
        remove_claim(claim)
    except CCIError as e:
        logger.error("Could not remove claim %s after failed submission: %s", claim.claim_id, e)


def _notify_claimant(claim: Claim, subject: str, body: str) -> None:
    """Best effort: runs after the commit, so a failed lookup is only logged."""
    try:
        policyholder = fetch_policyholder(claim.user_id)
    except CCIError as e:
        logger.warning("Claimant lookup for claim %s failed, notification skipped: %s", claim.claim_id, e)
        return
    if policyholder is None:
        logger.warning("Claimant %s for claim %s no longer exists, notification skipped", claim.user_id, claim.claim_id)
        return
    notify(policyholder.email, subject, body)
