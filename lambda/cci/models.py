"""
Domain models for the creator income-protection engine.

All Pydantic models in one place. Imported by every engine, storage,
and collaborator module. Single source of truth for data contracts.

Audit entries (status history, calculation history, payment attempts)
are frozen and held in tuples: a history only grows by building a new
tuple with the entry appended.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, FiniteFloat, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from cci.config import (
    DEFAULT_BASE_AMOUNT,
    DEFAULT_CURRENCY,
    MAX_DESCRIPTION_LENGTH,
    MAX_EVIDENCE_DESCRIPTION_LENGTH,
    RESOLUTION_WINDOW_HOURS,
)


# --- Domain Enums ---

class Role(str, Enum):
    CREATOR = "Creator"
    ADMIN = "Admin"


class InsuranceState(str, Enum):
    NOT_APPLIED = "NotApplied"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    SURRENDERED = "Surrendered"


class Platform(str, Enum):
    YOUTUBE = "YouTube"
    TIKTOK = "TikTok"
    INSTAGRAM = "Instagram"
    X = "X"
    FACEBOOK = "Facebook"
    OTHER = "Other"


class PaymentMethodType(str, Enum):
    BANK = "Bank"
    MOBILE_MONEY = "MobileMoney"
    PAYPAL = "PayPal"
    OTHER = "Other"


class RiskTier(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class CalculationTrigger(str, Enum):
    AI = "AI"
    MANUAL = "Manual"


class PaymentState(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    OVERDUE = "Overdue"
    FAILED = "Failed"


class AttemptOutcome(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


class BillingCycle(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUALLY = "Annually"


class IncidentType(str, Enum):
    DEMONETIZATION = "Demonetization"
    SUSPENSION = "Suspension"
    BAN = "Ban"
    CONTENT_REMOVAL = "Content Removal"
    OTHER = "Other"


class EvidenceType(str, Enum):
    SCREENSHOT = "Screenshot"
    VIDEO = "Video"
    DOCUMENT = "Document"
    OTHER = "Other"


class ClaimStatus(str, Enum):
    """
    Adjudication stages in forward order. Declaration order is the
    progression rank; Approved and Rejected share a rank.
    """
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "Under Review"
    AI_REVIEWED = "AI Reviewed"
    MANUAL_REVIEW = "Manual Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PAID = "Paid"


TERMINAL_CLAIM_STATUSES: frozenset[ClaimStatus] = frozenset({
    ClaimStatus.APPROVED,
    ClaimStatus.REJECTED,
    ClaimStatus.PAID,
})


# --- Authorization Context ---

class Caller(BaseModel):
    """Identity and role of whoever invokes an operation."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role = Role.CREATOR


# --- Policyholder Context ---

class InfractionRecord(BaseModel):
    violation_type: str
    date: datetime | None = None
    description: str = ""


class PlatformProfile(BaseModel):
    """A creator's presence on one content platform."""
    name: Platform
    handle: str = Field(min_length=1)
    profile_url: str = ""
    audience_size: int = Field(0, ge=0)
    content_type: str = ""
    risk_history: list[InfractionRecord] = []

    @property
    def infraction_count(self) -> int:
        return len(self.risk_history)


class PaymentMethod(BaseModel):
    type: PaymentMethodType = PaymentMethodType.BANK
    details: str = ""


class InsuranceStatus(BaseModel):
    status: InsuranceState = InsuranceState.NOT_APPLIED
    applied_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    surrendered_at: datetime | None = None
    rejection_reason: str | None = None
    surrender_reason: str | None = None
    policy_start_date: datetime | None = None
    policy_end_date: datetime | None = None


class ClaimReference(BaseModel):
    claim_id: str
    submitted_at: datetime


class Policyholder(BaseModel):
    """Registered creator. Insurance status changes only through policy.py."""
    user_id: str
    email: str
    full_name: str = ""
    currency: str = DEFAULT_CURRENCY
    monthly_earnings: FiniteFloat = Field(0.0, ge=0.0)
    payment_method: PaymentMethod | None = None
    platforms: list[PlatformProfile] = []
    insurance_status: InsuranceStatus = InsuranceStatus()
    claim_history: list[ClaimReference] = []

    # Premium summary mirrored from the Premium record
    premium_amount: FiniteFloat = Field(0.0, ge=0.0)
    premium_last_calculated: datetime | None = None
    discount_applied: bool = False

    created_at: datetime
    version: int = Field(0, ge=0)

    @property
    def total_audience(self) -> int:
        return sum(p.audience_size for p in self.platforms)

    @property
    def total_infractions(self) -> int:
        return sum(p.infraction_count for p in self.platforms)


# --- Premium Context ---

class AdjustmentFactors(BaseModel):
    earnings: FiniteFloat = Field(0.0, ge=0.0)
    audience_size: int = Field(0, ge=0)
    content_risk: RiskTier = RiskTier.LOW
    platform_volatility: FiniteFloat = Field(0.0, ge=0.0, le=100.0)
    infraction_count: int = Field(0, ge=0)
    risk_explanation: str = ""


class Discount(BaseModel):
    amount: FiniteFloat = Field(0.0, ge=0.0)
    reason: str = ""


class CalculationEntry(BaseModel):
    """Full snapshot of one premium calculation."""
    model_config = ConfigDict(frozen=True)

    calculated_at: datetime
    base_amount: FiniteFloat = Field(ge=0.0)
    adjustment_factors: AdjustmentFactors
    discount: Discount
    final_amount: FiniteFloat = Field(ge=0.0)
    currency: str
    calculated_by: CalculationTrigger
    actor_id: str | None = None


class PaymentAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempted_at: datetime
    status: AttemptOutcome
    amount: FiniteFloat = Field(ge=0.0)
    idempotency_key: str
    transaction_id: str | None = None
    error_message: str | None = None


class PaymentStatus(BaseModel):
    status: PaymentState = PaymentState.PENDING
    due_date: datetime | None = None
    payment_date: datetime | None = None
    payment_method: PaymentMethod | None = None
    transaction_id: str | None = None
    attempts: tuple[PaymentAttempt, ...] = ()


class Premium(BaseModel):
    """Periodic amount owed by one policyholder. Keyed by user_id."""
    premium_id: str
    user_id: str
    base_amount: FiniteFloat = Field(DEFAULT_BASE_AMOUNT, ge=0.0)
    currency: str = DEFAULT_CURRENCY
    adjustment_factors: AdjustmentFactors = AdjustmentFactors()
    discount: Discount = Discount()
    final_amount: FiniteFloat = Field(DEFAULT_BASE_AMOUNT, ge=0.0)

    calculation_history: tuple[CalculationEntry, ...] = ()
    payment_status: PaymentStatus = PaymentStatus()
    billing_cycle: BillingCycle = BillingCycle.MONTHLY

    created_at: datetime
    updated_at: datetime
    next_calculation_date: datetime | None = None
    version: int = Field(0, ge=0)


# --- Claim Context ---

class ClaimDetails(BaseModel):
    """What the claimant reported. Fixed at submission."""
    model_config = ConfigDict(frozen=True)

    platform: Platform
    incident_type: IncidentType
    incident_date: datetime
    description: str = Field(min_length=1, max_length=MAX_DESCRIPTION_LENGTH)
    reported_earnings_loss: FiniteFloat = Field(gt=0.0)
    currency: str = DEFAULT_CURRENCY

    @field_validator("incident_date")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class EvidenceUpload(BaseModel):
    """A file as received from the claimant, before it is stored."""
    filename: str = Field(min_length=1)
    content_type: str = "application/octet-stream"
    data: bytes
    description: str = Field("", max_length=MAX_EVIDENCE_DESCRIPTION_LENGTH)


class EvidenceFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    type: EvidenceType
    filename: str = ""
    description: str = ""
    uploaded_at: datetime


class Evidence(BaseModel):
    files: tuple[EvidenceFile, ...] = ()
    additional_notes: str = Field("", max_length=MAX_DESCRIPTION_LENGTH)


class AIAnalysis(BaseModel):
    is_valid: bool
    confidence_score: int = Field(ge=0, le=100)
    reasons: list[str] = []
    analysed_at: datetime


class ManualReview(BaseModel):
    reviewer_id: str
    notes: str = ""
    is_valid: bool
    reviewed_at: datetime


class Evaluation(BaseModel):
    verified_earnings_loss: FiniteFloat | None = Field(None, ge=0.0)
    ai_analysis: AIAnalysis | None = None
    manual_review: ManualReview | None = None
    payout_amount: FiniteFloat | None = Field(None, ge=0.0)
    evaluation_date: datetime | None = None


class StatusEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ClaimStatus
    timestamp: datetime
    actor_id: str | None = None
    notes: str = ""


class Claim(BaseModel):
    """
    A payout request. The current status is always the last status
    history entry; there is no separate status field to drift.
    """
    claim_id: str
    user_id: str
    details: ClaimDetails
    evidence: Evidence
    evaluation: Evaluation = Evaluation()
    status_history: tuple[StatusEntry, ...] = Field(min_length=1)

    created_at: datetime
    updated_at: datetime
    resolution_deadline: datetime
    version: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Claim":
        if self.status_history[0].status != ClaimStatus.SUBMITTED:
            raise ValueError("status history must start with Submitted")
        expected = self.created_at + timedelta(hours=RESOLUTION_WINDOW_HOURS)
        if self.resolution_deadline != expected:
            raise ValueError(
                f"resolution_deadline must be created_at + {RESOLUTION_WINDOW_HOURS}h"
            )
        return self

    @property
    def current_status(self) -> ClaimStatus:
        return self.status_history[-1].status


# --- Oracle Context ---

class PlatformRiskSummary(BaseModel):
    name: Platform
    audience_size: int = Field(0, ge=0)
    content_type: str = ""
    infraction_count: int = Field(0, ge=0)


class PremiumRiskInput(BaseModel):
    """What the oracle sees about a policyholder."""
    monthly_earnings: FiniteFloat = Field(0.0, ge=0.0)
    platforms: list[PlatformRiskSummary] = []
    total_infractions: int = Field(0, ge=0)

    @property
    def total_audience(self) -> int:
        return sum(p.audience_size for p in self.platforms)


class RiskAssessment(BaseModel):
    """Parsed premium advice from the risk oracle."""
    risk_tier: RiskTier = RiskTier.LOW
    explanation: str
    suggested_amount: FiniteFloat = Field(ge=0.0)
    used_fallback: bool = False


class ClaimReview(BaseModel):
    """Parsed claim validity advice from the risk oracle."""
    is_valid: bool
    confidence_score: int = Field(ge=0, le=100)
    reasons: list[str] = []
    used_fallback: bool = False


# --- Analytics ---

class ClaimAnalytics(BaseModel):
    total_claims: int = 0
    status_breakdown: dict[str, int] = {}
    average_payout: float = 0.0


class PremiumAnalytics(BaseModel):
    total_premiums: int = 0
    status_breakdown: dict[str, int] = {}
    average_premium: float = 0.0
    total_revenue: float = 0.0


# --- Exceptions ---

class CCIError(Exception):
    """Base for engine errors. `code` is the stable error kind."""
    code = "INTERNAL_ERROR"


class ValidationError(CCIError):
    """Input is missing or malformed."""
    code = "VALIDATION_ERROR"


class ForbiddenError(CCIError):
    """Caller lacks the role or does not own the record."""
    code = "FORBIDDEN"


class NotFoundError(CCIError):
    code = "NOT_FOUND"


class PolicyholderNotFoundError(NotFoundError):
    code = "POLICYHOLDER_NOT_FOUND"


class PremiumNotFoundError(NotFoundError):
    code = "PREMIUM_NOT_FOUND"


class ClaimNotFoundError(NotFoundError):
    code = "CLAIM_NOT_FOUND"


class InvalidStateError(CCIError):
    """Transition not allowed from the record's current state."""
    code = "INVALID_STATE"


class ConflictError(InvalidStateError):
    """Insurance already applied for or active."""
    code = "CONFLICT"


class NotEligibleError(InvalidStateError):
    """No pending or active policy for the requested operation."""
    code = "NOT_ELIGIBLE"


class NoActivePolicyError(InvalidStateError):
    code = "NO_ACTIVE_POLICY"


class StateConflictError(CCIError):
    """Record changed since it was read. Re-fetch and retry."""
    code = "STATE_CONFLICT"


class PersistenceError(CCIError):
    """Database operation failed."""
    code = "PERSISTENCE_ERROR"


class OracleUnavailableError(CCIError):
    """Risk oracle call failed or timed out. Never leaves oracle.py."""
    code = "ORACLE_UNAVAILABLE"


class NotificationError(CCIError):
    code = "NOTIFICATION_FAILED"


class StorageCleanupError(CCIError):
    code = "STORAGE_CLEANUP_FAILED"


class FileStorageError(CCIError):
    """Evidence upload failed."""
    code = "FILE_STORAGE_ERROR"


class PaymentFailedError(CCIError):
    code = "PAYMENT_FAILED"


# --- Record Updates ---

M = TypeVar("M", bound=BaseModel)


def revise(record: M, update: dict[str, Any]) -> M:
    """
    Copy of record with update applied, validated like a freshly built one.
    model_copy(update=...) skips field constraints; write paths use this.

    Nested models passed in update are taken as they are, so a changed
    nested model must itself come from revise() or its constructor.

    Raises:
        ValidationError: If the updated record breaks a field constraint.
    """
    try:
        return type(record).model_validate({**dict(record), **update})
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "record" for err in e.errors())
        raise ValidationError(f"Invalid {type(record).__name__} update: {fields}")
