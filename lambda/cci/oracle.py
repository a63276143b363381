"""
Risk oracle client - advisory premium and claim assessments.

The oracle answers in free text. This module is the only place that
knows that: it builds prompts, parses the three premium patterns
(risk tier, explanation, amount) and the claim review patterns, and
substitutes documented defaults when anything is missing or the call
fails. Callers always get a structured result and never an oracle error.
"""

import logging
import math
import re
from typing import Protocol

import requests

from cci.models import (
    Claim,
    ClaimReview,
    OracleUnavailableError,
    Policyholder,
    PlatformRiskSummary,
    PremiumRiskInput,
    RiskAssessment,
    RiskTier,
)
from cci.config import (
    DEFAULT_BASE_AMOUNT,
    DEFAULT_RISK_EXPLANATION,
    FALLBACK_CLAIM_CONFIDENCE,
    FALLBACK_PREMIUM_AMOUNT,
    GEMINI_API_KEY,
    GEMINI_ENDPOINT,
    GEMINI_MODEL,
    MIN_DESCRIPTION_FOR_VALIDITY,
    ORACLE_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

RISK_PATTERN = re.compile(r"Risk:\s*\**\s*(Low|Medium|High)\b", re.IGNORECASE)
EXPLANATION_PATTERN = re.compile(r"Why:\s*\**\s*(.+)", re.IGNORECASE)
AMOUNT_PATTERN = re.compile(r"Final:\s*\**\s*\$?\s*(\d[\d,]*(?:\.\d+)?)", re.IGNORECASE)

VALIDITY_PATTERN = re.compile(r"Valid:\s*\**\s*(yes|no|true|false)\b", re.IGNORECASE)
CONFIDENCE_PATTERN = re.compile(r"Confidence:\s*\**\s*(\d{1,3})", re.IGNORECASE)
REASON_PATTERN = re.compile(r"Reason:\s*\**\s*(.+)", re.IGNORECASE)

FALLBACK_CLAIM_REASON = "Automated review unavailable; estimate based on submitted evidence"


class RiskOracle(Protocol):
    """
    Anything that can answer premium and claim prompts in free text.

    Implementations raise OracleUnavailableError when they cannot answer.
    Callers in this module treat any other exception the same way.
    """

    def premium_assessment(self, summary: PremiumRiskInput) -> str: ...

    def claim_assessment(self, claim: Claim) -> str: ...


# --- Global oracle cache ---
# One client per container, built from environment settings.

_default_oracle: RiskOracle | None = None


# --- Public API ---

def summarize_policyholder(policyholder: Policyholder) -> PremiumRiskInput:
    """Structured oracle input built from current platform data."""
    return PremiumRiskInput(
        monthly_earnings=policyholder.monthly_earnings,
        platforms=[
            PlatformRiskSummary(
                name=p.name,
                audience_size=p.audience_size,
                content_type=p.content_type,
                infraction_count=p.infraction_count,
            )
            for p in policyholder.platforms
        ],
        total_infractions=policyholder.total_infractions,
    )


def assess_premium(summary: PremiumRiskInput, oracle: RiskOracle | None = None) -> RiskAssessment:
    """
    Asks the oracle for premium advice and parses it.

    Never raises for oracle problems: an unavailable oracle yields the
    full fallback assessment.
    """
    oracle = oracle or get_default_oracle()
    try:
        text = oracle.premium_assessment(summary)
    except Exception as e:
        logger.warning("Risk oracle unavailable, using default premium: %s", e)
        return default_risk_assessment()
    return parse_risk_assessment(text)


def review_claim(claim: Claim, oracle: RiskOracle | None = None) -> ClaimReview:
    """
    Asks the oracle whether a claim looks valid.

    Falls back to a deterministic estimate from the submitted claim when
    the oracle is unavailable or gives no validity verdict.
    """
    oracle = oracle or get_default_oracle()
    try:
        text = oracle.claim_assessment(claim)
    except Exception as e:
        logger.warning("Risk oracle unavailable for claim %s, using estimate: %s", claim.claim_id, e)
        return estimate_claim_review(claim)

    review = parse_claim_review(text)
    if review is None:
        logger.warning("Risk oracle gave no verdict for claim %s, using estimate", claim.claim_id)
        return estimate_claim_review(claim)
    return review


def parse_risk_assessment(text: str | None) -> RiskAssessment:
    """Extracts tier, explanation and amount; each missing field gets its default."""
    text = text or ""

    tier_match = RISK_PATTERN.search(text)
    why_match = EXPLANATION_PATTERN.search(text)
    amount_match = AMOUNT_PATTERN.search(text)

    amount = _parse_amount(amount_match.group(1)) if amount_match else None

    return RiskAssessment(
        risk_tier=RiskTier(tier_match.group(1).capitalize()) if tier_match else RiskTier.LOW,
        explanation=why_match.group(1).strip() if why_match else DEFAULT_RISK_EXPLANATION,
        suggested_amount=amount if amount is not None else FALLBACK_PREMIUM_AMOUNT,
        used_fallback=not (tier_match and why_match and amount is not None),
    )


def parse_claim_review(text: str | None) -> ClaimReview | None:
    """Extracts the claim verdict. Returns None when there is no validity verdict."""
    text = text or ""

    validity_match = VALIDITY_PATTERN.search(text)
    if validity_match is None:
        return None

    confidence_match = CONFIDENCE_PATTERN.search(text)
    confidence = int(confidence_match.group(1)) if confidence_match else FALLBACK_CLAIM_CONFIDENCE

    return ClaimReview(
        is_valid=validity_match.group(1).lower() in ("yes", "true"),
        confidence_score=max(0, min(confidence, 100)),
        reasons=[r.strip() for r in REASON_PATTERN.findall(text) if r.strip()],
        used_fallback=confidence_match is None,
    )


def default_risk_assessment() -> RiskAssessment:
    return RiskAssessment(
        risk_tier=RiskTier.LOW,
        explanation=DEFAULT_RISK_EXPLANATION,
        suggested_amount=FALLBACK_PREMIUM_AMOUNT,
        used_fallback=True,
    )


def estimate_claim_review(claim: Claim) -> ClaimReview:
    """Deterministic substitute for the oracle's claim verdict."""
    is_valid = (
        claim.details.reported_earnings_loss > 0
        and len(claim.evidence.files) > 0
        and len(claim.details.description.strip()) >= MIN_DESCRIPTION_FOR_VALIDITY
    )
    return ClaimReview(
        is_valid=is_valid,
        confidence_score=FALLBACK_CLAIM_CONFIDENCE,
        reasons=[FALLBACK_CLAIM_REASON],
        used_fallback=True,
    )


def get_default_oracle() -> RiskOracle:
    """Gemini when an API key is configured, otherwise the deterministic stub."""
    global _default_oracle

    if _default_oracle is not None:
        return _default_oracle

    if GEMINI_API_KEY:
        _default_oracle = GeminiRiskOracle(api_key=GEMINI_API_KEY)
    else:
        logger.warning("GEMINI_API_KEY not set, risk oracle runs in stub mode")
        _default_oracle = StubRiskOracle()
    return _default_oracle


def clear_oracle_cache() -> None:
    """Clears cached oracle. Testing only."""
    global _default_oracle
    _default_oracle = None


# --- Implementations ---

class GeminiRiskOracle:
    """Network-backed oracle calling the Gemini generateContent endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_MODEL,
        endpoint: str = GEMINI_ENDPOINT,
        timeout: float = ORACLE_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout

    def premium_assessment(self, summary: PremiumRiskInput) -> str:
        platforms = "\n".join(
            f"- {p.name.value}: audience {p.audience_size}, content '{p.content_type}', "
            f"infractions {p.infraction_count}"
            for p in summary.platforms
        ) or "- none"
        prompt = (
            "You price income-protection insurance for online content creators.\n"
            f"Monthly earnings: ${summary.monthly_earnings:.2f}\n"
            f"Total audience: {summary.total_audience}\n"
            f"Total infractions: {summary.total_infractions}\n"
            f"Platforms:\n{platforms}\n\n"
            "Answer with exactly three lines:\n"
            "Risk: <Low|Medium|High>\n"
            "Why: <one sentence>\n"
            "Final: $<monthly premium>"
        )
        return self._generate(prompt)

    def claim_assessment(self, claim: Claim) -> str:
        details = claim.details
        evidence = "\n".join(
            f"- {f.type.value}: {f.description or f.filename}" for f in claim.evidence.files
        ) or "- none"
        prompt = (
            "You review income-loss claims from online content creators.\n"
            f"Platform: {details.platform.value}\n"
            f"Incident: {details.incident_type.value} on {details.incident_date.date().isoformat()}\n"
            f"Description: {details.description}\n"
            f"Reported loss: {details.reported_earnings_loss:.2f} {details.currency}\n"
            f"Evidence:\n{evidence}\n"
            f"Notes: {claim.evidence.additional_notes or '-'}\n\n"
            "Answer with:\n"
            "Valid: <yes|no>\n"
            "Confidence: <0-100>\n"
            "Reason: <one line per reason>"
        )
        return self._generate(prompt)

    def _generate(self, prompt: str) -> str:
        url = f"{self.endpoint}/{self.model}:generateContent"
        try:
            resp = requests.post(
                url,
                params={"key": self.api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise OracleUnavailableError(f"Gemini request failed: {e}") from e

        if resp.status_code >= 400:
            raise OracleUnavailableError(f"Gemini API error {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OracleUnavailableError(f"Unexpected Gemini response: {e}") from e


class StubRiskOracle:
    """
    Deterministic oracle. Answers in the same text format as Gemini so
    the parsing path is exercised.

    Pass premium_text / claim_text to script replies; fail=True makes
    every call raise OracleUnavailableError.
    """

    def __init__(
        self,
        premium_text: str | None = None,
        claim_text: str | None = None,
        fail: bool = False,
    ):
        self.premium_text = premium_text
        self.claim_text = claim_text
        self.fail = fail
        self.calls = 0

    def premium_assessment(self, summary: PremiumRiskInput) -> str:
        self.calls += 1
        if self.fail:
            raise OracleUnavailableError("Stub oracle configured to fail")
        if self.premium_text is not None:
            return self.premium_text

        tier = _tier_for(summary.total_infractions)
        amount = (
            DEFAULT_BASE_AMOUNT
            + summary.monthly_earnings * 0.01
            + summary.total_audience / 1000
            + summary.total_infractions * 250
        )
        return (
            f"Risk: {tier.value}\n"
            f"Why: {summary.total_infractions} past infraction(s) across "
            f"{len(summary.platforms)} platform(s)\n"
            f"Final: ${amount:.2f}"
        )

    def claim_assessment(self, claim: Claim) -> str:
        self.calls += 1
        if self.fail:
            raise OracleUnavailableError("Stub oracle configured to fail")
        if self.claim_text is not None:
            return self.claim_text

        valid = bool(claim.evidence.files) and claim.details.reported_earnings_loss > 0
        return (
            f"Valid: {'yes' if valid else 'no'}\n"
            f"Confidence: {82 if valid else 64}\n"
            "Reason: Matches platform policy violation\n"
            "Reason: Evidence supports claim"
        )


# --- Internal ---

def _parse_amount(raw: str) -> float | None:
    try:
        amount = float(raw.replace(",", ""))
    except ValueError:
        return None
    return amount if math.isfinite(amount) else None


def _tier_for(infractions: int) -> RiskTier:
    if infractions == 0:
        return RiskTier.LOW
    if infractions < 3:
        return RiskTier.MEDIUM
    return RiskTier.HIGH
