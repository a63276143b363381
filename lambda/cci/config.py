import logging
import os
"""
Configuration for the creator income-protection engine.

All deadlines, limits, amounts, and deployment settings in one place.
Change here, not in business logic modules.
"""

# --- Policy Application ---

# Insurance statuses that may file a claim
CLAIM_ELIGIBLE_STATUSES: frozenset[str] = frozenset({"Approved"})
DEFAULT_SURRENDER_REASON: str = "User-initiated surrender"

# --- Premium ---

DEFAULT_CURRENCY: str = "KES"
DEFAULT_BASE_AMOUNT: float = 1000.0
# Used whenever the oracle gives no usable amount
FALLBACK_PREMIUM_AMOUNT: float = DEFAULT_BASE_AMOUNT + 20.0
DEFAULT_RISK_EXPLANATION: str = "Default risk assessment"

BILLING_CYCLE_DAYS: dict[str, int] = {
    "Monthly": 30,
    "Quarterly": 90,
    "Annually": 365,
}

# Platform volatility: points per recorded infraction, capped at 100
VOLATILITY_PER_INFRACTION: float = 10.0
VOLATILITY_CEILING: float = 100.0

# --- Claims ---

RESOLUTION_WINDOW_HOURS: int = 72
AT_RISK_LOOKAHEAD_HOURS: int = 24
VERIFIED_LOSS_RATIO: float = 0.9

MAX_EVIDENCE_FILES: int = 5
MAX_EVIDENCE_SIZE_MB: float = 25.0
MAX_DESCRIPTION_LENGTH: int = 1000
MAX_EVIDENCE_DESCRIPTION_LENGTH: int = 500

# Oracle unavailable: confidence reported for the heuristic estimate
FALLBACK_CLAIM_CONFIDENCE: int = 50
MIN_DESCRIPTION_FOR_VALIDITY: int = 20

# --- Risk Oracle ---

GEMINI_API_KEY: str = os.environ.get("GEMINI_API_KEY", "")
GEMINI_MODEL: str = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_ENDPOINT: str = os.environ.get(
    "GEMINI_ENDPOINT",
    "https://generativelanguage.googleapis.com/v1beta/models",
)
ORACLE_TIMEOUT_SECONDS: float = float(os.environ.get("ORACLE_TIMEOUT_SECONDS", "10"))

# --- Storage ---

POLICYHOLDERS_TABLE: str = os.environ.get("POLICYHOLDERS_TABLE", "policyholders")
PREMIUMS_TABLE: str = os.environ.get("PREMIUMS_TABLE", "premiums")
CLAIMS_TABLE: str = os.environ.get("CLAIMS_TABLE", "claims")
CLAIMS_USER_INDEX: str = os.environ.get("CLAIMS_USER_INDEX", "user_id-created_at-index")

EVIDENCE_BUCKET: str = os.environ.get("EVIDENCE_BUCKET", "cci-claim-evidence")
EVIDENCE_PREFIX: str = "claims"

# botocore client limits for every AWS collaborator
AWS_CONNECT_TIMEOUT_SECONDS: float = 3.0
AWS_READ_TIMEOUT_SECONDS: float = 10.0
AWS_MAX_ATTEMPTS: int = 3

# --- Notifications ---

NOTIFICATION_SENDER: str = os.environ.get("NOTIFICATION_SENDER", "CCI Support <support@cci.example>")

# --- Logging ---

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


def configure_logging() -> None:
    """Applies LOG_LEVEL to the package logger. Call once per container."""
    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logging.getLogger("cci").setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
