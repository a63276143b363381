"""
Claim input validation - claim details and evidence files.

All pre-submission checks in a single module. Ensures nothing reaches
object storage or the database unless it is complete and readable.
"""

import io
from datetime import datetime
from typing import Any

from PIL import Image
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from cci.models import ClaimDetails, EvidenceType, EvidenceUpload, ValidationError
from cci.config import MAX_EVIDENCE_FILES, MAX_EVIDENCE_SIZE_MB

PDF_MAGIC = b"%PDF"


class EvidenceCheck(BaseModel):
    """Result of validating one evidence file."""
    is_valid: bool
    error_message: str | None = None
    evidence_type: EvidenceType = EvidenceType.OTHER
    size_bytes: int = Field(0, ge=0)


def validate_claim_details(raw: ClaimDetails | dict[str, Any], now: datetime) -> ClaimDetails:
    """
    Builds ClaimDetails from claimant input.

    Raises:
        ValidationError: If a required field is missing or malformed, or
            the incident date lies in the future.
    """
    if isinstance(raw, ClaimDetails):
        details = raw
    else:
        try:
            details = ClaimDetails(**raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid claim details: {_describe(e)}")

    if details.incident_date > now:
        raise ValidationError("Incident date cannot be in the future")
    return details


def validate_evidence_file(upload: EvidenceUpload) -> EvidenceCheck:
    """
    Checks size and readability, and classifies the file.

    1. Empty / oversized files are rejected
    2. PDFs become Document
    3. Anything Pillow can decode becomes Screenshot
    4. video/* content types become Video
    5. Everything else is Other

    Returns EvidenceCheck with is_valid=False for rejections.
    """
    size_bytes = len(upload.data)
    size_mb = size_bytes / (1024 * 1024)

    if size_bytes == 0:
        return EvidenceCheck(
            is_valid=False,
            error_message=f"Evidence file {upload.filename} is empty",
        )

    if size_mb > MAX_EVIDENCE_SIZE_MB:
        return EvidenceCheck(
            is_valid=False,
            error_message=f"Evidence file too large: {size_mb:.1f}MB (max {MAX_EVIDENCE_SIZE_MB}MB)",
            size_bytes=size_bytes,
        )

    if upload.data.startswith(PDF_MAGIC):
        return EvidenceCheck(
            is_valid=True,
            evidence_type=EvidenceType.DOCUMENT,
            size_bytes=size_bytes,
        )

    if _is_image(upload.data):
        return EvidenceCheck(
            is_valid=True,
            evidence_type=EvidenceType.SCREENSHOT,
            size_bytes=size_bytes,
        )

    if upload.content_type.startswith("image/"):
        return EvidenceCheck(
            is_valid=False,
            error_message=f"Invalid image - {upload.filename} is corrupted or not an image",
            size_bytes=size_bytes,
        )

    if upload.content_type.startswith("video/"):
        return EvidenceCheck(
            is_valid=True,
            evidence_type=EvidenceType.VIDEO,
            size_bytes=size_bytes,
        )

    return EvidenceCheck(is_valid=True, evidence_type=EvidenceType.OTHER, size_bytes=size_bytes)


def validate_evidence(uploads: list[EvidenceUpload], existing: int = 0, required: bool = True) -> list[EvidenceCheck]:
    """
    Validates a batch of evidence files.

    existing is the number of files already attached to the claim;
    the total may not exceed MAX_EVIDENCE_FILES.

    Raises:
        ValidationError: If evidence is required but missing, the batch is
            too large, or any file fails validation.
    """
    if required and not uploads:
        raise ValidationError("At least one evidence file must be provided")

    if existing + len(uploads) > MAX_EVIDENCE_FILES:
        raise ValidationError(f"Too many evidence files (max {MAX_EVIDENCE_FILES})")

    checks = [validate_evidence_file(u) for u in uploads]
    failures = [c.error_message for c in checks if not c.is_valid]
    if failures:
        raise ValidationError("; ".join(m for m in failures if m))
    return checks


def _is_image(data: bytes) -> bool:
    try:
        img = Image.open(io.BytesIO(data))
        img.verify()
        return True
    except Exception:
        return False


def _describe(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        field = ".".join(str(p) for p in item.get("loc", ())) or "input"
        parts.append(f"{field}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)
