"""
Object storage - S3 operations for claim evidence files.

Uploads return a public-style URL that is stored on the claim; deletes
take the same URL back. release_staged is the compensating cleanup for
submissions that fail after files were uploaded.
"""

import logging
import re
import uuid
from urllib.parse import urlparse

import boto3
from botocore.config import Config

from cci.models import EvidenceUpload, FileStorageError, StorageCleanupError
from cci.config import (
    AWS_CONNECT_TIMEOUT_SECONDS,
    AWS_MAX_ATTEMPTS,
    AWS_READ_TIMEOUT_SECONDS,
    EVIDENCE_BUCKET,
    EVIDENCE_PREFIX,
)

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


# --- S3 client cache ---

_s3 = None


def _get_client():
    """Lazy-initialized S3 client with caching."""
    global _s3

    if _s3 is not None:
        return _s3

    _s3 = boto3.client(
        "s3",
        config=Config(
            connect_timeout=AWS_CONNECT_TIMEOUT_SECONDS,
            read_timeout=AWS_READ_TIMEOUT_SECONDS,
            retries={"max_attempts": AWS_MAX_ATTEMPTS},
        ),
    )
    return _s3


# --- Public API ---

def upload_evidence(upload: EvidenceUpload, user_id: str) -> str:
    """
    Stores one evidence file and returns its URL.

    Raises:
        FileStorageError: If the S3 upload fails.
    """
    key = f"{EVIDENCE_PREFIX}/{user_id}/{uuid.uuid4().hex}-{_safe_name(upload.filename)}"
    try:
        _get_client().put_object(
            Bucket=EVIDENCE_BUCKET,
            Key=key,
            Body=upload.data,
            ContentType=upload.content_type,
        )
    except Exception as e:
        raise FileStorageError(f"Failed to upload evidence {upload.filename}: {e}")
    return f"https://{EVIDENCE_BUCKET}.s3.amazonaws.com/{key}"


def delete_evidence(url: str) -> None:
    """
    Removes the object behind an evidence URL.

    Raises:
        StorageCleanupError: If the URL is not ours or the delete fails.
    """
    key = _key_from_url(url)
    try:
        _get_client().delete_object(Bucket=EVIDENCE_BUCKET, Key=key)
    except Exception as e:
        raise StorageCleanupError(f"Failed to delete evidence {url}: {e}")


def release_staged(urls: list[str]) -> None:
    """
    Best-effort removal of uploaded files. Failures are logged, never raised.
    """
    for url in urls:
        try:
            delete_evidence(url)
        except StorageCleanupError as e:
            logger.warning("Evidence cleanup failed: %s", e)


def clear_client_cache() -> None:
    """Clears cached S3 client. Testing only."""
    global _s3
    _s3 = None


# --- Internal ---

def _safe_name(filename: str) -> str:
    return _UNSAFE_CHARS.sub("_", filename)[:100] or "file"


def _key_from_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.netloc != f"{EVIDENCE_BUCKET}.s3.amazonaws.com" or not parsed.path.strip("/"):
        raise StorageCleanupError(f"Not an evidence URL: {url}")
    return parsed.path.lstrip("/")
