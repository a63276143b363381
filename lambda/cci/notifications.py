"""
Notifications - transactional email through Amazon SES.

notify() is fire-and-forget: it is called after a state change has been
committed and a failed send is logged, never raised.
"""

import logging

import boto3
from botocore.config import Config

from cci.models import NotificationError
from cci.config import (
    AWS_CONNECT_TIMEOUT_SECONDS,
    AWS_MAX_ATTEMPTS,
    AWS_READ_TIMEOUT_SECONDS,
    NOTIFICATION_SENDER,
)

logger = logging.getLogger(__name__)


_ses = None


def _get_client():
    """Lazy-initialized SES client with caching."""
    global _ses

    if _ses is not None:
        return _ses

    _ses = boto3.client(
        "ses",
        config=Config(
            connect_timeout=AWS_CONNECT_TIMEOUT_SECONDS,
            read_timeout=AWS_READ_TIMEOUT_SECONDS,
            retries={"max_attempts": AWS_MAX_ATTEMPTS},
        ),
    )
    return _ses


def send_email(to_address: str, subject: str, body: str) -> str:
    """
    Sends a plain-text email and returns the SES message ID.

    Raises:
        NotificationError: If fields are missing or SES rejects the send.
    """
    if not to_address or not subject or not body:
        raise NotificationError("Missing required email fields: to, subject, and body")

    try:
        response = _get_client().send_email(
            Source=NOTIFICATION_SENDER,
            Destination={"ToAddresses": [to_address]},
            Message={
                "Subject": {"Data": subject},
                "Body": {"Text": {"Data": body}},
            },
        )
    except Exception as e:
        raise NotificationError(f"Failed to send email to {to_address}: {e}")

    message_id = response.get("MessageId", "")
    logger.info("Email sent to %s: %s", to_address, message_id)
    return message_id


def notify(to_address: str, subject: str, body: str) -> None:
    """Sends an email without letting failure reach the caller."""
    try:
        send_email(to_address, subject, body)
    except NotificationError as e:
        logger.warning("Notification dropped: %s", e)


def clear_client_cache() -> None:
    """Clears cached SES client. Testing only."""
    global _ses
    _ses = None
