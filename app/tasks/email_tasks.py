"""
Celery tasks for verification email and verification request housekeeping.
"""

import logging
from typing import Optional
from celery import shared_task

from app.core.celery_utils import queue_task_safely
from app.services.email_service import EmailService

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """SES did not accept the message; raised so Celery retries."""


@shared_task(
    bind=True,
    name="send_verification_email_task",
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(EmailDeliveryError,),
    retry_backoff=True,
    retry_backoff_max=600,  # Max 10 minutes between retries
    retry_jitter=True
)
def send_verification_email_task(
    self,
    to_email: str,
    token: str,
    display_name: Optional[str] = None
):
    """
    Send an email verification link asynchronously.

    Retries with exponential backoff and jitter, up to 3 times.

    Raises:
        EmailDeliveryError: If SES rejects the message (triggers a retry)
    """
    logger.info(f"Sending verification email to {to_email} (attempt {self.request.retries + 1})")

    if not EmailService().send_verification(to_email, token, display_name):
        if self.request.retries >= self.max_retries:
            logger.error(f"All retry attempts exhausted for {to_email}")
        raise EmailDeliveryError(f"Failed to send verification email to {to_email}")

    return {"status": "success", "email": to_email}


@shared_task(name="cleanup_expired_verification_requests")
def cleanup_expired_verification_requests():
    """Delete verification requests whose expiry has passed. Runs hourly via beat."""
    from app.core.database import SessionLocal
    from app.core.verification import VerificationManager

    db = SessionLocal()
    try:
        deleted_count = VerificationManager(db).cleanup_expired()
        logger.info(f"Cleaned up {deleted_count} expired verification requests")
        return {"status": "success", "deleted_count": deleted_count}
    finally:
        db.close()


class QueuedEmailSender:
    """
    Email sender used by the API process: hands the message to a Celery
    worker instead of calling SES inline.

    Returns True once the task is queued; delivery failures are retried by
    the worker.
    """

    def send_verification(self, email: str, token: str, display_name: Optional[str] = None) -> bool:
        return queue_task_safely(
            send_verification_email_task,
            to_email=email,
            token=token,
            display_name=display_name,
        )
