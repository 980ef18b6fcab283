"""
Celery tasks package.

- email_tasks: Verification email delivery and expired request cleanup
"""

from app.core.celery_app import celery_app
from app.tasks import email_tasks

__all__ = ["celery_app", "email_tasks"]
