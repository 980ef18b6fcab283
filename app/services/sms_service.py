"""
AWS SNS SMS service for phone verification codes.
"""

import logging
import re
from typing import Optional
import boto3
from botocore.exceptions import ClientError, BotoCoreError
from app.core.config import settings

logger = logging.getLogger(__name__)

APP_NAME = "Naggery"
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def sanitize_phone(phone: str) -> str:
    """Remove all non-digit characters except +"""
    return re.sub(r"[^\d+]", "", phone or "")


def format_phone(phone: str) -> str:
    """Normalise to E.164, defaulting to +1 when no country code is given."""
    cleaned = sanitize_phone(phone)
    if cleaned and not cleaned.startswith("+"):
        return f"+1{cleaned}"
    return cleaned


def is_valid_phone(phone: str) -> bool:
    return bool(E164_PATTERN.match(phone or ""))


def mask_phone_number(phone: str) -> str:
    """Keep the country prefix and last four digits, e.g. +1******7890."""
    if not phone or len(phone) < 6:
        return "****"
    return f"{phone[:2]}{'*' * (len(phone) - 6)}{phone[-4:]}"


class SmsService:
    """Send verification codes by SMS through AWS SNS."""

    def __init__(self, delivery_mode: Optional[str] = None):
        self.delivery_mode = delivery_mode or settings.SMS_DELIVERY_MODE
        self.sns_client = None

        if self.delivery_mode == "sns":
            session_kwargs = {'region_name': settings.AWS_REGION}
            if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
                session_kwargs['aws_access_key_id'] = settings.AWS_ACCESS_KEY_ID
                session_kwargs['aws_secret_access_key'] = settings.AWS_SECRET_ACCESS_KEY
            self.sns_client = boto3.client('sns', **session_kwargs)

    def send_code(self, phone: str, code: str) -> bool:
        """
        Send a 6-digit verification code.

        Returns:
            bool: True if SNS accepted the message, False otherwise
        """
        message = (
            f"Your {APP_NAME} verification code is: {code}. "
            "This code will expire in 10 minutes. Do not share this code with anyone."
        )

        if self.delivery_mode == "log":
            logger.info(f"Verification SMS prepared for {mask_phone_number(phone)} (delivery disabled)")
            return True

        try:
            response = self.sns_client.publish(
                PhoneNumber=phone,
                Message=message,
                MessageAttributes={
                    'AWS.SNS.SMS.SenderID': {'DataType': 'String', 'StringValue': settings.AWS_SNS_SENDER_ID},
                    'AWS.SNS.SMS.SMSType': {'DataType': 'String', 'StringValue': 'Transactional'},
                },
            )
            logger.info(f"Verification SMS sent to {mask_phone_number(phone)} (MessageId: {response.get('MessageId')})")
            return True

        except ClientError as e:
            logger.error(f"AWS SNS ClientError: {e.response['Error']['Code']} - {e.response['Error']['Message']}")
            return False

        except BotoCoreError as e:
            logger.error(f"AWS BotoCoreError: {str(e)}")
            return False
