"""
AWS SES Email Service for sending verification emails.

Handles email formatting, template rendering, and AWS SES integration.
"""

import logging
from typing import Optional
from urllib.parse import urlencode
import boto3
from botocore.exceptions import ClientError, BotoCoreError
from app.core.config import settings

logger = logging.getLogger(__name__)

APP_NAME = "Naggery"


class EmailService:
    """
    Service for sending emails via AWS SES.

    In "log" delivery mode nothing leaves the process; only the fact that a
    message was produced is logged (never the link, which carries the token).
    """

    def __init__(self, delivery_mode: Optional[str] = None, base_url: Optional[str] = None):
        self.delivery_mode = delivery_mode or settings.EMAIL_DELIVERY_MODE
        self.base_url = (base_url or settings.APP_BASE_URL).rstrip("/")
        self.ses_client = None

        if self.delivery_mode == "ses":
            session_kwargs = {
                'region_name': settings.AWS_REGION,
            }

            # Add credentials if provided (otherwise uses IAM role)
            if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
                session_kwargs['aws_access_key_id'] = settings.AWS_ACCESS_KEY_ID
                session_kwargs['aws_secret_access_key'] = settings.AWS_SECRET_ACCESS_KEY

            self.ses_client = boto3.client('ses', **session_kwargs)

    def verification_url(self, token: str) -> str:
        return f"{self.base_url}/verify-email?{urlencode({'token': token})}"

    def send_verification(self, email: str, token: str, display_name: Optional[str] = None) -> bool:
        """
        Send an email verification link.

        Args:
            email: Recipient email address
            token: Verification request token (embedded in the link)
            display_name: Optional user's name for personalization

        Returns:
            bool: True if the email was handed off successfully, False otherwise
        """
        url = self.verification_url(token)
        subject = f"Verify Your Email - {APP_NAME}"
        html_body = self._build_verification_html(url, display_name)
        text_body = self._build_verification_text(url, display_name)

        if self.delivery_mode == "log":
            logger.info(f"Verification email prepared for {email} (delivery disabled)")
            return True

        try:
            response = self.ses_client.send_email(
                Source=f"{settings.AWS_SES_FROM_NAME} <{settings.AWS_SES_FROM_EMAIL}>",
                Destination={'ToAddresses': [email]},
                Message={
                    'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                    'Body': {
                        'Html': {'Data': html_body, 'Charset': 'UTF-8'},
                        'Text': {'Data': text_body, 'Charset': 'UTF-8'}
                    }
                }
            )

            message_id = response.get('MessageId')
            logger.info(f"Verification email sent to {email} (MessageId: {message_id})")
            return True

        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error']['Message']
            logger.error(f"AWS SES ClientError: {error_code} - {error_message}")

            if error_code == 'MessageRejected':
                logger.error(f"Email rejected: {error_message}")
            elif error_code == 'MailFromDomainNotVerified':
                logger.error("Sender email not verified in SES")

            return False

        except BotoCoreError as e:
            logger.error(f"AWS BotoCoreError: {str(e)}")
            return False

    def _build_verification_html(self, url: str, display_name: Optional[str] = None) -> str:
        greeting = f"Hi {display_name}," if display_name else "Hi there,"

        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Verify your email</title>
</head>
<body style="margin: 0; padding: 0; font-family: Arial, sans-serif; background-color: #f4f4f4;">
    <table role="presentation" style="width: 100%; border-collapse: collapse;">
        <tr>
            <td align="center" style="padding: 40px 0;">
                <table role="presentation" style="width: 600px; background-color: #ffffff; border-radius: 8px;">
                    <tr>
                        <td style="padding: 40px;">
                            <h1 style="margin: 0 0 20px 0; color: #333333; font-size: 26px;">Welcome to {APP_NAME}</h1>
                            <p style="color: #666666; font-size: 16px;">{greeting}</p>
                            <p style="color: #666666; font-size: 16px;">
                                Please confirm your email address to activate your journal.
                            </p>
                            <p style="text-align: center; margin: 30px 0;">
                                <a href="{url}" style="background-color: #4F46E5; color: #ffffff; padding: 14px 28px; border-radius: 6px; text-decoration: none;">
                                    Verify Email
                                </a>
                            </p>
                            <p style="color: #666666; font-size: 14px;">This link will expire in <strong>24 hours</strong>.</p>
                            <p style="color: #999999; font-size: 13px;">
                                If you didn't create a {APP_NAME} account, you can safely ignore this email.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""

    def _build_verification_text(self, url: str, display_name: Optional[str] = None) -> str:
        greeting = f"Hi {display_name}," if display_name else "Hi there,"

        return f"""{greeting}

Welcome to {APP_NAME}! Please confirm your email address to activate your journal:

{url}

This link will expire in 24 hours.

If you didn't create a {APP_NAME} account, you can safely ignore this email.
"""
