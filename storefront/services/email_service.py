import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
import logging

from fastapi import BackgroundTasks

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    """Outbound email queued for delivery."""
    to_email: str
    subject: str
    html_content: str
    text_content: Optional[str] = None


class EmailService:
    """Email service for sending transactional emails via SMTP."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Storefront"
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email over SMTP.

        Args:
            to_email: Recipient email address
            subject: Email subject
            html_content: HTML body of the email
            text_content: Plain text body (optional fallback)

        Returns:
            True if email sent successfully, False otherwise
        """
        if not self.smtp_user or not self.smtp_password:
            logger.warning("Email not configured. SMTP credentials missing.")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            # Connect and send with timeout
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info(f"Email sent successfully to {mask_email(to_email)}")
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP Authentication failed. Check email credentials.")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return False
        except OSError as e:
            logger.error(f"Network error sending email: {e}")
            return False

    def send_message(self, message: EmailMessage) -> bool:
        return self.send_email(
            message.to_email,
            message.subject,
            message.html_content,
            message.text_content,
        )


class BackgroundMailer:
    """
    Queues emails on FastAPI background tasks so they are sent after the
    response, outside the request's database transaction.
    """

    def __init__(self, background_tasks: BackgroundTasks, email_service: EmailService):
        self.background_tasks = background_tasks
        self.email_service = email_service

    def queue_email(self, message: EmailMessage) -> None:
        self.background_tasks.add_task(self.email_service.send_message, message)


def mask_email(email: str) -> str:
    """Mask the local part of an email for log output."""
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:2]}***@{domain}"


def build_order_lookup_code_email(
    to_email: str,
    code: str,
    action_url: str,
    expiry_minutes: int = 10,
) -> EmailMessage:
    """Build the verification code email for guest order lookup."""
    subject = "Your verification code to view your orders"

    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
    </head>
    <body style="font-family: 'Segoe UI', Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; background: #f5f5f5;">
        <div style="background: #1a56db; padding: 24px; text-align: center; border-radius: 10px 10px 0 0;">
            <h1 style="color: white; margin: 0; font-size: 22px;">View Your Orders</h1>
        </div>
        <div style="background: white; padding: 30px; border-radius: 0 0 10px 10px;">
            <p>Hello,</p>
            <p>Use the one-time code below to securely view the orders placed with <strong>{to_email}</strong>.</p>
            <div style="background: #e5e7eb; padding: 16px; border-radius: 6px; text-align: center; font-size: 28px; letter-spacing: 6px; font-family: monospace;">
                {code}
            </div>
            <p>This code is valid for <strong>{expiry_minutes} minutes</strong> and can be used once.</p>
            <p style="text-align: center;">
                <a href="{action_url}" style="display: inline-block; padding: 12px 30px; background: #1a56db; color: white; text-decoration: none; border-radius: 5px;">View My Orders</a>
            </p>
            <p style="color: #666; font-size: 13px;">Never share this code. If you did not request it, you can ignore this email.</p>
        </div>
        <p style="text-align: center; color: #999; font-size: 12px;">This is an automated message. Please do not reply.</p>
    </body>
    </html>
    """

    text_content = f"""
    View Your Orders

    Your verification code is: {code}

    It is valid for {expiry_minutes} minutes and can be used once.
    Enter it at {action_url}

    If you did not request this code, you can ignore this email.
    """

    return EmailMessage(
        to_email=to_email,
        subject=subject,
        html_content=html_content,
        text_content=text_content,
    )


def get_email_service() -> EmailService:
    """Get configured email service instance."""
    from storefront.config import settings

    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
    )
