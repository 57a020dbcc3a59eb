from __future__ import annotations

import smtplib
import ssl
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from lexgate.config import EmailProvider, Settings
from lexgate.logging import get_logger, mask_email
from lexgate.service.errors import EmailDeliveryError

logger = get_logger(__name__)


class EmailSender(Protocol):
    """Provider-agnostic outbound email. Blocking; call via ``asyncio.to_thread``."""

    def send(self, to: str, subject: str, html_body: str) -> None: ...


class LogEmailSender:
    """Dev-mode sender: logs a redacted notice instead of sending.

    With ``record=True`` messages are also kept in ``sent`` so tests can read
    the delivered codes.
    """

    def __init__(self, *, record: bool = False) -> None:
        self.record = record
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, html_body: str) -> None:
        if self.record:
            self.sent.append((to, subject, html_body))
        logger.info("email_dev_mode", to=mask_email(to), subject=subject)


class SmtpEmailSender:
    """SMTP transport with STARTTLS or implicit SSL."""

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Lexgate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    def _build_message(self, to: str, subject: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(self, to: str, subject: str, html_body: str) -> None:
        msg = self._build_message(to, subject, html_body)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=mask_email(to),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("smtp authentication failed") from e
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("smtp connection failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(to), error=str(e))
            raise EmailDeliveryError("recipient refused") from e
        except smtplib.SMTPSenderRefused as e:
            logger.error("email_sender_refused", sender=self.from_email, error=str(e))
            raise EmailDeliveryError("sender refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("smtp error") from e
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("smtp tls error") from e
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_network_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("smtp network error") from e
        logger.info("email_sent", to=mask_email(to), subject=subject, provider="smtp")


class ResendEmailSender:
    """Resend HTTP API transport."""

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        from_name: str = "Lexgate",
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.api_url = api_url
        self.timeout = timeout
        self._client = client

    def send(self, to: str, subject: str, html_body: str) -> None:
        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to],
            "subject": subject,
            "html": html_body,
            # Stops mail clients collapsing repeated code emails into one thread
            "headers": {"X-Entity-Ref-ID": uuid.uuid4().hex},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            if self._client is not None:
                resp = self._client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(self.api_url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_resend_rejected",
                to=mask_email(to),
                status_code=e.response.status_code,
                details=e.response.text[:500],
            )
            raise EmailDeliveryError(f"resend rejected message ({e.response.status_code})") from e
        except httpx.HTTPError as e:
            logger.error(
                "email_resend_failed",
                to=mask_email(to),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("resend request failed") from e
        logger.info("email_sent", to=mask_email(to), subject=subject, provider="resend")


def build_email_sender(settings: Settings, *, allow_log_fallback: bool = False) -> EmailSender:
    """Pick the transport from settings.

    An unconfigured transport is a startup error unless ``allow_log_fallback``
    is set, in which case codes are only logged.
    """
    if settings.email_provider == EmailProvider.RESEND:
        if settings.resend_api_key and settings.email_from_address:
            return ResendEmailSender(
                api_key=settings.resend_api_key,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
                api_url=settings.resend_api_url,
            )
    elif settings.smtp_host and (settings.email_from_address or settings.smtp_user):
        return SmtpEmailSender(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    if not allow_log_fallback:
        logger.error("email_not_configured", provider=settings.email_provider.value)
        raise ValueError(
            f"email transport {settings.email_provider.value!r} is not configured"
        )
    logger.warning("email_not_configured", provider=settings.email_provider.value)
    return LogEmailSender()


_SUBJECTS = {
    "register": "Lexgate - your registration code",
    "reset_password": "Lexgate - your password reset code",
    "login": "Lexgate - your sign-in code",
}


def verification_subject(purpose: str) -> str:
    return _SUBJECTS.get(purpose, "Lexgate - your verification code")


def verification_code_template(code: str, expire_minutes: int) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; background: #f4f7f6; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; background: #ffffff; }}
        .code {{ font-family: 'Courier New', Courier, monospace; font-size: 32px; font-weight: 700; letter-spacing: 4px; color: #0056b3; text-align: center; padding: 24px; background: #f0f7ff; border-left: 4px solid #0056b3; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Verify your email</h1>
        <p>Enter the code below on the verification page to continue:</p>
        <div class="code">{code}</div>
        <p>This code expires in <strong>{expire_minutes} minutes</strong>.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>Lexgate</p>
            <p>This message was sent automatically, please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""
