"""Email notification sent to the submitter when a scan completes."""

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

from sastscan.core.errors import ScanPipelineError

if TYPE_CHECKING:
    from sastscan.core.config import Settings

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SEC = 30


class NotificationError(ScanPipelineError):
    """Raised when the completion email cannot be sent (including missing SMTP configuration)."""

    non_retryable = True


def render_scan_complete_email(repository_name: str, results_url: str, finding_count: int) -> str:
    """HTML body of the scan-completion email."""
    name = html.escape(repository_name)
    url = html.escape(results_url, quote=True)
    if finding_count > 0:
        summary = (
            f"We found <strong>{finding_count} potential security issues</strong> "
            "that you should review."
        )
    else:
        summary = "Good news! No security issues were found in your repository."
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Scan Results Available</title>
    <style>
        body {{ font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
        .container {{ background-color: #ffffff; border-radius: 8px; box-shadow: 0 2px 10px rgba(0, 0, 0, 0.1); padding: 30px; }}
        h1 {{ color: #2563eb; font-size: 24px; text-align: center; }}
        .button {{ display: inline-block; background-color: #2563eb; color: white; text-decoration: none; padding: 12px 25px; border-radius: 6px; font-weight: 600; }}
        .footer {{ margin-top: 30px; text-align: center; font-size: 14px; color: #6b7280; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Security Scan Results Available</h1>
        <p>Hello,</p>
        <p>We've completed the security scan for your repository <strong>{name}</strong>.</p>
        <p>{summary}</p>
        <p>View the detailed results on your dashboard:</p>
        <p style="text-align: center;"><a href="{url}" class="button">View Scan Results</a></p>
        <div class="footer">
            <p>This is an automated message, please do not reply to this email.</p>
        </div>
    </div>
</body>
</html>
"""


class Notifier:
    """Sends scan-completion emails over SMTP with STARTTLS."""

    def __init__(self, settings: "Settings") -> None:
        self._server = settings.SMTP_SERVER
        self._port = settings.SMTP_PORT
        self._username = settings.SMTP_USERNAME
        self._password = (
            settings.SMTP_PASSWORD.get_secret_value() if settings.SMTP_PASSWORD is not None else None
        )
        self._from_email = settings.FROM_EMAIL
        self._dashboard_url = settings.DASHBOARD_URL.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return all((self._server, self._username, self._password, self._from_email))

    def results_url(self, repository_id: str) -> str:
        return f"{self._dashboard_url}/dashboard/repos/{repository_id}"

    def notify_scan_complete(
        self,
        email: str,
        repository_name: str,
        repository_id: str,
        finding_count: int,
    ) -> None:
        """Send the completion email. Raises NotificationError on any failure."""
        if not self.is_configured:
            raise NotificationError("email service is not properly configured")

        subject = f"Security Scan Results Available - {repository_name}"
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self._from_email
        message["To"] = email
        message.attach(
            MIMEText(
                render_scan_complete_email(
                    repository_name, self.results_url(repository_id), finding_count
                ),
                "html",
                "utf-8",
            )
        )

        try:
            with smtplib.SMTP(self._server, self._port, timeout=SMTP_TIMEOUT_SEC) as server:
                server.starttls()
                server.login(self._username, self._password)
                server.sendmail(self._from_email, [email], message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", email, e)
            raise NotificationError(f"Failed to send email to {email}", cause=e) from e

        logger.info(
            "Scan completion email sent successfully",
            extra={"to": email, "repository": repository_name},
        )
