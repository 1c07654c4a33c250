"""Completion email: rendering and SMTP delivery (SMTP is mocked)."""

import smtplib
import unittest
from unittest.mock import MagicMock, patch

from sastscan.core.config import Settings
from sastscan.services.notifier import NotificationError, Notifier, render_scan_complete_email


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "SMTP_SERVER": "smtp.example.com",
        "SMTP_PORT": 2525,
        "SMTP_USERNAME": "mailer",
        "SMTP_PASSWORD": "pw",
        "FROM_EMAIL": "scans@example.com",
        "DASHBOARD_URL": "https://dash.example.com/",
    }
    values.update(overrides)
    return Settings(**values)


class TestRenderEmail(unittest.TestCase):
    def test_findings_summary(self) -> None:
        body = render_scan_complete_email("octo/hello", "https://dash/x", 3)
        self.assertIn("3 potential security issues", body)
        self.assertIn("octo/hello", body)
        self.assertIn('href="https://dash/x"', body)

    def test_no_findings_summary(self) -> None:
        body = render_scan_complete_email("octo/hello", "https://dash/x", 0)
        self.assertIn("No security issues were found", body)

    def test_repository_name_escaped(self) -> None:
        body = render_scan_complete_email("<script>alert(1)</script>", "https://dash/x", 0)
        self.assertNotIn("<script>", body)
        self.assertIn("&lt;script&gt;", body)


class TestNotifier(unittest.TestCase):
    def test_results_url(self) -> None:
        self.assertEqual(
            Notifier(_settings()).results_url("repo-1"),
            "https://dash.example.com/dashboard/repos/repo-1",
        )

    @patch("sastscan.services.notifier.smtplib.SMTP")
    def test_sends_over_starttls(self, mock_smtp: MagicMock) -> None:
        server = mock_smtp.return_value.__enter__.return_value

        Notifier(_settings()).notify_scan_complete("dev@example.com", "octo/hello", "repo-1", 2)

        mock_smtp.assert_called_once_with("smtp.example.com", 2525, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        from_addr, to_addrs, raw = server.sendmail.call_args.args
        self.assertEqual(from_addr, "scans@example.com")
        self.assertEqual(to_addrs, ["dev@example.com"])
        self.assertIn("Subject: Security Scan Results Available - octo/hello", raw)

    @patch("sastscan.services.notifier.smtplib.SMTP")
    def test_unconfigured_raises_without_connecting(self, mock_smtp: MagicMock) -> None:
        notifier = Notifier(_settings(SMTP_SERVER=None))

        self.assertFalse(notifier.is_configured)
        with self.assertRaises(NotificationError) as ctx:
            notifier.notify_scan_complete("dev@example.com", "octo/hello", "repo-1", 0)
        self.assertIn("not properly configured", ctx.exception.message)
        mock_smtp.assert_not_called()

    @patch("sastscan.services.notifier.smtplib.SMTP")
    def test_smtp_failure_raises(self, mock_smtp: MagicMock) -> None:
        server = mock_smtp.return_value.__enter__.return_value
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        with self.assertRaises(NotificationError) as ctx:
            Notifier(_settings()).notify_scan_complete("dev@example.com", "octo/hello", "repo-1", 1)
        self.assertTrue(ctx.exception.non_retryable)

    @patch("sastscan.services.notifier.smtplib.SMTP")
    def test_connection_failure_raises(self, mock_smtp: MagicMock) -> None:
        mock_smtp.side_effect = ConnectionRefusedError("refused")

        with self.assertRaises(NotificationError):
            Notifier(_settings()).notify_scan_complete("dev@example.com", "octo/hello", "repo-1", 1)
