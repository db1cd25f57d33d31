"""
auth/mailer.py -- Outgoing email via the Resend HTTP API.

Only the password reset flow sends mail. Delivery is best-effort from the
caller's point of view: send_email() returns False on any failure and logs the
cause, it never raises into a request handler.

When no from-address is configured (local dev, CI) the message is written to
the log instead of being sent, so reset links are still reachable.
"""

import logging
from html import escape as html_escape

import requests

logger = logging.getLogger("epicflare.mailer")

# Shared session for connection pooling. A mail API never needs to redirect.
_session = requests.Session()
_session.max_redirects = 3


class ResendMailer:
    def __init__(self, api_base_url: str, api_key: str, from_email: str) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.api_key = api_key
        self.from_email = from_email.strip()

    def send_email(self, to: str, subject: str, html: str) -> bool:
        """Send one HTML email. Returns True when Resend accepted it."""
        if not self.from_email:
            logger.warning("resend-from-email-missing to=%s subject=%r body=%s", to, subject, html)
            return False
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = _session.post(
                f"{self.api_base_url}/emails",
                json={"from": self.from_email, "to": [to], "subject": subject, "html": html},
                headers=headers,
                timeout=10,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Resend email delivery failed: %s", e)
            return False
        return True


RESET_EMAIL_SUBJECT = "Reset your epicflare password"


def build_reset_email(reset_url: str) -> tuple[str, str]:
    """Return (subject, html) for a password reset message."""
    url = html_escape(reset_url, quote=True)
    body = f"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>Password reset</title>
  </head>
  <body>
    <p>We received a request to reset your epicflare password.</p>
    <p><a href="{url}">Reset your password</a></p>
    <p>If you did not request a reset, you can safely ignore this email.</p>
  </body>
</html>"""
    return RESET_EMAIL_SUBJECT, body
