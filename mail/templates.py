"""
mail/templates.py -- Subject / HTML / text bodies for auth emails.

Plain string formatting; every interpolated value is HTML-escaped in the HTML
body. Returns (subject, html, text) tuples ready for EmailSender.send().
"""

from __future__ import annotations

from datetime import datetime, timezone
from html import escape

_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{app_name}</title>
</head>
<body style="margin:0;padding:0;background-color:#f4f4f5;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Helvetica,Arial,sans-serif;">
  <div style="max-width:560px;margin:0 auto;padding:40px 20px;color:#1f2933;">
    {content}
    <p style="margin-top:40px;font-size:12px;color:#71717a;">&copy; {year} {app_name}</p>
  </div>
</body>
</html>"""


def _layout(content: str, app_name: str) -> str:
    return _LAYOUT.format(content=content, app_name=escape(app_name), year=datetime.now(timezone.utc).year)


def _minutes_label(expiry_seconds: int) -> str:
    minutes = max(1, expiry_seconds // 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def render_otp_email(code: str, expiry_seconds: int, app_name: str = "CITSA") -> tuple[str, str, str]:
    expiry = _minutes_label(expiry_seconds)
    subject = f"{code} is your verification code"
    content = (
        "<h1 style=\"font-size:20px;\">Your verification code</h1>"
        f"<p style=\"font-size:32px;font-weight:700;letter-spacing:8px;\">{escape(code)}</p>"
        f"<p>This code expires in {expiry}. If you didn't request this, you can safely ignore this email.</p>"
    )
    text = (
        f"Your verification code is: {code}\n\n"
        f"This code expires in {expiry}. If you didn't request this, you can safely ignore this email."
    )
    return subject, _layout(content, app_name), text


def render_welcome_email(full_name: str | None, app_name: str = "CITSA") -> tuple[str, str, str]:
    first_name = (full_name or "").split(" ")[0] or "Student"
    subject = f"Welcome to {app_name}"
    content = (
        f"<h1 style=\"font-size:20px;\">Welcome, {escape(first_name)}!</h1>"
        f"<p>Your account has been created. You're now part of the {escape(app_name)} community.</p>"
        "<p>Open the app to explore events, connect with peers, and stay in the loop.</p>"
    )
    text = (
        f"Hi {first_name},\n\n"
        f"Your account has been created. You're now part of the {app_name} community.\n\n"
        "Open the app to explore events, connect with peers, and stay in the loop."
    )
    return subject, _layout(content, app_name), text
