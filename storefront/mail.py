import logging
from html import escape
from typing import Dict, List, Optional, Tuple

import resend

logger = logging.getLogger(__name__)

DeliveryResult = Tuple[bool, Optional[str]]


class Mailer:
    """Sends transactional email through Resend."""

    def __init__(self, api_key: str, sender: str):
        self.api_key = (api_key or "").strip()
        self.sender = sender

    def send(
        self, recipients: List[str], subject: str, html: str, text: str = ""
    ) -> DeliveryResult:
        if not self.api_key:
            return False, "Resend API key is not configured."

        payload: Dict[str, object] = {
            "from": self.sender,
            "to": list(recipients),
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None


def build_otp_email(otp: str, expiration_minutes: int, purpose: str) -> Tuple[str, str, str]:
    if purpose == "password_reset":
        subject = "Nikola Fashion - Password reset code"
        headline = "Reset your password"
        intro = "Use the code below to choose a new password."
    else:
        subject = "Nikola Fashion - Confirm your newsletter subscription"
        headline = "Confirm your subscription"
        intro = "Use the code below to confirm your newsletter subscription."

    html = f"""<!DOCTYPE html>
<html lang="en">
  <body style="margin:0;padding:32px 16px;background:#f8f8f8;font-family:'Helvetica Neue',Arial,sans-serif;color:#111827;">
    <table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="max-width:520px;margin:0 auto;background:#ffffff;border-radius:16px;border-top:4px solid #dc2626;">
      <tr>
        <td style="padding:36px 32px;">
          <h1 style="margin:0 0 12px 0;font-size:22px;">{headline}</h1>
          <p style="margin:0 0 24px 0;font-size:15px;line-height:1.6;">{intro}
            The code is valid for {expiration_minutes} minutes.</p>
          <p style="margin:0;text-align:center;font-size:32px;letter-spacing:0.35em;font-weight:700;">{otp}</p>
          <p style="margin:28px 0 0 0;font-size:13px;color:#6b7280;">
            Didn&rsquo;t request this? You can safely ignore this email.
          </p>
        </td>
      </tr>
    </table>
  </body>
</html>"""
    text = (
        f"Your Nikola Fashion code is {otp}. "
        f"It expires in {expiration_minutes} minutes."
    )
    return subject, html, text


def build_ticket_received_email(name: str, subject: str) -> Tuple[str, str]:
    html = (
        "<h2>We received your message!</h2>"
        f"<p>Hi {escape(name)},</p>"
        "<p>Thank you for contacting Nikola. We've received your inquiry about: "
        f"<strong>{escape(subject)}</strong></p>"
        "<p>Our team will respond to you shortly.</p>"
        "<p>Best regards,<br/>Nikola Team</p>"
    )
    return "We received your message - Nikola Support", html


def build_ticket_reply_email(name: str, reply: str) -> Tuple[str, str]:
    html = (
        "<h2>New Reply to Your Support Ticket</h2>"
        f"<p>Hi {escape(name)},</p>"
        "<p>Our support team has replied to your inquiry:</p>"
        '<div style="border-left: 4px solid #ff0000; padding: 10px; margin: 10px 0;">'
        f"<p>{escape(reply)}</p>"
        "</div>"
        "<p>Best regards,<br/>Nikola Team</p>"
    )
    return "Your Nikola Support Ticket - New Reply", html


def build_broadcast_email(subject: str, message: str) -> Tuple[str, str]:
    paragraphs = "".join(
        f"<p>{escape(line)}</p>" for line in message.splitlines() if line.strip()
    )
    html = (
        f"<h2>{escape(subject)}</h2>"
        f"{paragraphs}"
        '<p style="font-size:12px;color:#6b7280;">'
        "You are receiving this because you subscribed to the Nikola newsletter.</p>"
    )
    return subject, html
