# app/email_service.py
import logging
import os
import smtplib
from decimal import Decimal
from email.message import EmailMessage
from html import escape

import requests

logger = logging.getLogger(__name__)

BRAND = "SongStudio"


def _get_env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name, default)
    if v in ("", None):
        return default
    return v


def _send_email(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
) -> None:
    """
    Invio email, provider da env:
    - EMAIL_PROVIDER=resend  (HTTP API)
    - EMAIL_PROVIDER=smtp    (default)
    Se EMAIL_ENABLED != "1" non fa nulla (dev / test).
    """
    if _get_env("EMAIL_ENABLED", "0") != "1":
        logger.debug("Email disabled, skipping '%s' to %s", subject, to_email)
        return

    provider = (_get_env("EMAIL_PROVIDER", "smtp") or "smtp").lower().strip()

    if provider == "resend":
        api_key = _get_env("RESEND_API_KEY")
        from_email = _get_env("FROM_EMAIL") or _get_env("SMTP_FROM")
        reply_to = _get_env("REPLY_TO_EMAIL") or _get_env("SMTP_REPLY_TO")

        if not api_key or not from_email:
            raise RuntimeError("RESEND_API_KEY / FROM_EMAIL missing from environment.")

        payload: dict = {
            "from": from_email,
            "to": [to_email],
            "subject": subject,
            "text": text_body,
        }
        if html_body:
            payload["html"] = html_body
        if reply_to:
            payload["reply_to"] = reply_to

        r = requests.post(
            "https://api.resend.com/emails",
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json=payload,
            timeout=15,
        )
        if r.status_code >= 300:
            raise RuntimeError(f"Resend send failed: {r.status_code} {r.text}")
        return

    host = _get_env("SMTP_HOST")
    port = int(_get_env("SMTP_PORT", "587") or "587")
    user = _get_env("SMTP_USER")
    password = _get_env("SMTP_PASS")
    from_email = _get_env("SMTP_FROM", user)
    from_name = _get_env("SMTP_FROM_NAME", "")
    reply_to = _get_env("SMTP_REPLY_TO")
    use_tls = _get_env("SMTP_TLS", "1") == "1"

    if password:
        password = password.replace(" ", "").strip()

    if not host or not from_email:
        raise RuntimeError("SMTP_HOST / SMTP_FROM missing from environment.")

    msg = EmailMessage()
    msg["From"] = f"{from_name} <{from_email}>" if from_name else from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to

    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")

    with smtplib.SMTP(host, port, timeout=20) as server:
        server.ehlo()
        if use_tls:
            server.starttls()
            server.ehlo()
        if user and password:
            server.login(user, password)
        server.send_message(msg)


def _wrap_html(greeting: str, paragraphs: list[str], details: dict[str, str] | None = None) -> str:
    rows = ""
    if details:
        rows = "<br/>".join(f"<b>{escape(k)}:</b> {escape(v)}" for k, v in details.items())
        rows = (
            '<div style="padding:14px;border:1px solid #e5e5e5;border-radius:10px;margin:16px 0;">'
            f'<div style="font-size:14px;">{rows}</div></div>'
        )
    body = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    return f"""
    <div style="font-family:Arial,Helvetica,sans-serif;font-size:14px;line-height:1.6;color:#111;">
      <p>{escape(greeting)}</p>
      {rows}
      {body}
      <p style="margin-top:18px;color:#444;">Best regards,<br/><b>{BRAND} Team</b></p>
    </div>
    """.strip()


def _text(greeting: str, paragraphs: list[str], details: dict[str, str] | None = None) -> str:
    lines = [greeting, ""]
    for k, v in (details or {}).items():
        lines.append(f"{k}: {v}")
    if details:
        lines.append("")
    for p in paragraphs:
        lines += [p, ""]
    lines += ["Best regards,", f"{BRAND} Team"]
    return "\n".join(lines)


# =================================================
# ORDINI
# =================================================
def send_order_received_email(
    to_email: str,
    order_number: str,
    package_type: str,
    total: Decimal,
    discount: Decimal | None = None,
    customer_name: str | None = None,
) -> None:
    subject = f"{BRAND} — Order received ✅"
    greeting = f"Hello {customer_name or ''},".replace(" ,", ",")
    details = {
        "Order": order_number,
        "Package": package_type,
        "Total": f"£{total}",
        "Payment status": "PENDING",
    }
    if discount:
        details["Discount"] = f"£{discount}"
    paragraphs = [
        "We have received your custom song order.",
        "We will send you a confirmation as soon as the payment is completed.",
    ]
    _send_email(
        to_email=to_email,
        subject=subject,
        text_body=_text(greeting, paragraphs, details),
        html_body=_wrap_html(greeting, paragraphs, details),
    )


def send_payment_received_email(to_email: str, order_number: str, total: Decimal) -> None:
    subject = f"{BRAND} — Payment received 🎵"
    greeting = "Hello,"
    details = {"Order": order_number, "Amount paid": f"£{total}"}
    paragraphs = [
        "Thank you! Your payment has been confirmed and your song is now in our production queue.",
        "You will be notified when your lyrics are ready for review.",
    ]
    _send_email(
        to_email=to_email,
        subject=subject,
        text_body=_text(greeting, paragraphs, details),
        html_body=_wrap_html(greeting, paragraphs, details),
    )


def send_payment_failed_email(to_email: str, order_number: str) -> None:
    subject = f"{BRAND} — Payment failed"
    greeting = "Hello,"
    details = {"Order": order_number}
    paragraphs = [
        "Unfortunately your payment could not be completed.",
        "You can retry the payment from your dashboard without re-entering your order.",
    ]
    _send_email(
        to_email=to_email,
        subject=subject,
        text_body=_text(greeting, paragraphs, details),
        html_body=_wrap_html(greeting, paragraphs, details),
    )


def send_dispute_alert_email(order_number: str, dispute_id: str | None, reason: str | None) -> None:
    admin_email = _get_env("ADMIN_ALERT_EMAIL")
    if not admin_email:
        logger.warning("ADMIN_ALERT_EMAIL not set, dispute on %s not notified", order_number)
        return
    details = {"Order": order_number, "Dispute": dispute_id or "-", "Reason": reason or "-"}
    paragraphs = ["A charge dispute has been opened. Please review it in the Stripe dashboard."]
    _send_email(
        to_email=admin_email,
        subject=f"{BRAND} — Charge dispute on {order_number}",
        text_body=_text("Hello,", paragraphs, details),
        html_body=_wrap_html("Hello,", paragraphs, details),
    )


# =================================================
# AFFILIATI
# =================================================
def send_affiliate_approved_email(
    to_email: str,
    affiliate_code: str,
    commission_rate: Decimal,
    name: str | None = None,
) -> None:
    greeting = f"Hello {name or 'Affiliate'},"
    details = {"Your affiliate code": affiliate_code, "Commission": f"{commission_rate}%"}
    paragraphs = [
        f"Your application to the {BRAND} affiliate program has been approved.",
        "Share your code or tracking link: you earn a commission on every paid order you refer.",
    ]
    _send_email(
        to_email=to_email,
        subject=f"{BRAND} — Affiliate application approved ✅",
        text_body=_text(greeting, paragraphs, details),
        html_body=_wrap_html(greeting, paragraphs, details),
    )
