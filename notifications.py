"""
Outbound email. Best effort: every failure is logged and swallowed here so a
broken mail server never fails the business operation that triggered it.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from fastapi import Request

from settings import Settings, get_settings

logger = logging.getLogger(__name__)

ROLE_FEATURES = {
    "farmer": ["List your produce", "Answer buyer inquiries", "Track your orders"],
    "buyer": ["Browse fresh produce", "Send inquiries to farmers", "Place and track orders"],
    "exporter": ["Source export-ready produce", "Manage export orders", "Track shipments"],
    "admin": ["Verify users and products", "Approve exporters", "Oversee orders"],
}


def _layout(title: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<div style="background: #4CAF50; color: white; padding: 20px; text-align: center;"><h1>{title}</h1></div>'
        f'<div style="padding: 20px; background: #f9f9f9;">{body}<p>Best regards,<br>The AgriLink Lanka Team</p></div>'
        "</div>"
    )


def _order_summary(order: dict) -> str:
    details = order.get("orderDetails") or {}
    return (
        f"<p><strong>Order Number:</strong> {order.get('orderNumber')}</p>"
        f"<p><strong>Total Amount:</strong> {details.get('currency')} {details.get('finalAmount')}</p>"
        f"<p><strong>Order Type:</strong> {order.get('orderType')}</p>"
        f"<p><strong>Status:</strong> {order.get('status')}</p>"
    )


class EmailService:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.enabled = settings.smtp_configured
        if not self.enabled:
            logger.info("SMTP_HOST not set, outbound email disabled")

    def send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.enabled:
            logger.debug(f"Email to {to} skipped (disabled): {subject}")
            return False
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.EMAIL_FROM
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))
        try:
            with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=10) as server:
                server.starttls()
                if self.settings.SMTP_USERNAME:
                    server.login(self.settings.SMTP_USERNAME, self.settings.SMTP_PASSWORD or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}")
            return False
        logger.info(f"Email sent to {to}: {subject}")
        return True

    def send_welcome_email(self, user: dict) -> bool:
        features = "".join(f"<li>{f}</li>" for f in ROLE_FEATURES.get(user.get("role"), []))
        body = (
            f"<h2>Hello {user.get('firstName')}!</h2>"
            "<p>Thank you for joining AgriLink Lanka.</p>"
            f"<p>As a {user.get('role')}, you can now:</p><ul>{features}</ul>"
            f'<p><a href="{self.settings.FRONTEND_URL}/dashboard">Access your dashboard</a></p>'
        )
        return self.send_email(user["email"], "Welcome to AgriLink Lanka!", _layout("Welcome to AgriLink Lanka!", body))

    def send_order_confirmation(self, order: dict, buyer: dict, farmer: dict) -> bool:
        body = (
            f"<h2>Hello {buyer.get('firstName')}!</h2>"
            "<p>Your order has been placed and is awaiting confirmation.</p>"
            f"{_order_summary(order)}"
            f"<h3>Farmer</h3><p>{farmer.get('firstName')} {farmer.get('lastName')} ({farmer.get('phone')})</p>"
        )
        subject = f"Order Placed - {order.get('orderNumber')}"
        return self.send_email(buyer["email"], subject, _layout(f"Order #{order.get('orderNumber')}", body))

    def send_order_status_update(self, order: dict, user: dict, new_status: str) -> bool:
        body = (
            f"<h2>Hello {user.get('firstName')}!</h2>"
            f"<p>Your order status has been updated to <strong>{new_status}</strong>.</p>"
            f"{_order_summary(order)}"
            f'<p><a href="{self.settings.FRONTEND_URL}/orders">View your orders</a></p>'
        )
        subject = f"Order Update - {order.get('orderNumber')}"
        return self.send_email(user["email"], subject, _layout("Order Status Update", body))

    def send_payment_confirmation(self, order: dict, user: dict) -> bool:
        payment = order.get("payment") or {}
        body = (
            f"<h2>Hello {user.get('firstName')}!</h2>"
            "<p>We have received your payment.</p>"
            f"{_order_summary(order)}"
            f"<p><strong>Transaction:</strong> {payment.get('transactionId')}</p>"
        )
        subject = f"Payment Confirmed - {order.get('orderNumber')}"
        return self.send_email(user["email"], subject, _layout("Payment Confirmed", body))


def get_mailer(request: Request) -> EmailService:
    mailer = getattr(request.app.state, "mailer", None)
    if mailer is None:
        mailer = EmailService(get_settings())
        request.app.state.mailer = mailer
    return mailer
