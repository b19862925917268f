"""
Email Templates - תבניות HTML להודעות ללקוחות, לסוחרים ולמנהלים.

כל ערך שמגיע מהמשתמש עובר escape לפני שהוא נכנס ל-HTML.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.core.config import settings
from app.core.validation import TextSanitizer
from app.db.database import utcnow

_esc = TextSanitizer.sanitize_for_html

STATUS_COLORS = {
    "open": "#3498db",
    "in_progress": "#f39c12",
    "resolved": "#27ae60",
    "closed": "#95a5a6",
    "initiated": "#3498db",
    "pending": "#f39c12",
    "processing": "#e67e22",
    "success": "#27ae60",
    "failed": "#e74c3c",
    "refunded": "#9b59b6",
    "cancelled": "#95a5a6",
}

_TRANSACTION_STATUS_MESSAGES = {
    "initiated": "Your transaction has been initiated and is being processed.",
    "pending": "Your transaction is pending verification.",
    "processing": "Your transaction is currently being processed.",
    "success": "Your transaction has been completed successfully!",
    "failed": "Unfortunately, your transaction could not be processed.",
    "refunded": "Your transaction has been refunded.",
    "cancelled": "Your transaction has been cancelled.",
}


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    html: str


def _layout(title: str, body: str, title_color: str = "#2c3e50", footer: str = "") -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<div style="background-color: #f8f9fa; padding: 20px; border-radius: 8px;">'
        f'<h2 style="color: {title_color}; margin-bottom: 20px;">{title}</h2>'
        f"{body}"
        '<hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;">'
        f'<p style="color: #666; font-size: 12px;">{footer}</p>'
        "</div></div>"
    )


def customer_name(email: str) -> str:
    """שם תצוגה פשוט מתוך כתובת המייל"""
    return email.split("@", 1)[0]


def tracking_url(ticket_number: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/track?ticket={ticket_number}"


def ticket_acknowledgment(ticket_number: str, customer_email: str) -> EmailTemplate:
    link = tracking_url(ticket_number)
    body = (
        f"<p>Dear {_esc(customer_name(customer_email))},</p>"
        "<p>Thank you for contacting our support team. We have received your "
        "complaint and created a ticket for you:</p>"
        '<div style="background-color: #fff; padding: 15px; border-left: 4px solid #3498db; margin: 20px 0;">'
        f"<strong>Ticket Number: #{_esc(ticket_number)}</strong></div>"
        "<p>Our team is now reviewing your case and will provide updates as we "
        "progress. You can track your complaint status anytime:</p>"
        '<div style="text-align: center; margin: 25px 0;">'
        f'<a href="{_esc(link)}" style="background-color: #25d366; color: white; padding: 12px 24px; '
        'text-decoration: none; border-radius: 5px; display: inline-block;">Track your complaint</a>'
        "</div>"
        "<p>We appreciate your patience and will work diligently to resolve your issue.</p>"
    )
    return EmailTemplate(
        subject=f"Ticket #{ticket_number} - We've received your complaint",
        html=_layout(
            "Complaint Acknowledgment",
            body,
            footer="This is an automated message. Please do not reply to this email.",
        ),
    )


def ticket_closure(ticket_number: str, customer_email: str, resolution: str) -> EmailTemplate:
    body = (
        f"<p>Dear {_esc(customer_name(customer_email))},</p>"
        "<p>We're pleased to inform you that your complaint has been resolved:</p>"
        '<div style="background-color: #fff; padding: 15px; border-left: 4px solid #27ae60; margin: 20px 0;">'
        f"<strong>Ticket Number: #{_esc(ticket_number)}</strong><br>"
        '<strong>Status:</strong> <span style="color: #27ae60;">RESOLVED</span></div>'
        '<div style="background-color: #d4edda; padding: 15px; border-radius: 5px; margin: 20px 0;">'
        '<h4 style="margin-top: 0; color: #155724;">Resolution Details:</h4>'
        f'<p style="margin-bottom: 0; color: #155724;">{_esc(resolution)}</p></div>'
        "<p>If you're satisfied with the resolution, no further action is required. "
        "If you have any additional concerns, please don't hesitate to contact us.</p>"
    )
    return EmailTemplate(
        subject=f"Ticket #{ticket_number} - Resolved",
        html=_layout(
            "Ticket Resolved",
            body,
            title_color="#27ae60",
            footer=(
                "Resolved tickets are closed automatically after 24 hours. "
                "If you need further help, please create a new support request."
            ),
        ),
    )


def transaction_status_update(
    transaction_id: str,
    status: str,
    amount: float,
    currency: str = "USD",
    updated_at: datetime | None = None,
) -> EmailTemplate:
    color = STATUS_COLORS.get(status, "#666")
    message = _TRANSACTION_STATUS_MESSAGES.get(status, "Transaction status has been updated.")
    updated = (updated_at or utcnow()).strftime("%Y-%m-%d %H:%M UTC")
    body = (
        '<div style="background-color: #fff; padding: 20px; border-radius: 5px; margin: 20px 0;">'
        '<h3 style="margin-top: 0;">Transaction Details</h3>'
        f"<p><strong>Transaction ID:</strong> {_esc(transaction_id)}</p>"
        f"<p><strong>Amount:</strong> {_esc(currency)} {amount:.2f}</p>"
        f'<p><strong>Status:</strong> <span style="color: {color}; text-transform: uppercase; '
        f'font-weight: bold;">{_esc(status)}</span></p>'
        f"<p><strong>Updated:</strong> {updated}</p></div>"
        f'<div style="background-color: {color}; color: white; padding: 15px; border-radius: 5px; margin: 20px 0;">'
        f'<p style="margin: 0;">{message}</p></div>'
    )
    if status == "failed":
        body += (
            '<div style="background-color: #ffeaa7; padding: 15px; border-radius: 5px; margin: 20px 0;">'
            '<p style="margin: 0; color: #2d3436;"><strong>Next Steps:</strong> Please contact our '
            "support team if you need assistance or want to retry the transaction.</p></div>"
        )
    return EmailTemplate(
        subject=f"Transaction {transaction_id} - Status: {status.upper()}",
        html=_layout(
            "Transaction Status Update",
            body,
            footer="This is an automated transaction update. If you have any questions, please contact our support team.",
        ),
    )


def merchant_digest(merchant_email: str, updates: list[dict[str, Any]]) -> EmailTemplate:
    """updates: [{type, id, status, updated_at}] מהחדש לישן"""
    rows = "".join(
        "<tr>"
        f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{_esc(u["type"])}</td>'
        f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{_esc(u["id"])}</td>'
        f'<td style="padding: 8px; border-bottom: 1px solid #eee;">'
        f'<span style="color: {STATUS_COLORS.get(u["status"], "#666")}; font-weight: bold;">'
        f'{_esc(u["status"].upper())}</span></td>'
        f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{_esc(u["updated_at"])}</td>'
        "</tr>"
        for u in updates
    )
    body = (
        f"<p>Dear {_esc(customer_name(merchant_email))},</p>"
        "<p>Here are the latest updates for your transactions and tickets:</p>"
        '<table style="width: 100%; border-collapse: collapse; margin: 20px 0; background-color: #fff;">'
        '<thead><tr style="background-color: #34495e; color: white;">'
        '<th style="padding: 12px; text-align: left;">Type</th>'
        '<th style="padding: 12px; text-align: left;">ID</th>'
        '<th style="padding: 12px; text-align: left;">Status</th>'
        '<th style="padding: 12px; text-align: left;">Updated</th>'
        f"</tr></thead><tbody>{rows}</tbody></table>"
    )
    return EmailTemplate(
        subject=f"Merchant Update - {len(updates)} new status changes",
        html=_layout(
            "Merchant Status Updates",
            body,
            footer="This is an automated merchant notification.",
        ),
    )


def daily_report(report: dict[str, Any]) -> EmailTemplate:
    tickets = report["tickets"]
    transactions = report["transactions"]

    def _rows(data: dict[str, Any]) -> str:
        return "".join(
            f'<tr><td style="padding: 6px 12px;">{_esc(key.replace("_", " ").title())}</td>'
            f'<td style="padding: 6px 12px; font-weight: bold;">{_esc(value)}</td></tr>'
            for key, value in data.items()
        )

    body = (
        f"<p>Summary for <strong>{_esc(report['date'])}</strong>.</p>"
        "<h3>Tickets</h3>"
        f'<table style="background-color: #fff; border-collapse: collapse;">{_rows(tickets)}</table>'
        "<h3>Transactions</h3>"
        f'<table style="background-color: #fff; border-collapse: collapse;">{_rows(transactions)}</table>'
    )
    return EmailTemplate(
        subject=f"Daily Support Report - {report['date']}",
        html=_layout("Daily Report", body, footer="Generated automatically by the support desk scheduler."),
    )
