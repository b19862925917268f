"""
תבניות הודעות WhatsApp (HTML פשוט - הספק ממיר ל-WhatsApp markdown).
"""
from app.core.config import settings
from app.core.validation import TextSanitizer
from app.db.database import utcnow

_esc = TextSanitizer.sanitize_for_html

_TICKET_STATUS = {
    "open": ("🆕", "Your complaint has been received and is open for review."),
    "in_progress": ("🔄", "We are actively working on your complaint."),
    "resolved": ("✅", "Great news! Your complaint has been resolved."),
    "closed": ("📋", "Your complaint has been closed."),
}

_TRANSACTION_STATUS = {
    "initiated": ("🚀", "Your transaction has been initiated."),
    "pending": ("⏳", "Your transaction is pending verification."),
    "processing": ("🔄", "Your transaction is being processed."),
    "success": ("✅", "Transaction completed successfully!"),
    "failed": ("❌", "Transaction could not be processed."),
    "refunded": ("💰", "Your transaction has been refunded."),
    "cancelled": ("❌", "Transaction has been cancelled."),
}


def _now() -> str:
    return utcnow().strftime("%Y-%m-%d %H:%M UTC")


def tracking_link(ticket_number: str, url: str) -> str:
    return (
        f"🎫 Track your complaint <b>#{_esc(ticket_number)}</b> status:\n\n{url}\n\n"
        "You can check your complaint status anytime using this link. "
        "We'll also send you updates here on WhatsApp as we progress."
    )


def ticket_status_update(ticket_number: str, status: str, details: str | None = None) -> str:
    emoji, text = _TICKET_STATUS.get(status, ("📝", f"Status updated to: {status}"))
    message = f"{emoji} <b>Complaint Update #{_esc(ticket_number)}</b>\n\n{text}"
    if details:
        message += f"\n\n<b>Details:</b> {_esc(details)}"
    message += f"\n\n<b>Updated:</b> {_now()}\n\nNeed help? Reply to this message."
    return message


def transaction_update(transaction_id: str, status: str, amount: float | None, currency: str) -> str:
    emoji, text = _TRANSACTION_STATUS.get(status, ("💳", f"Transaction status: {status}"))
    message = (
        f"{emoji} <b>Transaction Update</b>\n\n"
        f"<b>ID:</b> {_esc(transaction_id)}\n"
        f"<b>Status:</b> {status.upper()}\n"
    )
    if amount is not None:
        message += f"<b>Amount:</b> {_esc(currency)} {amount:.2f}\n"
    message += f"<b>Updated:</b> {_now()}\n\n{text}"
    if status == "failed":
        message += "\n\n💡 <b>Next Steps:</b> Contact support if you need assistance or want to retry."
    elif status == "success":
        message += "\n\n🎉 Thank you for your business!"
    return message


def tracking_help() -> str:
    return (
        "🔍 <b>Complaint Tracking Help</b>\n\n"
        "To track your complaint status, send us your ticket number in this format:\n"
        "<b>#TK1234567890</b>\n\n"
        "Or visit our tracking page:\n"
        f"{settings.FRONTEND_URL.rstrip('/')}/track\n\n"
        "We'll provide you with the latest status and updates!"
    )
