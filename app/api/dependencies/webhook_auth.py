"""
אימות חתימת webhook נכנס.

ספקים חיצוניים (מערכת התשלומים, ה-CRM ו-Meta) חותמים על גוף הבקשה הגולמי
ב-HMAC-SHA256 עם סוד משותף, ושולחים את התוצאה בכותרת בפורמט
``sha256=<hex>``.

שימוש:
    body = await request.body()
    require_signature(
        body,
        request.headers.get("X-Signature"),
        settings.TRANSACTION_WEBHOOK_SECRET,
        source="transaction",
    )
"""
import hashlib
import hmac

from app.core.exceptions import SignatureException
from app.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """ערך הכותרת הצפוי עבור גוף וסוד נתונים"""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature_header: str | None, secret: str) -> bool:
    """השוואה בזמן קבוע בין הכותרת לחתימה המחושבת"""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(signature_header.encode(), expected.encode())


def require_signature(
    body: bytes,
    signature_header: str | None,
    secret: str,
    source: str,
) -> None:
    """
    אימות חתימה למקור webhook.

    - אם הסוד לא מוגדר - מדלג (אזהרה כבר נרשמת בטעינת ההגדרות).
    - אם הכותרת חסרה או לא תואמת - SignatureException (401).
    """
    if not secret:
        return

    if not verify_signature(body, signature_header, secret):
        logger.warning(
            "בקשת webhook עם חתימה שגויה",
            extra_data={"source": source, "has_header": bool(signature_header)},
        )
        raise SignatureException(source)
