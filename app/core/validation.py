"""
Input Validation Utilities

ולידציה ונרמול של קלטים:
- כתובות אימייל
- מספרי טלפון (פורמט ישראלי / E.164) לשליחת WhatsApp
- ניקוי טקסט חופשי לפני שמירה
- המרת HTML לפורמט WhatsApp ולטקסט פשוט
"""
import re
import html


class ValidationPatterns:
    """Regex patterns for validation"""

    # Israeli phone numbers: 05X-XXXXXXX or +972-5X-XXXXXXX
    PHONE_ISRAEL = re.compile(
        r"^(?:"
        r"(?:\+972|972)[-\s]?(?:[23489]|5[0-9])[-\s]?\d{3}[-\s]?\d{4}|"
        r"0(?:[23489]|5[0-9])[-\s]?\d{3}[-\s]?\d{4}"
        r")$"
    )

    # International phone (E.164 format), with or without the leading +
    PHONE_INTERNATIONAL = re.compile(r"^\+?[1-9]\d{6,14}$")

    # מספיק לזיהוי כתובת סבירה - אימות אמיתי הוא שליחה בפועל
    EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    CURRENCY = re.compile(r"^[A-Za-z]{3}$")


class EmailValidator:
    """Email address validation and normalization"""

    MAX_LENGTH = 255

    @staticmethod
    def validate(email: str) -> bool:
        if not email or len(email) > EmailValidator.MAX_LENGTH:
            return False
        return bool(ValidationPatterns.EMAIL.match(email.strip()))

    @staticmethod
    def normalize(email: str) -> str:
        return email.strip().lower()


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str, allow_international: bool = True) -> bool:
        """
        Validate phone number format.

        Args:
            phone: Phone number to validate
            allow_international: Allow international format

        Returns:
            True if valid, False otherwise
        """
        if not phone:
            return False

        cleaned = re.sub(r"[\s\-()]", "", phone)

        if ValidationPatterns.PHONE_ISRAEL.match(cleaned):
            return True

        if allow_international and ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned):
            return True

        return False

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to E.164 format.
        Converts Israeli numbers to +972 format.
        """
        cleaned = re.sub(r"[^\d+]", "", phone)

        if cleaned.startswith("0"):
            cleaned = "+972" + cleaned[1:]
        elif not cleaned.startswith("+"):
            cleaned = "+" + cleaned

        return cleaned


class TextSanitizer:
    """Text sanitization for storage"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Trim, cap length, and strip null bytes / control characters.

        לא מבצע HTML escape - זה נעשה בזמן רינדור התבנית (sanitize_for_html).
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = "".join(
            char for char in sanitized
            if char >= " " or char in "\n\r\t"
        )
        return re.sub(r" +", " ", sanitized)

    @staticmethod
    def sanitize_for_html(text) -> str:
        if text is None:
            return ""
        return html.escape(str(text))


# Pydantic field validators for reuse
def email_validator(v: str | None) -> str | None:
    """Pydantic field validator for email addresses"""
    if v is None:
        return None
    if not EmailValidator.validate(v):
        raise ValueError("Invalid email address")
    return EmailValidator.normalize(v)


def currency_validator(v: str | None) -> str | None:
    if v is None:
        return None
    if not ValidationPatterns.CURRENCY.match(v):
        raise ValueError("Currency must be a 3-letter ISO code")
    return v.upper()


def convert_html_to_whatsapp(text: str) -> str:
    """
    ממיר תגי HTML לפורמט וואטסאפ.

    - Bold: *text* (במקום <b>text</b>)
    - Italic: _text_ (במקום <i>text</i>)
    - Strikethrough: ~text~ (במקום <s>text</s>)
    - Monospace: `text` (במקום <code>text</code>)
    """
    if not text:
        return ""

    result = re.sub(r"<(b|strong)>(.*?)</\1>", r"*\2*", text, flags=re.DOTALL)
    result = re.sub(r"<(i|em)>(.*?)</\1>", r"_\2_", result, flags=re.DOTALL)
    result = re.sub(r"<(s|strike|del)>(.*?)</\1>", r"~\2~", result, flags=re.DOTALL)
    result = re.sub(r"<code>(.*?)</code>", r"`\1`", result, flags=re.DOTALL)
    result = re.sub(r"<pre>(.*?)</pre>", r"```\1```", result, flags=re.DOTALL)

    # תגים שלא נתמכים (<a>, <br> וכו')
    result = re.sub(r"<br\s*/?>", "\n", result, flags=re.IGNORECASE)
    result = re.sub(r"<[^>]+>", "", result)

    return html.unescape(result)


def html_to_text(value: str) -> str:
    """גרסת טקסט פשוט של גוף מייל HTML (חלק ה-text של ההודעה)"""
    if not value:
        return ""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", " ", value, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()
