"""
ספק WhatsApp מדומה - בשימוש כשאין פרטי Cloud API.

ההודעה לא נשלחת; הקורא רושם את הניסיון כמוצלח עם סימון simulated.
"""
from __future__ import annotations

from typing import Optional

from app.core.logging import get_logger, mask_phone
from app.core.validation import PhoneNumberValidator, convert_html_to_whatsapp
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)


class SimulatedWhatsAppProvider(BaseWhatsAppProvider):
    simulated = True

    @property
    def provider_name(self) -> str:
        return "simulated"

    def normalize_phone(self, phone: str) -> str:
        if PhoneNumberValidator.validate(phone):
            return PhoneNumberValidator.normalize(phone)
        return phone

    def format_text(self, html_text: str) -> str:
        return convert_html_to_whatsapp(html_text)

    async def send_text(
        self,
        to: str,
        text: str,
        buttons: Optional[list[str]] = None,
    ) -> Optional[str]:
        logger.info(
            "WhatsApp לא מוגדר - סימולציית שליחה",
            extra_data={"phone": mask_phone(to), "length": len(text)},
        )
        return None
