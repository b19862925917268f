"""
WhatsApp Provider Abstraction Layer

שכבת הפשטה לשליחת הודעות WhatsApp - Cloud API או ספק מדומה.
"""
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider
from app.domain.services.whatsapp.provider_factory import (
    get_whatsapp_provider,
    is_whatsapp_configured,
)

__all__ = [
    "BaseWhatsAppProvider",
    "get_whatsapp_provider",
    "is_whatsapp_configured",
]
