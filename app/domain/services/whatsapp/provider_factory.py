"""
Provider Factory - יצירת ספק WhatsApp לפי הגדרות.

Cloud API (pywa) כשיש token + phone id, אחרת ספק מדומה.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

_provider: BaseWhatsAppProvider | None = None
_lock = threading.Lock()


def is_whatsapp_configured() -> bool:
    return bool(settings.WHATSAPP_CLOUD_API_TOKEN and settings.WHATSAPP_CLOUD_API_PHONE_ID)


def _create_provider() -> BaseWhatsAppProvider:
    if is_whatsapp_configured():
        from app.domain.services.whatsapp.pywa_provider import PyWaProvider

        return PyWaProvider(circuit_breaker=CircuitBreaker.for_service("whatsapp"))

    from app.domain.services.whatsapp.simulated_provider import SimulatedWhatsAppProvider

    return SimulatedWhatsAppProvider()


def get_whatsapp_provider() -> BaseWhatsAppProvider:
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                _provider = _create_provider()
                logger.info(
                    "ספק WhatsApp אותחל",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_providers() -> None:
    """איפוס ספקים - לשימוש בבדיקות בלבד."""
    global _provider
    with _lock:
        _provider = None
