"""
בדיקות ל-NotificationService ו-EmailService.

כשלון שליחה נרשם כ-failed ולא נזרק הלאה - הפעולה העסקית כבר נשמרה.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import BreakerPolicy, CircuitBreaker
from app.core.exceptions import EmailDeliveryError, WhatsAppError
from app.db.models.email_log import EmailLog, EmailStatus
from app.db.models.status_update import EntityType, StatusUpdate
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus
from app.domain.services import email_templates
from app.domain.services.email_service import EmailService
from app.domain.services.notification_service import NotificationOutcome, NotificationService
from app.domain.services.ticket_service import TicketService


def _failing_email_service(error: Exception) -> MagicMock:
    service = MagicMock()
    service.is_configured = True
    service.send = AsyncMock(side_effect=error)
    return service


class TestSendEmail:

    @pytest.mark.asyncio
    async def test_failure_recorded(self, db_session: AsyncSession) -> None:
        notifications = NotificationService(
            db_session, email_service=_failing_email_service(EmailDeliveryError("status 422"))
        )

        outcome = await notifications.send_email(
            "c@example.com",
            email_templates.ticket_acknowledgment("TK1", "c@example.com"),
            "ticket_acknowledgment",
            ticket_id=1,
        )

        assert outcome == NotificationOutcome.FAILED
        log = (await db_session.execute(select(EmailLog))).scalar_one()
        assert log.status == EmailStatus.FAILED
        assert log.error_message == "Email API error: status 422"
        assert log.sent_at is None

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded(self, db_session: AsyncSession) -> None:
        notifications = NotificationService(
            db_session, email_service=_failing_email_service(RuntimeError("boom"))
        )

        outcome = await notifications.send_email(
            "c@example.com", email_templates.ticket_closure("TK1", "c@example.com", "done"), "ticket_closure"
        )

        assert outcome == NotificationOutcome.FAILED
        log = (await db_session.execute(select(EmailLog))).scalar_one()
        assert log.error_message == "boom"

    @pytest.mark.asyncio
    async def test_missing_recipient_skipped(self, db_session: AsyncSession) -> None:
        outcome = await NotificationService(db_session).send_email(
            "", email_templates.ticket_acknowledgment("TK1", ""), "ticket_acknowledgment"
        )
        assert outcome == NotificationOutcome.SKIPPED
        assert (await db_session.execute(select(EmailLog))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_provider_message_id_saved(self, db_session: AsyncSession) -> None:
        email_service = MagicMock()
        email_service.is_configured = True
        email_service.send = AsyncMock(return_value="re_123")

        await NotificationService(db_session, email_service=email_service).send_email(
            "c@example.com", email_templates.ticket_acknowledgment("TK1", "c@example.com"), "x"
        )

        log = (await db_session.execute(select(EmailLog))).scalar_one()
        assert log.status == EmailStatus.SENT
        assert log.metadata_ == {"message_id": "re_123"}


class TestSendWhatsApp:

    @pytest.mark.asyncio
    async def test_failure_recorded(self, db_session: AsyncSession) -> None:
        provider = MagicMock()
        provider.provider_name = "pywa"
        provider.simulated = False
        provider.format_text = MagicMock(side_effect=lambda html: html)
        provider.send_text = AsyncMock(side_effect=WhatsAppError("send failed"))

        outcome = await NotificationService(db_session, whatsapp_provider=provider).send_whatsapp(
            "+972501234567", "hi", "status_update"
        )

        assert outcome == NotificationOutcome.FAILED
        log = (await db_session.execute(select(WhatsAppLog))).scalar_one()
        assert log.status == WhatsAppStatus.FAILED
        assert log.metadata_ == {"provider": "pywa"}

    @pytest.mark.asyncio
    async def test_no_phone_skipped(self, db_session: AsyncSession) -> None:
        outcome = await NotificationService(db_session).send_whatsapp(None, "hi", "status_update")
        assert outcome == NotificationOutcome.SKIPPED


class TestTicketSurvivesNotificationFailure:

    @pytest.mark.asyncio
    async def test_ticket_created_despite_email_failure(self, db_session: AsyncSession) -> None:
        notifications = NotificationService(
            db_session, email_service=_failing_email_service(EmailDeliveryError("provider down"))
        )

        ticket = await TicketService(db_session, notifications).create_ticket(
            customer_email="c@example.com", subject="Help"
        )

        assert ticket.id is not None
        audit = (await db_session.execute(
            select(StatusUpdate).where(
                StatusUpdate.entity_type == EntityType.TICKET, StatusUpdate.entity_id == ticket.id
            )
        )).scalar_one()
        assert audit.notifications == {"email": "failed", "whatsapp": "skipped"}


# ============================================================================
# EmailService (Resend)
# ============================================================================


def _patched_client(monkeypatch, handler) -> None:
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        "app.domain.services.email_service.httpx.AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )


class TestEmailService:

    @pytest.mark.unit
    async def test_simulated_without_api_key(self) -> None:
        service = EmailService(api_key="")
        assert service.is_configured is False
        assert await service.send("c@example.com", "s", "<p>x</p>") is None

    @pytest.mark.unit
    async def test_send_success(self, monkeypatch) -> None:
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "re_abc"})

        _patched_client(monkeypatch, handler)
        service = EmailService(api_key="re_key", circuit_breaker=CircuitBreaker("test_email"))

        message_id = await service.send("c@example.com", "Subject", "<p>Hello</p>")

        assert message_id == "re_abc"
        assert requests[0].headers["Authorization"] == "Bearer re_key"
        assert json.loads(requests[0].content)["text"] == "Hello"

    @pytest.mark.unit
    async def test_retries_transient_then_fails(self, monkeypatch) -> None:
        _patched_client(monkeypatch, lambda request: httpx.Response(503))
        service = EmailService(
            api_key="re_key",
            circuit_breaker=CircuitBreaker("test_email_retry", BreakerPolicy(failure_threshold=10)),
        )

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(EmailDeliveryError) as exc_info:
                await service.send("c@example.com", "s", "<p>x</p>")

        assert exc_info.value.details["attempts"] == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [0.5, 1.0]

    @pytest.mark.unit
    async def test_client_error_not_retried(self, monkeypatch) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(422, json={"message": "invalid to"})

        _patched_client(monkeypatch, handler)
        breaker = CircuitBreaker("test_email_422", BreakerPolicy(failure_threshold=1))
        service = EmailService(api_key="re_key", circuit_breaker=breaker)

        with pytest.raises(EmailDeliveryError):
            await service.send("c@example.com", "s", "<p>x</p>")
        assert len(calls) == 1
        # נמען שנדחה לא פותח את המעגל לשאר המיילים
        assert breaker.consecutive_failures == 0
