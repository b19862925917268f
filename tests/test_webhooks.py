"""
בדיקות ל-webhooks נכנסים - מייל, עסקאות, CRM ו-WhatsApp Cloud API.

כל קריאה נרשמת ב-webhook_logs לפני העיבוד, ולכן גם קריאה שנדחתה
(חתימה שגויה, שדות חסרים) משאירה רשומה עם status=failed.
"""
import json
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import compute_signature, require_signature, verify_signature
from app.core.config import settings
from app.core.exceptions import ErrorCode, SignatureException
from app.db.models.ticket import Ticket
from app.db.models.transaction import Transaction, TransactionStatus
from app.db.models.webhook_log import WebhookLog, WebhookStatus
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus
from app.domain.services.webhook_service import is_support_recipient
from app.domain.services.whatsapp.base_provider import DeliveryStatus, InboundMessage
from app.domain.services.whatsapp.simulated_provider import SimulatedWhatsAppProvider


async def _logs(db: AsyncSession) -> list[WebhookLog]:
    result = await db.execute(select(WebhookLog).order_by(WebhookLog.id))
    return list(result.scalars().all())


def _whatsapp_payload(value: dict) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


# ============================================================================
# חתימות
# ============================================================================


class TestSignature:

    @pytest.mark.unit
    def test_compute_signature_format(self) -> None:
        signature = compute_signature(b'{"a":1}', "secret")
        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    @pytest.mark.unit
    def test_verify_signature(self) -> None:
        body = b'{"transaction_id":"txn_1"}'
        assert verify_signature(body, compute_signature(body, "secret"), "secret")
        assert not verify_signature(body, compute_signature(body, "other"), "secret")
        assert not verify_signature(body, None, "secret")
        assert not verify_signature(body, compute_signature(body, "secret")[7:], "secret")

    @pytest.mark.unit
    def test_require_signature_skipped_without_secret(self) -> None:
        require_signature(b"{}", None, "", source="crm")

    @pytest.mark.unit
    def test_require_signature_raises(self) -> None:
        with pytest.raises(SignatureException) as exc_info:
            require_signature(b"{}", "sha256=bad", "secret", source="crm")
        assert exc_info.value.status_code == 401


class TestSupportRecipient:

    @pytest.mark.unit
    @pytest.mark.parametrize("to,expected", [
        ("support@company.com", True),
        ("Team <SUPPORT@company.com>, other@x.com", True),
        ("sales@company.com", False),
        (None, False),
    ])
    def test_is_support_recipient(self, to, expected) -> None:
        assert is_support_recipient(to) is expected


# ============================================================================
# WhatsApp verification
# ============================================================================


class TestWhatsAppVerification:

    @pytest.mark.integration
    async def test_verify_returns_challenge(self, test_client) -> None:
        with patch.object(settings, "WHATSAPP_VERIFY_TOKEN", "verify-me"):
            response = await test_client.get("/api/webhooks/whatsapp", params={
                "hub.mode": "subscribe",
                "hub.challenge": "12345",
                "hub.verify_token": "verify-me",
            })

        assert response.status_code == 200
        assert response.text == "12345"

    @pytest.mark.integration
    async def test_wrong_token_is_forbidden(self, test_client) -> None:
        with patch.object(settings, "WHATSAPP_VERIFY_TOKEN", "verify-me"):
            response = await test_client.get("/api/webhooks/whatsapp", params={
                "hub.mode": "subscribe",
                "hub.challenge": "12345",
                "hub.verify_token": "wrong",
            })

        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Forbidden"}


# ============================================================================
# Email
# ============================================================================


class TestEmailWebhook:

    @pytest.mark.integration
    async def test_support_email_creates_ticket(self, test_client, db_session: AsyncSession) -> None:
        response = await test_client.post("/api/webhooks/email", json={
            "from": "customer@example.com",
            "to": "support@company.com",
            "subject": "Where is my refund?",
            "text": "Paid last week",
            "message_id": "<abc@mail>",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Email processed as ticket"
        assert body["data"]["ticketNumber"].startswith("TK")

        ticket = await db_session.get(Ticket, body["data"]["ticketId"])
        assert ticket.metadata_["source"] == "email"
        logs = await _logs(db_session)
        assert logs[0].source == "email"
        assert logs[0].status == WebhookStatus.PROCESSED
        assert logs[0].processed_at is not None

    @pytest.mark.integration
    async def test_non_support_email_is_ignored(self, test_client, db_session: AsyncSession) -> None:
        response = await test_client.post("/api/webhooks/email", json={
            "from": "customer@example.com",
            "to": "sales@company.com",
            "subject": "Hello",
        })

        assert response.status_code == 200
        assert response.json()["message"] == "Email received but not processed"
        logs = await _logs(db_session)
        assert logs[0].status == WebhookStatus.IGNORED
        assert logs[0].error_message == "Not a support email"
        assert (await db_session.execute(select(Ticket))).scalars().all() == []

    @pytest.mark.integration
    async def test_missing_fields_is_400_and_logged(self, test_client, db_session: AsyncSession) -> None:
        response = await test_client.post("/api/webhooks/email", json={"to": "support@company.com"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid email data - missing from or subject"
        logs = await _logs(db_session)
        assert logs[0].status == WebhookStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.parametrize("sender", [{"email": "a@b.com"}, ["a@b.com"], 42, "not-an-address"])
    async def test_malformed_from_is_400(self, test_client, db_session: AsyncSession, sender) -> None:
        response = await test_client.post("/api/webhooks/email", json={
            "from": sender,
            "to": "support@company.com",
            "subject": "Refund",
        })

        assert response.status_code == 400
        assert response.json()["success"] is False
        logs = await _logs(db_session)
        assert logs[0].status == WebhookStatus.FAILED
        assert (await db_session.execute(select(Ticket))).scalars().all() == []

    @pytest.mark.integration
    async def test_non_string_subject_is_400(self, test_client) -> None:
        response = await test_client.post("/api/webhooks/email", json={
            "from": "customer@example.com",
            "to": "support@company.com",
            "subject": {"text": "Refund"},
        })
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid email data - missing from or subject"

    @pytest.mark.integration
    async def test_non_string_body_falls_through(self, test_client, db_session: AsyncSession) -> None:
        response = await test_client.post("/api/webhooks/email", json={
            "from": " Customer@Example.com",
            "to": "support@company.com",
            "subject": "Refund",
            "text": {"plain": "ignored"},
            "html": "<p>Paid twice</p>",
        })

        assert response.status_code == 200
        ticket = await db_session.get(Ticket, response.json()["data"]["ticketId"])
        assert ticket.customer_email == "customer@example.com"
        assert ticket.description == "<p>Paid twice</p>"

    @pytest.mark.integration
    async def test_invalid_json_is_logged_raw(self, test_client, db_session: AsyncSession) -> None:
        response = await test_client.post(
            "/api/webhooks/email",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        logs = await _logs(db_session)
        assert logs[0].payload == {"raw": "not json"}
        assert logs[0].status == WebhookStatus.FAILED


# ============================================================================
# Transaction
# ============================================================================


class TestTransactionWebhook:

    @pytest.mark.integration
    async def test_signed_request_updates_transaction(
        self, test_client, db_session: AsyncSession, status_source, transaction_factory
    ) -> None:
        await transaction_factory(transaction_id="txn_1")
        status_source.set_status("txn_1", TransactionStatus.SUCCESS)
        body = json.dumps({"transaction_id": "txn_1", "status": "success"}).encode()

        with patch.object(settings, "TRANSACTION_WEBHOOK_SECRET", "whsec"):
            response = await test_client.post(
                "/api/webhooks/transaction",
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Signature": compute_signature(body, "whsec"),
                },
            )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Transaction status updated"
        assert data["data"]["status"] == "success"
        logs = await _logs(db_session)
        assert logs[0].status == WebhookStatus.PROCESSED

    @pytest.mark.integration
    async def test_bad_signature_is_401_and_logged(
        self, test_client, db_session: AsyncSession, status_source
    ) -> None:
        status_source.set_status("txn_1", TransactionStatus.SUCCESS)

        with patch.object(settings, "TRANSACTION_WEBHOOK_SECRET", "whsec"):
            response = await test_client.post(
                "/api/webhooks/transaction",
                json={"transaction_id": "txn_1", "status": "success"},
                headers={"X-Signature": "sha256=deadbeef"},
            )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCode.INVALID_SIGNATURE.value
        logs = await _logs(db_session)
        assert logs[0].status == WebhookStatus.FAILED
        # החתימה נבדקת לפני כל עיבוד
        assert status_source.calls == []
        assert (await db_session.execute(select(Transaction))).scalars().all() == []

    @pytest.mark.integration
    async def test_unknown_transaction_is_created(
        self, test_client, db_session: AsyncSession, status_source
    ) -> None:
        status_source.set_status("txn_new", TransactionStatus.PROCESSING)

        response = await test_client.post(
            "/api/webhooks/transaction",
            json={"transaction_id": "txn_new", "status": "processing"},
        )

        assert response.status_code == 200
        transaction = (await db_session.execute(select(Transaction))).scalar_one()
        assert transaction.transaction_id == "txn_new"

    @pytest.mark.integration
    async def test_missing_status_is_400(self, test_client) -> None:
        response = await test_client.post("/api/webhooks/transaction", json={"transaction_id": "txn_1"})
        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.parametrize("payload", [
        {"transaction_id": {"id": "txn_1"}, "status": "success"},
        {"transaction_id": "txn_1", "status": ["success"]},
        {"transaction_id": True, "status": "success"},
    ])
    async def test_malformed_fields_are_400(self, test_client, status_source, payload) -> None:
        response = await test_client.post("/api/webhooks/transaction", json=payload)
        assert response.status_code == 400
        assert status_source.calls == []

    @pytest.mark.integration
    async def test_sync_failure_is_500(self, test_client, db_session: AsyncSession, status_source) -> None:
        status_source.failing.add("txn_1")

        response = await test_client.post(
            "/api/webhooks/transaction",
            json={"transaction_id": "txn_1", "status": "success"},
        )

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to update transaction status"
        logs = await _logs(db_session)
        assert logs[0].error_message == "Failed to update transaction status"


# ============================================================================
# CRM
# ============================================================================


class TestCrmWebhook:

    @pytest.mark.integration
    async def test_crm_event_processed(self, test_client, db_session: AsyncSession) -> None:
        body = json.dumps({"event_type": "ticket_updated", "ticket_id": "crm-1"}).encode()

        with patch.object(settings, "CRM_WEBHOOK_SECRET", "crm-secret"):
            response = await test_client.post(
                "/api/webhooks/crm",
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-CRM-Signature": compute_signature(body, "crm-secret"),
                },
            )

        assert response.status_code == 200
        assert response.json()["message"] == "CRM webhook processed"
        logs = await _logs(db_session)
        assert logs[0].event_type == "ticket_updated"
        assert logs[0].status == WebhookStatus.PROCESSED

    @pytest.mark.integration
    async def test_crm_missing_signature(self, test_client) -> None:
        with patch.object(settings, "CRM_WEBHOOK_SECRET", "crm-secret"):
            response = await test_client.post("/api/webhooks/crm", json={"event_type": "customer_created"})
        assert response.status_code == 401

    @pytest.mark.integration
    async def test_non_string_event_type_logged_as_unknown(self, test_client, db_session: AsyncSession) -> None:
        response = await test_client.post("/api/webhooks/crm", json={"event_type": {"name": "x"}})

        assert response.status_code == 200
        logs = await _logs(db_session)
        assert logs[0].event_type == "unknown"
        assert logs[0].status == WebhookStatus.PROCESSED


# ============================================================================
# WhatsApp events
# ============================================================================


class TestWhatsAppEvents:

    @pytest.mark.integration
    async def test_incoming_tracking_keyword_gets_help(self, test_client, db_session: AsyncSession) -> None:
        payload = _whatsapp_payload({
            "messages": [{
                "from": "972501234567",
                "id": "wamid.IN1",
                "timestamp": "1700000000",
                "type": "text",
                "text": {"body": "How do I TRACK my complaint?"},
            }],
        })

        response = await test_client.post("/api/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        assert response.json()["data"] == {"messages": 1, "statuses": 0}
        rows = (await db_session.execute(select(WhatsAppLog).order_by(WhatsAppLog.id))).scalars().all()
        assert [r.message_type for r in rows] == ["incoming", "tracking_help"]
        assert rows[0].status == WhatsAppStatus.RECEIVED
        assert rows[0].whatsapp_message_id == "wamid.IN1"
        assert rows[1].phone_number == "972501234567"

    @pytest.mark.integration
    async def test_status_callback_updates_log(self, test_client, db_session: AsyncSession) -> None:
        db_session.add(WhatsAppLog(
            phone_number="+972501234567",
            message_type="status_update",
            status=WhatsAppStatus.SENT,
            whatsapp_message_id="wamid.OUT1",
        ))
        await db_session.commit()

        payload = _whatsapp_payload({
            "statuses": [
                {"id": "wamid.OUT1", "status": "failed", "timestamp": "1700000000",
                 "errors": [{"code": 131026, "title": "Message undeliverable"}]},
                {"id": "wamid.UNKNOWN", "status": "read"},
            ],
        })

        response = await test_client.post("/api/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        assert response.json()["data"] == {"messages": 0, "statuses": 1}
        log = (await db_session.execute(
            select(WhatsAppLog).where(WhatsAppLog.whatsapp_message_id == "wamid.OUT1")
        )).scalar_one()
        await db_session.refresh(log)
        assert log.status == WhatsAppStatus.FAILED
        assert log.error_message == "Message undeliverable"

    @pytest.mark.integration
    @pytest.mark.parametrize("payload", [
        {"entry": ["x"]},
        {"entry": "x"},
        {"entry": [{"changes": ["x", {"value": "x"}]}]},
        {"entry": [{"changes": [{"value": {"messages": [1, None], "statuses": ["read"]}}]}]},
    ])
    async def test_malformed_events_are_skipped(self, test_client, db_session: AsyncSession, payload) -> None:
        response = await test_client.post("/api/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        assert response.json()["data"] == {"messages": 0, "statuses": 0}
        logs = await _logs(db_session)
        assert logs[0].status == WebhookStatus.PROCESSED

    @pytest.mark.integration
    async def test_valid_message_survives_malformed_siblings(self, test_client, db_session: AsyncSession) -> None:
        payload = _whatsapp_payload({
            "messages": [
                "garbage",
                {"id": "wamid.NOFROM", "type": "text"},
                {"from": "972501234567", "id": "wamid.IN2", "type": "text", "text": "not an object"},
            ],
        })

        response = await test_client.post("/api/webhooks/whatsapp", json=payload)

        assert response.status_code == 200
        assert response.json()["data"] == {"messages": 1, "statuses": 0}
        row = (await db_session.execute(select(WhatsAppLog))).scalar_one()
        assert row.whatsapp_message_id == "wamid.IN2"
        assert row.message_content == ""

    @pytest.mark.integration
    async def test_non_object_body_is_400(self, test_client) -> None:
        response = await test_client.post("/api/webhooks/whatsapp", json=["entry"])
        assert response.status_code == 400

    @pytest.mark.integration
    async def test_app_secret_enforced(self, test_client) -> None:
        with patch.object(settings, "WHATSAPP_APP_SECRET", "app-secret"):
            response = await test_client.post("/api/webhooks/whatsapp", json=_whatsapp_payload({}))
        assert response.status_code == 401


class TestParseWebhook:

    @pytest.mark.unit
    def test_messages_and_statuses(self) -> None:
        payload = _whatsapp_payload({
            "messages": [{
                "from": "972501234567", "id": "wamid.A", "type": "text",
                "timestamp": "1700000000", "text": {"body": "status?"},
            }],
            "statuses": [
                {"id": "wamid.B", "status": "failed", "timestamp": 1700000001,
                 "errors": [{"title": "Re-engagement message"}]},
                {"id": "wamid.C", "status": "delivered", "errors": ["x"]},
            ],
        })

        events = SimulatedWhatsAppProvider().parse_webhook(payload)

        assert events.messages == [InboundMessage(
            from_phone="972501234567", text="status?", message_id="wamid.A",
            message_type="text", timestamp="1700000000",
        )]
        assert events.statuses == [
            DeliveryStatus(message_id="wamid.B", status="failed", timestamp="1700000001",
                           error_title="Re-engagement message"),
            DeliveryStatus(message_id="wamid.C", status="delivered"),
        ]
        assert events.skipped == 1

    @pytest.mark.unit
    def test_counts_skipped_items(self) -> None:
        payload = {"entry": ["x", {"changes": [{"value": None}, {"value": {
            "messages": [{"text": {"body": "no sender"}}],
            "statuses": [{"id": "wamid.D"}, {"status": "read"}],
        }}]}]}

        events = SimulatedWhatsAppProvider().parse_webhook(payload)

        assert events.messages == []
        assert events.statuses == []
        assert events.skipped == 5


# ============================================================================
# Logs
# ============================================================================


class TestWebhookLogs:

    @pytest.mark.integration
    async def test_list_logs_with_filters(self, test_client) -> None:
        await test_client.post("/api/webhooks/crm", json={"event_type": "customer_created"})
        await test_client.post("/api/webhooks/email", json={"to": "support@company.com"})

        response = await test_client.get("/api/webhooks/logs")
        data = response.json()["data"]
        assert data["pagination"]["total"] == 2
        assert data["pagination"]["limit"] == 50

        response = await test_client.get("/api/webhooks/logs", params={"source": "email", "status": "failed"})
        logs = response.json()["data"]["logs"]
        assert len(logs) == 1
        assert logs[0]["source"] == "email"
        assert logs[0]["payload"] == {"to": "support@company.com"}
