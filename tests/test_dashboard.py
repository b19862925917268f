"""
בדיקות לדשבורד - סקירה, מגמות, פיד פעילות, ביצועים, התראות ו-SSE.
"""
import json
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.dashboard import _sse_event_generator
from app.db.database import utcnow
from app.db.models.email_log import EmailLog, EmailStatus
from app.db.models.status_update import EntityType, StatusUpdate
from app.db.models.ticket import TicketPriority, TicketStatus
from app.db.models.transaction import TransactionStatus
from app.db.models.webhook_log import WebhookLog, WebhookStatus
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus
from app.domain.services.dashboard_service import DashboardService


class TestOverview:

    @pytest.mark.asyncio
    async def test_counts(self, db_session: AsyncSession, ticket_factory, transaction_factory) -> None:
        await ticket_factory(priority=TicketPriority.URGENT)
        await ticket_factory(status=TicketStatus.IN_PROGRESS)
        await ticket_factory(status=TicketStatus.RESOLVED, priority=TicketPriority.URGENT)
        await transaction_factory(status=TransactionStatus.SUCCESS, amount="120.00")
        await transaction_factory(status=TransactionStatus.SUCCESS, amount="30.50")
        await transaction_factory(status=TransactionStatus.FAILED)
        await transaction_factory(status=TransactionStatus.PROCESSING)

        overview = await DashboardService(db_session).get_overview()

        assert overview["tickets"] == {
            "total": 3, "open": 1, "in_progress": 1, "resolved": 1, "today": 3, "urgent": 1,
        }
        assert overview["transactions"]["successful"] == 2
        assert overview["transactions"]["failed"] == 1
        assert overview["transactions"]["pending"] == 1
        assert overview["transactions"]["revenue"] == 150.5
        assert overview["activity"]["recent"] == 7
        assert overview["health"]["overall_status"] == "healthy"

    @pytest.mark.asyncio
    async def test_degraded_on_delivery_failures(self, db_session: AsyncSession) -> None:
        db_session.add_all([
            EmailLog(recipient_email="a@example.com", email_type="x", status=EmailStatus.FAILED)
            for _ in range(6)
        ] + [
            WhatsAppLog(phone_number="+972501234567", message_type="x", status=WhatsAppStatus.FAILED)
            for _ in range(5)
        ])
        await db_session.commit()

        health = (await DashboardService(db_session).get_overview())["health"]

        assert health == {"email_failures": 6, "whatsapp_failures": 5, "overall_status": "degraded"}


class TestStats:

    @pytest.mark.asyncio
    async def test_trends_and_distribution(
        self, db_session: AsyncSession, ticket_factory, transaction_factory
    ) -> None:
        now = utcnow()
        await ticket_factory(created_at=now - timedelta(days=2), resolved_at=now, status=TicketStatus.RESOLVED)
        await ticket_factory()
        await ticket_factory(created_at=now - timedelta(days=20))
        await transaction_factory(status=TransactionStatus.SUCCESS, amount="40.00")
        await transaction_factory(status=TransactionStatus.FAILED, amount="10.00")

        stats = await DashboardService(db_session).get_stats("7d")

        assert stats["time_range"] == "7d"
        assert sum(day["total"] for day in stats["trends"]["tickets"]) == 2
        today = stats["trends"]["transactions"][0]
        assert today["date"] == now.strftime("%Y-%m-%d")
        assert today == {"date": today["date"], "total": 2, "successful": 1, "revenue": 40.0, "avg_amount": 25.0}
        distribution = {d["status"]: d["count"] for d in stats["distribution"]["ticket_status"]}
        assert distribution == {"open": 1, "resolved": 1}
        assert stats["performance"]["avg_resolution_hours"] == 48.0
        assert stats["performance"]["resolution_rate"] == 33.33

    @pytest.mark.asyncio
    async def test_unknown_range_falls_back(self, db_session: AsyncSession) -> None:
        stats = await DashboardService(db_session).get_stats("1y")
        assert stats["time_range"] == "7d"


class TestRecentActivity:

    @pytest.mark.asyncio
    async def test_feed_newest_first(self, db_session: AsyncSession, ticket_factory, transaction_factory) -> None:
        now = utcnow()
        ticket = await ticket_factory(created_at=now - timedelta(hours=2))
        await transaction_factory(transaction_id="txn_feed", created_at=now - timedelta(hours=1))
        db_session.add(StatusUpdate(
            entity_type=EntityType.TICKET,
            entity_id=ticket.id,
            old_status="open",
            new_status="in_progress",
            updated_by="agent@company.com",
            created_at=now,
        ))
        # רשומת יצירה לא מופיעה פעמיים
        db_session.add(StatusUpdate(
            entity_type=EntityType.TICKET,
            entity_id=ticket.id,
            old_status=None,
            new_status="open",
            created_at=now - timedelta(hours=2),
        ))
        await db_session.commit()

        feed = await DashboardService(db_session).get_recent_activity()

        assert [(a["type"], a["action"]) for a in feed] == [
            ("ticket", "status_changed"),
            ("transaction", "created"),
            ("ticket", "created"),
        ]
        assert feed[0]["reference"] == ticket.ticket_number
        assert feed[0]["description"] == "Status changed from open to in_progress"
        assert feed[1]["reference"] == "txn_feed"

    @pytest.mark.asyncio
    async def test_limit(self, db_session: AsyncSession, ticket_factory) -> None:
        for _ in range(4):
            await ticket_factory()
        assert len(await DashboardService(db_session).get_recent_activity(limit=2)) == 2


class TestPerformance:

    @pytest.mark.asyncio
    async def test_rates(self, db_session: AsyncSession) -> None:
        now = utcnow()
        db_session.add_all([
            EmailLog(recipient_email="a@example.com", email_type="x", status=EmailStatus.SENT,
                     created_at=now - timedelta(seconds=4), sent_at=now),
            EmailLog(recipient_email="b@example.com", email_type="x", status=EmailStatus.FAILED),
            WhatsAppLog(phone_number="1", message_type="x", status=WhatsAppStatus.READ,
                        created_at=now - timedelta(seconds=2), sent_at=now),
            WhatsAppLog(phone_number="2", message_type="incoming", status=WhatsAppStatus.RECEIVED),
            WebhookLog(source="crm", status=WebhookStatus.PROCESSED),
            WebhookLog(source="crm", status=WebhookStatus.FAILED),
        ])
        await db_session.commit()

        performance = await DashboardService(db_session).get_performance()

        assert performance["response_times"] == {"email_avg_seconds": 4.0, "whatsapp_avg_seconds": 2.0}
        assert performance["delivery_rates"] == {"email_percentage": 50.0, "whatsapp_percentage": 100.0}
        assert performance["system_load"] == {
            "total_requests": 2,
            "successful_requests": 1,
            "failed_requests": 1,
            "success_rate": 50.0,
        }

    @pytest.mark.asyncio
    async def test_idle_system(self, db_session: AsyncSession) -> None:
        performance = await DashboardService(db_session).get_performance()
        assert performance["system_load"]["success_rate"] == 100
        assert performance["delivery_rates"]["email_percentage"] == 0


class TestAlerts:

    @pytest.mark.asyncio
    async def test_no_alerts(self, db_session: AsyncSession) -> None:
        alerts = await DashboardService(db_session).get_alerts()
        assert alerts == {"alerts": [], "total_alerts": 0, "highest_level": 0}

    @pytest.mark.asyncio
    async def test_alert_types(self, db_session: AsyncSession, ticket_factory, transaction_factory) -> None:
        await ticket_factory(priority=TicketPriority.URGENT)
        await ticket_factory(created_at=utcnow() - timedelta(hours=50))
        for _ in range(6):
            await transaction_factory(status=TransactionStatus.FAILED)

        alerts = await DashboardService(db_session).get_alerts()

        by_type = {a["type"]: a for a in alerts["alerts"]}
        assert set(by_type) == {"urgent", "transactions", "tickets"}
        assert by_type["urgent"]["level"] == "high"
        assert by_type["transactions"]["count"] == 6
        assert by_type["tickets"]["count"] == 1
        assert alerts["total_alerts"] == 3
        assert alerts["highest_level"] == 3

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, db_session: AsyncSession, transaction_factory) -> None:
        for _ in range(5):
            await transaction_factory(status=TransactionStatus.FAILED)
        alerts = await DashboardService(db_session).get_alerts()
        assert alerts["total_alerts"] == 0


# ============================================================================
# API
# ============================================================================


class TestDashboardApi:

    @pytest.mark.integration
    @pytest.mark.parametrize("path", [
        "/api/dashboard/overview",
        "/api/dashboard/stats?range=30d",
        "/api/dashboard/recent-activity",
        "/api/dashboard/performance",
        "/api/dashboard/alerts",
    ])
    async def test_endpoints_respond(self, test_client, ticket_factory, path: str) -> None:
        await ticket_factory()
        response = await test_client.get(path)
        assert response.status_code == 200
        assert response.json()["success"] is True

    @pytest.mark.integration
    async def test_events_history(self, test_client) -> None:
        await test_client.post("/api/tickets", json={"customer_email": "c@example.com", "subject": "Help"})
        await test_client.post("/api/transactions", json={
            "transaction_id": "txn_evt", "payer_email": "p@example.com", "amount": 5,
        })

        response = await test_client.get("/api/dashboard/events", params={"limit": 1})

        events = response.json()["data"]
        assert len(events) == 1
        assert events[0]["type"] == "transaction_created"


# ============================================================================
# SSE
# ============================================================================


class _FakeRequest:
    """is_disconnected מחזיר True אחרי מספר בדיקות נתון"""

    def __init__(self, connected_checks: int) -> None:
        self._remaining = connected_checks

    async def is_disconnected(self) -> bool:
        self._remaining -= 1
        return self._remaining < 0


class TestSseStream:

    @pytest.mark.asyncio
    async def test_streams_messages_then_heartbeat(self, fake_redis) -> None:
        event = {"type": "ticket_created", "data": {"id": 1}}
        fake_redis.pending_messages.extend([
            {"type": "message", "data": json.dumps(event)},
            {"type": "message", "data": b'{"type": "ticket_updated"}'},
        ])

        chunks = [chunk async for chunk in _sse_event_generator(_FakeRequest(connected_checks=3))]

        assert chunks == [
            f"data: {json.dumps(event)}\n\n",
            'data: {"type": "ticket_updated"}\n\n',
            ": heartbeat\n\n",
        ]

    @pytest.mark.asyncio
    async def test_stops_when_disconnected(self, fake_redis) -> None:
        chunks = [chunk async for chunk in _sse_event_generator(_FakeRequest(connected_checks=0))]
        assert chunks == []
