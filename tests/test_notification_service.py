"""
Notification service tests

SMTP is replaced with an in-process fake; Slack is left unconfigured.
"""
import smtplib
from datetime import datetime

import pytest

from bizpulse.schemas import InsightRecord, OnboardingMetadata
from bizpulse.services import notification_service
from bizpulse.services.notification_service import NotificationService

from tests.conftest import no_sleep, run


class FakeSMTP:
    """Records sent messages; ``failures`` is a list of SMTP codes to raise first"""

    sent = []
    failures = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        if FakeSMTP.failures:
            code = FakeSMTP.failures.pop(0)
            raise smtplib.SMTPResponseException(code, b"mailbox unavailable")
        FakeSMTP.sent.append(msg)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.failures = []
    monkeypatch.setattr(notification_service.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def email_settings(settings):
    return settings.model_copy(update={
        "smtp_host": "smtp.example.com",
        "smtp_user": "bot@example.com",
        "smtp_password": "secret",
        "alert_email_to": "owner@example.com, admin@example.com",
    })


class StaticDirectory:
    def admin_emails(self, organization_id):
        return [f"admin@{organization_id}.example.com"]


def _insight(title, urgency="high"):
    return InsightRecord(
        id=1,
        organization_id="org_1",
        type="alert",
        title=title,
        description=title,
        impact_score=8,
        confidence=90,
        category="payments",
        urgency=urgency,
        metadata=OnboardingMetadata(step="x"),
        created_at=datetime(2024, 3, 1),
    )


class TestNotificationService:

    def test_nothing_configured(self, settings):
        service = NotificationService(settings, sleep=no_sleep)

        outcome = run(service.broadcast(["a@example.com"], "Title", "Body"))

        assert outcome == {"success": False, "results": {}}

    def test_digest_by_email(self, email_settings, smtp):
        service = NotificationService(email_settings, directory=StaticDirectory(), sleep=no_sleep)

        outcome = run(service.send_digest("org_1", [_insight("Payment failures"), _insight("Low", "low")]))

        assert outcome["success"]
        message = smtp.sent[0]
        assert message["To"] == "admin@org_1.example.com"
        assert message["Subject"].startswith("[MEDIUM] Weekly Business Insights")
        assert "[HIGH] Payment failures" in message.get_payload()[0].get_payload(decode=True).decode()
        assert service.get_delivery_stats()["total_sent"] == 1

    def test_default_directory_uses_configured_recipients(self, email_settings, smtp):
        service = NotificationService(email_settings, sleep=no_sleep)

        run(service.send_digest("org_1", [_insight("x")]))

        assert smtp.sent[0]["To"] == "owner@example.com, admin@example.com"

    def test_temporary_smtp_failure_is_retried(self, email_settings, smtp):
        smtp.failures = [421]
        service = NotificationService(email_settings, sleep=no_sleep)

        outcome = run(service.broadcast(["a@example.com"], "Title", "Body"))

        assert outcome["success"]
        assert outcome["results"]["email"]["attempts"] == 2
        assert service.get_delivery_stats()["total_retries"] == 1

    def test_permanent_smtp_failure_is_not_retried(self, email_settings, smtp):
        smtp.failures = [550, 550, 550]
        service = NotificationService(email_settings, sleep=no_sleep)

        outcome = run(service.broadcast(["a@example.com"], "Title", "Body"))

        assert not outcome["success"]
        assert outcome["results"]["email"]["attempts"] == 1
        assert "550" in outcome["results"]["email"]["final_error"]

    def test_stale_alert(self, email_settings, smtp, link):
        integration = link("shopify", "demo.myshopify.com")
        service = NotificationService(email_settings, sleep=no_sleep)

        outcome = run(service.send_stale_integration_alert(integration, 24))

        assert outcome["success"]
        assert smtp.sent[0]["Subject"] == "[HIGH] Integration sync stale: shopify"
