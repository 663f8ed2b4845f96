"""
Notification Service
Sends insight digests and integration health alerts via email and Slack
"""
import asyncio
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from bizpulse.config import Settings, get_settings
from bizpulse.errors import RemoteRequestError, TransientRemoteError
from bizpulse.schemas import InsightRecord, InsightSummary
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.logger import log
from bizpulse.utils.retry import DEFAULT_RETRYABLE_EXCEPTIONS, RetryPolicy, RetryStats, call_with_retry

PRIORITY_COLORS = {
    "critical": "#dc3545",
    "high": "#fd7e14",
    "medium": "#ffc107",
    "low": "#28a745",
}


@dataclass
class DeliveryResult:
    """Tracks delivery attempt results for auditing."""
    success: bool = False
    channel: str = ""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    final_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "channel": self.channel,
            "attempts": self.attempts,
            "total_delay_seconds": self.total_delay_seconds,
            "errors": self.errors[:5],
            "final_error": self.final_error,
        }


class AdminDirectory(Protocol):
    """Who receives an organization's notifications (owners and admins)"""

    def admin_emails(self, organization_id: str) -> List[str]:
        ...


class SettingsAdminDirectory:
    """Falls back to the configured alert recipients for every organization"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def admin_emails(self, organization_id: str) -> List[str]:
        raw = self.settings.alert_email_to or ""
        return [email.strip() for email in raw.split(",") if email.strip()]


class NotificationService:
    """
    Delivers notifications with retry on transient failures.

    Email goes to the organization's admins; Slack goes to the single
    configured webhook.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        directory: Optional[AdminDirectory] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.directory = directory or SettingsAdminDirectory(self.settings)
        self._sleep = sleep
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            base_delay=2.0,
            max_delay=self.settings.retry_max_delay,
            retryable_exceptions=DEFAULT_RETRYABLE_EXCEPTIONS + (OSError, aiohttp.ClientError),
        )

        self.smtp_configured = all([
            self.settings.smtp_host,
            self.settings.smtp_user,
            self.settings.smtp_password,
        ])
        self.slack_configured = bool(self.settings.slack_webhook_url)

        # Track delivery stats
        self.total_sent = 0
        self.total_failed = 0
        self.total_retries = 0

    async def _deliver(self, channel: str, label: str, operation) -> DeliveryResult:
        result = DeliveryResult(channel=channel)
        stats = RetryStats()
        try:
            await call_with_retry(
                self.retry_policy, operation, description=f"{channel} {label}", stats=stats, sleep=self._sleep
            )
            result.success = True
            self.total_sent += 1
            log.info(f"{channel.capitalize()} notification sent: {label}")
        except Exception as e:
            result.final_error = f"{type(e).__name__}: {e}"
            self.total_failed += 1
            log.error(f"{channel.capitalize()} notification failed after {stats.attempts} attempts: {e}")
        result.attempts = stats.attempts
        result.total_delay_seconds = stats.total_delay_seconds
        result.errors = list(stats.errors)
        self.total_retries += max(stats.attempts - 1, 0)
        return result

    # ── Channels ─────────────────────────────────────────

    async def send_email(
        self,
        recipients: Sequence[str],
        title: str,
        message: str,
        data: Optional[Dict] = None,
        priority: str = "medium",
    ) -> DeliveryResult:
        if not self.smtp_configured or not recipients:
            log.warning("Email not configured or no recipients, skipping email notification")
            return DeliveryResult(channel="email", final_error="Email not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[{priority.upper()}] {title}"
        msg["From"] = self.settings.alert_email_from or self.settings.smtp_user
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(message, "plain"))
        msg.attach(MIMEText(self._create_html_email(title, message, data, priority), "html"))

        async def send():
            await asyncio.to_thread(self._send_smtp, msg)

        return await self._deliver("email", title, send)

    def _send_smtp(self, msg: MIMEMultipart):
        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as server:
                server.starttls()
                server.login(self.settings.smtp_user, self.settings.smtp_password)
                server.send_message(msg)
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary failures
            if 400 <= e.smtp_code < 500:
                raise TransientRemoteError(f"SMTP {e.smtp_code}: {e.smtp_error!r}", "email", e.smtp_code) from e
            # SMTP errors are OSErrors; permanent rejections must not be retried
            raise RemoteRequestError(f"SMTP {e.smtp_code}: {e.smtp_error!r}", "email", e.smtp_code) from e

    async def send_slack(
        self,
        title: str,
        message: str,
        data: Optional[Dict] = None,
        priority: str = "medium",
    ) -> DeliveryResult:
        if not self.slack_configured:
            log.warning("Slack not configured, skipping Slack notification")
            return DeliveryResult(channel="slack", final_error="Slack not configured")

        fields = [
            {"title": "Priority", "value": priority.upper(), "short": True},
            {"title": "Timestamp", "value": utcnow().strftime("%Y-%m-%d %H:%M:%S UTC"), "short": True},
        ]
        for key, value in list((data or {}).items())[:5]:  # Max 5 additional fields
            fields.append({"title": key.replace("_", " ").title(), "value": str(value), "short": True})
        payload = {
            "attachments": [{
                "color": PRIORITY_COLORS.get(priority, "#6c757d"),
                "title": title,
                "text": message,
                "fields": fields,
                "footer": self.settings.app_name,
            }]
        }

        async def post():
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
                async with session.post(self.settings.slack_webhook_url, json=payload) as response:
                    if response.status == 200:
                        return
                    if response.status == 429 or response.status >= 500:
                        raise TransientRemoteError(f"HTTP {response.status}", "slack", response.status)
                    raise RemoteRequestError(f"HTTP {response.status}", "slack", response.status)

        return await self._deliver("slack", title, post)

    async def broadcast(
        self,
        recipients: Sequence[str],
        title: str,
        message: str,
        data: Optional[Dict] = None,
        priority: str = "medium",
    ) -> Dict[str, Any]:
        """Send on every configured channel; succeeds if any channel does"""
        results: Dict[str, DeliveryResult] = {}
        if self.smtp_configured:
            results["email"] = await self.send_email(recipients, title, message, data, priority)
        if self.slack_configured:
            results["slack"] = await self.send_slack(title, message, data, priority)
        return {
            "success": any(r.success for r in results.values()),
            "results": {channel: r.to_dict() for channel, r in results.items()},
        }

    # ── Notifications ────────────────────────────────────

    async def send_digest(
        self,
        organization_id: str,
        insights: List[InsightRecord],
        summary: Optional[InsightSummary] = None,
    ) -> Dict[str, Any]:
        """Weekly digest of an organization's top insights"""
        recipients = self.directory.admin_emails(organization_id)
        title = f"Weekly Business Insights - {utcnow().strftime('%Y-%m-%d')}"

        high_count = len([i for i in insights if i.urgency in ("high", "critical")])
        message = (
            f"Weekly Summary:\n"
            f"- {len(insights)} top insights this week\n"
            f"- {high_count} need attention soon\n"
            f"\nTop Insights:\n"
        )
        for insight in insights:
            message += f"\n• [{insight.urgency.upper()}] {insight.title}"

        data = {"organization": organization_id}
        if summary is not None:
            data.update({"unread_insights": summary.unread, "average_impact": summary.avg_impact_score})

        log.info(f"Sending weekly digest to {len(recipients)} admins of organization {organization_id}")
        return await self.broadcast(recipients, title, message, data=data, priority="medium")

    async def send_stale_integration_alert(self, integration, stale_hours: int) -> Dict[str, Any]:
        recipients = self.directory.admin_emails(integration.organization_id)
        last_sync = integration.last_sync_at.strftime("%Y-%m-%d %H:%M UTC") if integration.last_sync_at else "never"
        title = f"Integration sync stale: {integration.platform}"
        message = (
            f"The {integration.platform} integration ({integration.platform_account_id}) has not synced "
            f"successfully in over {stale_hours} hours.\n\nLast successful sync: {last_sync}\n\n"
            f"Check the integration's credentials and reconnect it if needed."
        )
        log.warning(f"Stale integration alert: {integration.id} ({integration.platform})")
        return await self.broadcast(
            recipients,
            title,
            message,
            data={"integration_id": integration.id, "last_sync": last_sync},
            priority="high",
        )

    def _create_html_email(
        self,
        title: str,
        message: str,
        data: Optional[Dict],
        priority: str
    ) -> str:
        """Create HTML email body"""
        color = PRIORITY_COLORS.get(priority, "#6c757d")

        html = f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; }}
        .header {{ background-color: {color}; color: white; padding: 20px; }}
        .content {{ padding: 20px; }}
        .footer {{ background-color: #f8f9fa; padding: 10px; text-align: center; font-size: 12px; }}
        .data-table td {{ padding: 8px; border-bottom: 1px solid #dee2e6; }}
    </style>
</head>
<body>
    <div class="header"><h2>{title}</h2></div>
    <div class="content">
        <p>{message.replace(chr(10), '<br>')}</p>
"""
        if data:
            html += '<table class="data-table">'
            for key, value in data.items():
                html += f"<tr><td>{key.replace('_', ' ').title()}</td><td>{value}</td></tr>"
            html += "</table>"

        html += f"""
    </div>
    <div class="footer">
        <p>{self.settings.app_name}</p>
        <p>Generated at {utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")}</p>
    </div>
</body>
</html>
"""
        return html

    def get_delivery_stats(self) -> Dict[str, Any]:
        total_attempts = self.total_sent + self.total_failed
        success_rate = (self.total_sent / total_attempts * 100) if total_attempts > 0 else 0.0
        return {
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "total_retries": self.total_retries,
            "success_rate": round(success_rate, 2),
            "channels_configured": {
                "email": self.smtp_configured,
                "slack": self.slack_configured,
            },
        }
