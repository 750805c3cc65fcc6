"""
Dispatch Engine - Alerting.

============================================================
PURPOSE
============================================================
Sends operator alerts for dispatch events via Telegram.

ALERT TYPES:
- Orders expired without an executor
- Fulfilment statuses overrunning their timeout
- Collaborator failures

SAFETY REQUIREMENTS:
- Abnormal events reach an operator
- Rate limiting to prevent spam
- Alert delivery never blocks dispatch

============================================================
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from .clock import ClockProtocol, SystemClock
from .config import DispatchAlertingConfig
from .events import (
    DispatchEvent,
    EventBus,
    OrderSearchFailed,
    SlaBreached,
    CollaboratorFailure,
)


logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SEVERITY_ORDER = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertType(Enum):
    """Types of alerts."""

    SEARCH_EXHAUSTED = "SEARCH_EXHAUSTED"
    """No executor found; order expired."""

    SLA_BREACHED = "SLA_BREACHED"
    """Order stuck in a fulfilment status."""

    COLLABORATOR_FAILURE = "COLLABORATOR_FAILURE"
    """External collaborator failed."""


@dataclass
class Alert:
    """An alert to be sent."""

    alert_type: AlertType
    """Type of alert."""

    severity: AlertSeverity
    """Severity level."""

    message: str
    """Alert message."""

    timestamp: datetime
    """When the alert was raised."""

    order_id: Optional[str] = None
    """Related order ID."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


def alert_for_event(event: DispatchEvent) -> Optional[Alert]:
    """Map a dispatch event to an alert, or None if it is not alert-worthy."""
    if isinstance(event, OrderSearchFailed):
        return Alert(
            alert_type=AlertType.SEARCH_EXHAUSTED,
            severity=AlertSeverity.WARNING,
            message=f"No executor found after {event.attempts} attempts",
            timestamp=event.timestamp,
            order_id=event.order_id,
            details={"requester": event.requester_id, "can_retry": event.can_retry},
        )
    if isinstance(event, SlaBreached):
        status = event.status.value if event.status else "?"
        return Alert(
            alert_type=AlertType.SLA_BREACHED,
            severity=AlertSeverity.ERROR,
            message=f"Order overran {status} ({event.timeout_seconds:.0f}s)",
            timestamp=event.timestamp,
            order_id=event.order_id,
            details={"executor": event.executor_id or "-"},
        )
    if isinstance(event, CollaboratorFailure):
        details: Dict[str, Any] = {"collaborator": event.collaborator}
        if event.attempt_number is not None:
            details["attempt"] = event.attempt_number
        return Alert(
            alert_type=AlertType.COLLABORATOR_FAILURE,
            severity=AlertSeverity.WARNING,
            message=f"{event.collaborator} failed: {event.error}",
            timestamp=event.timestamp,
            order_id=event.order_id,
            details=details,
        )
    return None


# ============================================================
# TELEGRAM ALERTER
# ============================================================

class TelegramAlerter:
    """
    Sends dispatch alerts via Telegram.

    Features:
    - Rate limiting
    - Alert aggregation
    - Severity filtering
    """

    def __init__(
        self,
        config: Optional[DispatchAlertingConfig] = None,
        clock: Optional[ClockProtocol] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize Telegram alerter.

        Args:
            config: Alerting configuration
            clock: Time source for rate limiting
            session: HTTP session (created lazily if None)
        """
        self._config = config or DispatchAlertingConfig()
        self._clock = clock or SystemClock()

        self._bot_token = os.environ.get(self._config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(self._config.telegram_chat_id_env, "")
        self._min_severity = AlertSeverity(self._config.min_severity)

        # Rate limiting
        self._last_alert_time: Optional[datetime] = None
        self._alerts_this_minute: List[datetime] = []

        # Aggregation
        self._pending_alerts: Dict[str, List[Alert]] = {}
        self._aggregation_tasks: List[asyncio.Task] = []

        self._session = session
        self._history: List[Alert] = []
        self._max_history = 100

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self._bot_token and self._chat_id)

    def attach(self, bus: EventBus) -> None:
        """Subscribe to the alert-worthy events the config enables."""
        event_types = []
        if self._config.alert_on_search_exhausted:
            event_types.append(OrderSearchFailed)
        if self._config.alert_on_sla_breach:
            event_types.append(SlaBreached)
        if self._config.alert_on_collaborator_failure:
            event_types.append(CollaboratorFailure)
        if event_types:
            bus.subscribe(self.handle_event, event_types)

    async def handle_event(self, event: DispatchEvent) -> bool:
        alert = alert_for_event(event)
        if alert is None:
            return False
        return await self.send_alert(alert)

    async def send_alert(self, alert: Alert) -> bool:
        """
        Send an alert.

        Returns:
            Whether the alert was sent or queued for aggregation
        """
        if not self._config.telegram_enabled:
            logger.debug(f"Alerting disabled, dropping {alert.alert_type.value}: {alert.message}")
            return False

        if SEVERITY_ORDER[alert.severity] < SEVERITY_ORDER[self._min_severity]:
            return False

        self._history.append(alert)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        if not self._can_send():
            logger.warning(f"Alert rate limited: {alert.message}")
            return False

        if self._config.aggregate_similar:
            key = self._aggregation_key(alert)
            if key in self._pending_alerts:
                self._pending_alerts[key].append(alert)
                return False
            self._pending_alerts[key] = [alert]
            task = asyncio.create_task(self._send_aggregated(key))
            self._aggregation_tasks.append(task)
            task.add_done_callback(self._aggregation_tasks.remove)
            return True

        return await self._send_telegram(alert)

    async def _send_aggregated(self, key: str) -> None:
        await asyncio.sleep(self._config.aggregation_window_seconds)

        alerts = self._pending_alerts.pop(key, [])
        if not alerts:
            return
        if len(alerts) == 1:
            await self._send_telegram(alerts[0])
            return

        first = alerts[0]
        message = (
            f"{len(alerts)}x {first.alert_type.value}\n"
            f"First: {first.message}\n"
            f"Count: {len(alerts)} in last {self._config.aggregation_window_seconds:.0f}s"
        )
        await self._send_telegram(Alert(
            alert_type=first.alert_type,
            severity=first.severity,
            message=message,
            timestamp=self._clock.now(),
            details={"orders": ", ".join(a.order_id[:8] for a in alerts if a.order_id)},
        ))

    async def _send_telegram(self, alert: Alert) -> bool:
        if not self.is_configured:
            logger.debug(f"Telegram not configured, logging alert: {alert.message}")
            return False

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession()

            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
            payload = {
                "chat_id": self._chat_id,
                "text": self.format_message(alert),
                "parse_mode": "HTML",
            }
            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    self._record_sent()
                    logger.info(f"Alert sent: {alert.alert_type.value}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False

        except Exception as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

    def format_message(self, alert: Alert) -> str:
        """Format alert message for Telegram."""
        lines = [
            f"<b>{alert.alert_type.value}</b>",
            f"<b>Severity:</b> {alert.severity.value}",
            f"<b>Time:</b> {alert.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            alert.message,
        ]
        if alert.order_id:
            lines.append(f"\n<b>Order:</b> <code>{alert.order_id}</code>")
        if alert.details:
            lines.append("\n<b>Details:</b>")
            for key, value in alert.details.items():
                lines.append(f"  - {key}: {value}")
        return "\n".join(lines)

    def _aggregation_key(self, alert: Alert) -> str:
        return f"{alert.alert_type.value}:{alert.severity.value}"

    def _can_send(self) -> bool:
        now = self._clock.now()
        if self._last_alert_time:
            elapsed = (now - self._last_alert_time).total_seconds()
            if elapsed < self._config.min_alert_interval_seconds:
                return False

        minute_ago = now - timedelta(minutes=1)
        self._alerts_this_minute = [t for t in self._alerts_this_minute if t > minute_ago]
        return len(self._alerts_this_minute) < self._config.max_alerts_per_minute

    def _record_sent(self) -> None:
        now = self._clock.now()
        self._last_alert_time = now
        self._alerts_this_minute.append(now)

    def get_history(self, limit: int = 10) -> List[Alert]:
        """Get alert history."""
        return self._history[-limit:]

    async def close(self) -> None:
        """Cancel pending aggregations and close the HTTP session."""
        for task in list(self._aggregation_tasks):
            task.cancel()
        if self._session:
            await self._session.close()
            self._session = None
