"""
Operator alerts for failures that need a human: dead-lettered jobs and
polling configurations disabled after an authentication failure.
Supported channels: Slack incoming webhook and a generic JSON webhook.
"""
import logging
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone

import requests

from commerce_sync.core.config import settings

logger = logging.getLogger(__name__)


class AlertLevel:
    """Alert severity levels"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertManager:
    """Central alert dispatcher"""

    def __init__(self, config=None):
        self.config = config or settings
        self.enabled = self.config.alerts_enabled
        self.channels = self._load_channels()

    def _load_channels(self) -> Dict[str, bool]:
        """Enabled alert channels from configuration"""
        return {
            'slack': bool(self.config.alert_slack_enabled and self.config.alert_slack_webhook_url),
            'webhook': bool(self.config.alert_webhook_enabled and self.config.alert_webhook_url),
        }

    def send_alert(
        self,
        title: str,
        message: str,
        level: str = AlertLevel.ERROR,
        context: Optional[Dict[str, Any]] = None,
        channels: Optional[List[str]] = None
    ):
        """
        Send an alert to the configured channels.

        Delivery failures are logged and never raised to the caller.

        Args:
            title: Alert title
            message: Alert body
            level: Severity (info, warning, error, critical)
            context: Extra context (entity_id, job_id, channel_id...)
            channels: Specific channels (None = all enabled)
        """
        if not self.enabled:
            logger.debug("Alerts disabled globally")
            return

        if channels is None:
            channels = [ch for ch, enabled in self.channels.items() if enabled]

        alert_data = {
            'title': title,
            'message': message,
            'level': level,
            'context': context or {},
            'timestamp': datetime.now(timezone.utc).isoformat()
        }

        for channel in channels:
            try:
                if channel == 'slack' and self.channels.get('slack'):
                    self._send_slack(alert_data)
                elif channel == 'webhook' and self.channels.get('webhook'):
                    self._send_webhook(alert_data)
            except requests.RequestException as e:
                logger.error(f"Error sending alert to {channel}: {e}", exc_info=True)

    def _send_slack(self, alert_data: Dict[str, Any]):
        """Post alert to a Slack incoming webhook"""
        emoji = {
            AlertLevel.INFO: ':information_source:',
            AlertLevel.WARNING: ':warning:',
            AlertLevel.ERROR: ':x:',
            AlertLevel.CRITICAL: ':rotating_light:',
        }.get(alert_data['level'], ':bell:')

        fields = [
            {'title': key, 'value': str(value), 'short': True}
            for key, value in alert_data['context'].items()
        ]
        payload = {
            'text': f"{emoji} *{alert_data['title']}*",
            'attachments': [{
                'color': 'danger' if alert_data['level'] in (AlertLevel.ERROR, AlertLevel.CRITICAL) else 'warning',
                'text': alert_data['message'],
                'fields': fields,
                'footer': 'commerce-sync',
                'ts': int(datetime.now(timezone.utc).timestamp()),
            }]
        }
        response = requests.post(
            self.config.alert_slack_webhook_url,
            json=payload,
            timeout=10
        )
        response.raise_for_status()
        logger.info("Slack alert sent")

    def _send_webhook(self, alert_data: Dict[str, Any]):
        """Post alert JSON to a generic webhook"""
        response = requests.post(
            self.config.alert_webhook_url,
            json=alert_data,
            timeout=10
        )
        response.raise_for_status()
        logger.info("Webhook alert sent")


alert_manager = AlertManager()


def send_job_failed_alert(
    job_id: int,
    entity_id: int,
    operation: str,
    attempts: int,
    error: str,
    channel_id: Optional[int] = None
):
    """Alert for a job that exhausted its retries and was dead-lettered."""
    alert_manager.send_alert(
        title=f"Sync job {job_id} dead-lettered",
        message=f"{operation} for entity {entity_id} failed after {attempts} attempts: {error}",
        level=AlertLevel.ERROR,
        context={
            'job_id': job_id,
            'entity_id': entity_id,
            'operation': operation,
            'channel_id': channel_id,
            'attempts': attempts,
        }
    )


def send_channel_disabled_alert(channel_id: int, tenant_id: str, reason: str):
    """Alert for a channel whose credentials were rejected."""
    alert_manager.send_alert(
        title=f"Channel {channel_id} disabled",
        message=f"Sync for tenant {tenant_id} stopped until credentials are refreshed: {reason}",
        level=AlertLevel.CRITICAL,
        context={'channel_id': channel_id, 'tenant_id': tenant_id}
    )
