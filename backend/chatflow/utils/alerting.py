# /chatflow/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any

from chatflow.config.settings import settings
from chatflow.models.flow import utcnow

# Sends critical alerts (deferred work that exhausted its retries, channel
# authentication failures) to an external webhook.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.client = client or (httpx.AsyncClient(timeout=5.0) if webhook_url else None)

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        if not self.client or not self.webhook_url:
            return
        try:
            alert_data = {
                "severity": "critical", "service": "chatflow-engine",
                "error": error, "context": context, "timestamp": utcnow().isoformat(),
                "environment": settings.environment,
            }
            await self.client.post(self.webhook_url, json=alert_data)
        except Exception as e:
            logger.error(f"Failed to send critical alert: {e}")

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url)
