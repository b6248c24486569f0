# /app/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any

from app.config.settings import settings
from app.models.session import utcnow

# Posts critical failures of the flow engine (unhandled errors while driving a
# conversation) to an external webhook, when one is configured.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str]):
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        if not self.client:
            return
        alert_data = {
            "severity": "critical",
            "service": "onboarding-flow-engine",
            "error": error,
            "context": context,
            "timestamp": utcnow().isoformat(),
            "environment": settings.environment,
        }
        try:
            response = await self.client.post(self.webhook_url, json=alert_data)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send critical alert: {e}")

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url)
