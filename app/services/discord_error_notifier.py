"""
Discord Error Notification Service for MainEvents
Sends error notifications to Discord webhook for real-time monitoring
"""
import httpx
import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging
from app.config import settings

logger = logging.getLogger(__name__)


class DiscordErrorNotifier:
    """Send error notifications to Discord webhook"""

    def __init__(self, webhook_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self._transport = transport

    async def _post(self, payload: Dict[str, Any]) -> Optional[httpx.Response]:
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            return await client.post(self.webhook_url, json=payload)

    async def send_error(
        self,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
        request_info: Optional[Dict[str, Any]] = None
    ):
        """Send error notification to Discord"""
        try:
            error_type = type(error).__name__
            error_message = str(error)
            error_traceback = ''.join(traceback.format_exception(type(error), error, error.__traceback__))

            if len(error_traceback) > 1900:
                error_traceback = error_traceback[:1900] + "\n... (truncated)"

            embed = {
                "title": f"Error: {error_type}",
                "description": error_message[:2000] if error_message else "No message",
                "color": 15158332,  # Red
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "fields": []
            }

            if request_info:
                request_details = []
                if request_info.get('method'):
                    request_details.append(f"**Method:** {request_info['method']}")
                if request_info.get('url'):
                    request_details.append(f"**URL:** {request_info['url']}")
                if request_info.get('client_host'):
                    request_details.append(f"**Client:** {request_info['client_host']}")

                if request_details:
                    embed["fields"].append({
                        "name": "Request",
                        "value": "\n".join(request_details),
                        "inline": False
                    })

            if context:
                context_details = [f"**{k}:** {v}" for k, v in context.items()]
                if context_details:
                    embed["fields"].append({
                        "name": "Context",
                        "value": "\n".join(context_details)[:1024],
                        "inline": False
                    })

            embed["fields"].append({
                "name": "Traceback",
                "value": f"```python\n{error_traceback[:900]}\n```",
                "inline": False
            })

            embed["fields"].append({
                "name": "Environment",
                "value": f"**Env:** {settings.environment}",
                "inline": True
            })

            response = await self._post({
                "embeds": [embed],
                "username": "MainEvents Error Monitor"
            })
            if response is not None and response.status_code == 204:
                logger.info(f"Error notification sent: {error_type}")

        except Exception as e:
            logger.error(f"Failed to send error to Discord: {e}")

    async def send_warning(
        self,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ):
        """Send warning notification to Discord (scheduler health check, reconciliation anomalies)"""
        try:
            embed = {
                "title": f"Warning: {title}",
                "description": message[:2000],
                "color": 16776960,  # Yellow
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

            if context:
                embed["fields"] = [
                    {"name": k, "value": str(v)[:1024], "inline": True}
                    for k, v in context.items()
                ]

            await self._post({
                "embeds": [embed],
                "username": "MainEvents Warning"
            })

        except Exception as e:
            logger.error(f"Failed to send warning to Discord: {e}")


# Global error notifier instance
error_notifier = None
if settings.discord_error_webhook_url:
    error_notifier = DiscordErrorNotifier(settings.discord_error_webhook_url)
