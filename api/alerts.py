import logging
import time
import aiohttp
from typing import Dict, Optional
from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        url = url or config.section('monitoring').get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': int(time.time() * 1000),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def circuit_breaker_alert(self, reason: str, order_id: Optional[int] = None, fee: Optional[float] = None):
        await self.send_alert(
            'circuit_breaker',
            f'Trading disabled: {reason}',
            'critical',
            {'reason': reason, 'order_id': order_id, 'fee': fee}
        )

    async def close_failed_alert(self, symbol: str, error: str):
        await self.send_alert(
            'close_failed',
            f'Failed to close {symbol} position: {error}',
            'critical',
            {'symbol': symbol, 'error': error}
        )

    async def lifecycle_alert(self, state: str, symbol: str, reason: Optional[str] = None):
        await self.send_alert(
            'lifecycle',
            f'Bot {state} for {symbol}' + (f' ({reason})' if reason else ''),
            'info',
            {'state': state, 'symbol': symbol, 'reason': reason}
        )


alert_webhook = AlertWebhook()
