import asyncio
import logging
import aiohttp
from typing import Dict, Iterable, Optional


logger = logging.getLogger(__name__)

class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
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
            'timestamp': asyncio.get_running_loop().time(),
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
                    if response.status != 200:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def boot_failure_alert(self, failed_steps: Iterable[str]):
        steps = sorted(failed_steps)
        await self.send_alert(
            'boot_failure',
            f"System boot failed: {', '.join(steps)}",
            'critical',
            {'failed_steps': steps}
        )

    async def lock_timeout_alert(self, kind: str, held_s: float):
        await self.send_alert(
            'order_lock_timeout',
            f'{kind} submission unanswered after {held_s:.1f}s; lock force-released',
            'critical',
            {'kind': kind, 'held_s': held_s}
        )

    async def stop_loss_alert(self, price: str, amount: str):
        await self.send_alert(
            'stop_loss',
            f'Stop loss sell {amount} @ {price}',
            'warning',
            {'price': price, 'amount': amount}
        )

    async def stream_lost_alert(self, reason: str):
        await self.send_alert(
            'stream_lost',
            f'Exchange stream lost: {reason}',
            'critical',
            {'reason': reason}
        )
