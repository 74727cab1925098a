"""Operator alerts for swaps that need attention."""

import asyncio
from abc import ABC, abstractmethod

import structlog
from apprise import Apprise

from .config import Config, config as default_config
from .models import AlertKind, SwapAlert, SwapState

logger = structlog.get_logger()


class Notifier(ABC):
    """Base class for alert channels."""

    @abstractmethod
    async def notify(self, alert: SwapAlert) -> bool:
        """Deliver one alert; True on success."""
        pass

    def format_alert_message(self, alert: SwapAlert) -> str:
        state = alert.state
        parts = [
            f"Swap {state.order_id}: {alert.message}",
            "",
            f"Status: {state.status.value}",
            f"Hashlock: {state.hashlock[:16]}...",
        ]
        for escrow in state.locked_escrows():
            ref = escrow.address or escrow.ref
            parts.append(f"Locked {escrow.side.value}: {escrow.amount} at {ref}")
        if alert.kind == AlertKind.REFUND:
            for escrow in (state.src, state.dst):
                if escrow and escrow.refund_txid:
                    parts.append(f"Refund {escrow.side.value}: {escrow.refund_txid}")
        if state.last_error:
            parts.append(f"Error: {state.last_error.get('type')}: {state.last_error.get('message')}")
        parts.append(f"Updated: {state.updated_at.strftime('%Y-%m-%d %H:%M:%S')} UTC")
        return "\n".join(parts)


class AppriseNotifier(Notifier):
    """Multi-platform alerts through Apprise."""

    def __init__(self, urls: list[str] | None = None):
        self.apprise = Apprise()
        for url in urls if urls is not None else default_config.apprise_urls:
            self.apprise.add(url)

        if not self.apprise.urls():
            logger.warning("No Apprise URLs configured")

    async def notify(self, alert: SwapAlert) -> bool:
        try:
            message = self.format_alert_message(alert)
            title = f"HTLC resolver: swap {alert.kind.value}"

            # Apprise is blocking
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, self.apprise.notify, message, title)

            if result:
                logger.info("Sent Apprise alert", order_id=alert.state.order_id, kind=alert.kind.value)
            else:
                logger.warning("Apprise alert failed", order_id=alert.state.order_id)
            return result

        except Exception as e:
            logger.error("Apprise error", order_id=alert.state.order_id, error=str(e))
            return False


class ConsoleNotifier(Notifier):
    """Writes alerts to stdout."""

    async def notify(self, alert: SwapAlert) -> bool:
        print("\n" + "=" * 60)
        print(self.format_alert_message(alert))
        print("=" * 60 + "\n")
        return True


class NotificationManager:
    """Fans alerts out to every configured channel."""

    def __init__(self, cfg: Config | None = None, notifiers: list[Notifier] | None = None):
        cfg = cfg or default_config
        if notifiers is not None:
            self.notifiers = list(notifiers)
            return

        self.notifiers: list[Notifier] = []
        if cfg.enable_apprise:
            self.notifiers.append(AppriseNotifier(cfg.apprise_urls))
        self.notifiers.append(ConsoleNotifier())

    async def alert(self, state: SwapState, kind: AlertKind, message: str) -> int:
        alert = SwapAlert(kind=kind, state=state, message=message)
        results = await asyncio.gather(
            *(notifier.notify(alert) for notifier in self.notifiers),
            return_exceptions=True,
        )
        success_count = sum(1 for r in results if r is True)
        logger.info(
            "Sent alerts",
            order_id=state.order_id,
            kind=kind.value,
            success_count=success_count,
            total_count=len(self.notifiers),
        )
        return success_count

    async def notify_failed(self, state: SwapState) -> int:
        return await self.alert(state, AlertKind.FAILED, "needs operator intervention")

    async def notify_refund(self, state: SwapState) -> int:
        return await self.alert(state, AlertKind.REFUND, "refund issued")
