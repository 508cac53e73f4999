"""Operator alerts for swaps that need a human."""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

import structlog
from apprise import Apprise

from .config import Config, config
from .models import OutcomeKind, SwapOutcome

logger = structlog.get_logger()


class Notifier(ABC):
    """Base class for alert channels."""

    @abstractmethod
    async def notify(self, title: str, body: str) -> bool:
        """Deliver one alert."""
        pass


def format_outcome(outcome: SwapOutcome) -> tuple[str, str]:
    """Title and body for a tracker outcome."""
    titles = {
        OutcomeKind.COMPLETED: "✅ Swap order filled",
        OutcomeKind.FAILED: "❌ Swap order failed",
        OutcomeKind.ABANDONED: "⚠️ Swap needs operator attention",
    }
    lines = [
        f"Swap: {outcome.swap_id}",
        f"Order: {outcome.order_reference}",
    ]
    if outcome.status:
        lines.append(f"Order status: {outcome.status.value}")
    if outcome.reason:
        lines.append(f"Reason: {outcome.reason}")
    lines.append(f"🕐 {outcome.occurred_at.strftime('%Y-%m-%d %H:%M:%S')} UTC")
    return titles[outcome.kind], "\n".join(lines)


class AppriseNotifier(Notifier):
    """Multi-platform alerts using Apprise."""

    def __init__(self, urls: Optional[List[str]] = None):
        self.apprise = Apprise()

        urls = urls or config.apprise_urls
        for url in urls:
            self.apprise.add(url)

        if not self.apprise.urls():
            logger.warning("No Apprise URLs configured")

    async def notify(self, title: str, body: str) -> bool:
        try:
            # Apprise blocks, keep it off the event loop
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, self.apprise.notify, body, title)

            if result:
                logger.info("Sent Apprise alert", title=title)
            else:
                logger.warning("Apprise alert failed", title=title)
            return result

        except Exception as e:
            logger.error("Apprise error", title=title, error=str(e))
            return False


class ConsoleNotifier(Notifier):
    """Console output, always on."""

    async def notify(self, title: str, body: str) -> bool:
        print("\n" + "=" * 60)
        print(title)
        print(body)
        print("=" * 60 + "\n")
        return True


class NotificationManager:
    """Fans alerts out to every configured notifier."""

    def __init__(self, settings: Optional[Config] = None, notifiers: Optional[List[Notifier]] = None):
        settings = settings or config
        if notifiers is not None:
            self.notifiers = list(notifiers)
            return

        self.notifiers: List[Notifier] = []
        if settings.enable_apprise:
            self.notifiers.append(AppriseNotifier(settings.apprise_urls))
        self.notifiers.append(ConsoleNotifier())

    async def alert(self, title: str, body: str) -> int:
        """Send to all notifiers concurrently; returns how many succeeded."""
        results = await asyncio.gather(
            *(notifier.notify(title, body) for notifier in self.notifiers),
            return_exceptions=True,
        )
        success_count = sum(1 for r in results if r is True)
        logger.info(
            "Sent operator alert",
            title=title,
            success_count=success_count,
            total_count=len(self.notifiers),
        )
        return success_count

    async def notify_outcome(self, outcome: SwapOutcome) -> int:
        title, body = format_outcome(outcome)
        return await self.alert(title, body)
