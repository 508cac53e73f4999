"""
Order reconciliation for live swaps.

Each tracked swap follows its exchange order either through the shared
push channel or, when that is unavailable, by polling the exchange. Both
channels feed the same reconciliation routine, which runs under a per-swap
lock and translates order states into vault status changes. When an order
reaches a final state the tracker stops following it and puts a
``SwapOutcome`` on ``self.outcomes`` for whoever drives redemption.

The channel is recorded on each entry, never inferred from whether the
socket happens to be up at the moment.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import ValidationError

from .config import Config, config
from .errors import (
    ExchangeError,
    InvalidTransitionError,
    OrderNotFoundError,
    ServiceUnavailableError,
    StorageError,
    SwapNotFoundError,
)
from .exchange import ExchangeService
from .locks import KeyedLock
from .models import (
    Channel,
    OrderState,
    OrderStatus,
    OutcomeKind,
    SwapOutcome,
    SwapStatus,
    TrackingStatus,
    utcnow,
)
from .push_channel import PushChannel
from .secret_vault import SecretVault

logger = structlog.get_logger()


@dataclass
class PushMode:
    connection: PushChannel


@dataclass
class PollMode:
    task: asyncio.Task


TrackingMode = Union[PushMode, PollMode]


@dataclass
class TrackedOrder:
    """One swap being followed; owned by the tracker."""

    swap_id: str
    order_reference: str
    started_at: datetime
    mode: Optional[TrackingMode] = None
    last_checked: Optional[datetime] = None
    reconnect_attempts: int = 0
    last_reported: Optional[tuple] = field(default=None, repr=False)

    @property
    def channel(self) -> Optional[Channel]:
        if isinstance(self.mode, PushMode):
            return Channel.PUSH
        if isinstance(self.mode, PollMode):
            return Channel.POLL
        return None


class OrderTracker:
    """Follows exchange orders and reports how they end."""

    def __init__(
        self,
        vault: SecretVault,
        exchange: ExchangeService,
        push_channel: Optional[PushChannel] = None,
        settings: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.vault = vault
        self.exchange = exchange
        self.settings = settings or config
        self.push = push_channel
        if self.push is not None:
            self.push.set_handlers(self.handle_push_message, self._on_push_disconnect)
        self._clock = clock
        self._sleep = sleep

        self._orders: dict[str, TrackedOrder] = {}
        self._locks = KeyedLock("tracker")
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False
        self.outcomes: asyncio.Queue[SwapOutcome] = asyncio.Queue(
            maxsize=self.settings.outcome_queue_size
        )

    # Public surface

    async def start_tracking(self, swap_id: str, order_reference: str) -> TrackingStatus:
        """
        Begin following ``order_reference`` for ``swap_id``.

        Any previous tracking of the swap is replaced. Push is preferred;
        if the channel cannot be reached within the connect timeout the
        swap is polled instead, starting immediately.
        """
        async with self._locks.hold(swap_id, "start"):
            await self._stop_locked(swap_id)
            entry = TrackedOrder(
                swap_id=swap_id,
                order_reference=order_reference,
                started_at=self._clock(),
            )
            self._orders[swap_id] = entry

            if await self._subscribe_push(entry):
                entry.mode = PushMode(self.push)
            else:
                entry.mode = PollMode(self._spawn_poller(entry))

        logger.info(
            "Started order tracking",
            swap_id=swap_id,
            order_reference=order_reference,
            channel=entry.channel.value,
        )
        return self.get_tracking_status(swap_id)

    async def stop_tracking(self, swap_id: str) -> bool:
        """Stop following a swap. Safe to call repeatedly."""
        async with self._locks.hold(swap_id, "stop"):
            return await self._stop_locked(swap_id)

    def is_tracking(self, swap_id: str) -> bool:
        return swap_id in self._orders

    def get_tracking_status(self, swap_id: str) -> TrackingStatus:
        entry = self._orders.get(swap_id)
        if entry is None:
            return TrackingStatus(swap_id=swap_id, tracking=False)
        return TrackingStatus(
            swap_id=swap_id,
            tracking=True,
            channel=entry.channel,
            order_reference=entry.order_reference,
            started_at=entry.started_at,
            last_checked=entry.last_checked,
            reconnect_attempts=entry.reconnect_attempts,
        )

    def active_sessions(self) -> list[TrackingStatus]:
        return [self.get_tracking_status(swap_id) for swap_id in list(self._orders)]

    async def close(self):
        """Stop every session and drop the push connection."""
        self._closed = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        for swap_id in list(self._orders):
            await self.stop_tracking(swap_id)
        if self.push is not None:
            await self.push.close()
        logger.info("Order tracker closed")

    # Reconciliation

    @staticmethod
    def _target_for(
        status: OrderStatus, now: datetime
    ) -> tuple[SwapStatus, dict[str, Any], Optional[OutcomeKind]]:
        state = status.status
        if state in (OrderState.OPEN, OrderState.PENDING):
            return SwapStatus.ORDER_PENDING, {}, None
        if state == OrderState.PARTIALLY_FILLED:
            return SwapStatus.ORDER_PARTIAL, {"executedAmounts": status.executed_amounts}, None
        if state == OrderState.FILLED:
            return (
                SwapStatus.COMPLETED,
                {
                    "txHash": status.tx_hash,
                    "executedAmounts": status.executed_amounts,
                    "completedAt": now.isoformat(),
                },
                OutcomeKind.COMPLETED,
            )
        return (
            SwapStatus.ORDER_FAILED,
            {"reason": f"Order {state.value}", "failedAt": now.isoformat()},
            OutcomeKind.FAILED,
        )

    async def reconcile(
        self, swap_id: str, status: OrderStatus, source: str = "poll"
    ) -> Optional[SwapOutcome]:
        """
        Apply one observed order status to the swap.

        Shared by both channels. Returns the outcome if the order reached a
        final state, otherwise None.
        """
        outcome = None
        async with self._locks.hold(swap_id, "reconcile"):
            entry = self._orders.get(swap_id)
            if entry is None:
                logger.info(
                    "Order update for untracked swap discarded",
                    swap_id=swap_id,
                    source=source,
                )
                return None

            now = self._clock()
            entry.last_checked = now
            target, extra, kind = self._target_for(status, now)

            # Skip rewriting an unchanged non-final status on every tick
            reported = (target, repr(extra))
            if kind is None and entry.last_reported == reported:
                return None

            try:
                await self.vault.update_status(swap_id, target, extra)
            except (InvalidTransitionError, SwapNotFoundError) as e:
                logger.warning(
                    "Swap can no longer follow its order, tracking stopped",
                    swap_id=swap_id,
                    order_status=status.status.value,
                    error=str(e),
                )
                await self._stop_locked(swap_id)
                return None
            entry.last_reported = reported

            logger.info(
                "Order status reconciled",
                swap_id=swap_id,
                order_status=status.status.value,
                swap_status=target.value,
                source=source,
            )

            if kind is not None:
                await self._stop_locked(swap_id)
                outcome = SwapOutcome(
                    swap_id=swap_id,
                    kind=kind,
                    order_reference=entry.order_reference,
                    status=status.status,
                    reason=extra.get("reason"),
                )

        if outcome is not None:
            await self.outcomes.put(outcome)
        return outcome

    # Push channel

    async def _subscribe_push(self, entry: TrackedOrder) -> bool:
        if self.push is None or self._closed:
            return False
        if not self.push.connected:
            if not await self.push.connect(self.settings.push_connect_timeout):
                return False
        return await self.push.subscribe(entry.swap_id, entry.order_reference)

    async def handle_push_message(self, message: dict[str, Any]):
        """Route a decoded push message to reconciliation."""
        message_type = message.get("type")
        if message_type == "subscriptionConfirmed":
            logger.debug("Push subscription confirmed", swap_id=message.get("swapId"))
            return
        if message_type != "orderUpdate":
            logger.debug("Ignoring push message", type=message_type)
            return

        swap_id = message.get("swapId")
        entry = self._orders.get(swap_id)
        if entry is None:
            logger.info("Push update for unknown swap discarded", swap_id=swap_id)
            return
        reference = message.get("orderReference")
        if reference and reference != entry.order_reference:
            logger.info(
                "Push update for stale order discarded",
                swap_id=swap_id,
                order_reference=reference,
            )
            return

        try:
            status = OrderStatus.from_wire(message.get("payload") or {})
        except (ValueError, ValidationError) as e:
            logger.warning("Malformed order update", swap_id=swap_id, error=str(e))
            return

        await self.reconcile(swap_id, status, source="push")

    def _push_swaps(self) -> list[str]:
        return [
            swap_id
            for swap_id, entry in self._orders.items()
            if isinstance(entry.mode, PushMode)
        ]

    def _on_push_disconnect(self):
        if self._closed or not self._push_swaps():
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(
                self._reconnect(), name="push-reconnect"
            )

    async def _reconnect(self):
        """Back off and reconnect; demote everything to polling if that fails."""
        max_attempts = self.settings.push_max_reconnect_attempts
        for attempt in range(1, max_attempts + 1):
            swaps = self._push_swaps()
            if not swaps or self._closed:
                return
            for swap_id in swaps:
                self._orders[swap_id].reconnect_attempts = attempt

            delay = self.settings.push_reconnect_base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Push channel lost, reconnecting",
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                swaps=len(swaps),
            )
            await self._sleep(delay)

            if await self.push.connect(self.settings.push_connect_timeout):
                await self._resubscribe()
                # A drop while resubscribing lands while this task is still running
                if not self.push.connected:
                    logger.warning("Push channel dropped while resubscribing", attempt=attempt)
                    continue
                logger.info("Push channel reconnected", attempt=attempt)
                return

        logger.warning(
            "Push reconnect attempts exhausted, falling back to polling",
            attempts=max_attempts,
        )
        for swap_id in self._push_swaps():
            await self._demote(swap_id)

    async def _resubscribe(self):
        for swap_id in self._push_swaps():
            async with self._locks.hold(swap_id, "resubscribe"):
                entry = self._orders.get(swap_id)
                if entry is None or not isinstance(entry.mode, PushMode):
                    continue
                if await self.push.subscribe(swap_id, entry.order_reference):
                    entry.reconnect_attempts = 0
                else:
                    entry.mode = PollMode(self._spawn_poller(entry))

    async def _demote(self, swap_id: str):
        async with self._locks.hold(swap_id, "demote"):
            entry = self._orders.get(swap_id)
            if entry is None or not isinstance(entry.mode, PushMode):
                return
            entry.mode = PollMode(self._spawn_poller(entry))
            logger.info("Swap demoted to polling", swap_id=swap_id)

    # Polling

    def _spawn_poller(self, entry: TrackedOrder) -> asyncio.Task:
        return asyncio.create_task(self._poll_loop(entry), name=f"poll-{entry.swap_id}")

    async def _poll_loop(self, entry: TrackedOrder):
        while self._orders.get(entry.swap_id) is entry:
            try:
                await self._poll_once(entry)
            except (ExchangeError, ServiceUnavailableError, StorageError) as e:
                logger.warning(
                    "Order poll failed, will retry",
                    swap_id=entry.swap_id,
                    error=str(e),
                )
            except Exception as e:
                logger.error(
                    "Unexpected error while polling order",
                    swap_id=entry.swap_id,
                    error=str(e),
                    exc_info=True,
                )
            if self._orders.get(entry.swap_id) is not entry:
                return
            await self._sleep(self.settings.poll_interval)

    async def _poll_once(self, entry: TrackedOrder):
        try:
            status = await self.exchange.get_order_status(entry.order_reference)
        except OrderNotFoundError:
            await self._handle_missing_order(entry)
            return
        await self.reconcile(entry.swap_id, status, source="poll")

    async def _handle_missing_order(self, entry: TrackedOrder):
        now = self._clock()
        entry.last_checked = now
        age = (now - entry.started_at).total_seconds()
        if age <= self.settings.order_not_found_grace:
            logger.info(
                "Order not found yet",
                swap_id=entry.swap_id,
                order_reference=entry.order_reference,
                age=round(age),
            )
            return

        async with self._locks.hold(entry.swap_id, "abandon"):
            if self._orders.get(entry.swap_id) is not entry:
                return
            reason = f"Order not found for {round(age)}s"
            try:
                await self.vault.update_status(
                    entry.swap_id,
                    SwapStatus.ABANDONED,
                    {"reason": reason, "abandonedAt": now.isoformat()},
                )
            except (InvalidTransitionError, SwapNotFoundError) as e:
                logger.warning(
                    "Could not mark swap abandoned", swap_id=entry.swap_id, error=str(e)
                )
            await self._stop_locked(entry.swap_id)

        logger.warning(
            "Order missing past grace period, swap needs operator attention",
            swap_id=entry.swap_id,
            order_reference=entry.order_reference,
            age=round(age),
        )
        await self.outcomes.put(
            SwapOutcome(
                swap_id=entry.swap_id,
                kind=OutcomeKind.ABANDONED,
                order_reference=entry.order_reference,
                reason=reason,
            )
        )

    # Teardown

    async def _stop_locked(self, swap_id: str) -> bool:
        """Remove the entry; caller holds the swap's lock."""
        entry = self._orders.pop(swap_id, None)
        if entry is None:
            return False

        mode = entry.mode
        if isinstance(mode, PollMode):
            # A poller stopping itself just falls out of its loop
            if mode.task is not asyncio.current_task():
                mode.task.cancel()
        elif isinstance(mode, PushMode):
            await mode.connection.unsubscribe(swap_id, entry.order_reference)

        logger.info(
            "Stopped order tracking",
            swap_id=swap_id,
            channel=entry.channel.value if entry.channel else None,
        )
        return True
