"""
Main coordination logic for the swap oracle.

Ties the vault, the order tracker and the redemption engine together and
exposes the operations the outside world calls: create a swap, look at
it, put its order on the exchange, redeem it. The background side consumes
tracker outcomes (redeem on fill, alert an operator otherwise), watches
HTLC addresses for funding, sweeps expired swaps and, on start, picks up
orders a previous run left live.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from .config import Config, config
from .errors import (
    AlreadyRedeemedError,
    InvalidInputError,
    LedgerRejectedError,
    ProtocolViolationError,
    RedemptionError,
    ServiceUnavailableError,
    StateConflictError,
    SwapError,
)
from .exchange import ExchangeService, HTTPExchangeService
from .health import HealthServer
from .ledger import LedgerClient, create_ledger
from .models import (
    HTLCDescriptor,
    OutcomeKind,
    RedemptionResult,
    SpendableOutput,
    SwapOutcome,
    SwapSecretRecord,
    SwapStatus,
)
from .notifiers import NotificationManager
from .order_tracker import OrderTracker
from .push_channel import PushChannel
from .redemption import RedemptionEngine
from .script_builder import build_htlc
from .secret_store import create_secret_store
from .secret_vault import SecretVault

logger = structlog.get_logger()

# Statuses a swap can still expire from
OPEN_STATUSES = (SwapStatus.ACTIVE, SwapStatus.ORDER_PENDING, SwapStatus.ORDER_PARTIAL)
# Statuses with an order live on the exchange
LIVE_ORDER_STATUSES = (SwapStatus.ORDER_PENDING, SwapStatus.ORDER_PARTIAL)


class SwapOrchestrator:
    """
    Central coordinator for swap custody and settlement.

    Owns exactly one of each component; nothing here is a module-level
    singleton, so tests can build as many independent oracles as they like.
    """

    def __init__(
        self,
        vault: SecretVault,
        tracker: OrderTracker,
        redemption: RedemptionEngine,
        exchange: ExchangeService,
        notification_mgr: NotificationManager,
        settings: Optional[Config] = None,
        enable_health_server: Optional[bool] = None,
        ledger: Optional[LedgerClient] = None,
    ):
        """
        Wire up all the moving parts.

        Args:
            vault: Secret custody and swap status
            tracker: Follows exchange orders, emits outcomes
            redemption: Claims HTLC funds once the order filled
            exchange: Market maker client for quotes, orders and cancels
            notification_mgr: Operator alerts
            settings: Defaults to the global config
            enable_health_server: Whether to expose health check endpoints
            ledger: Watches HTLC addresses for funding; defaults to the
                redemption engine's ledger
        """
        self.vault = vault
        self.tracker = tracker
        self.redemption = redemption
        self.ledger = ledger or redemption.ledger
        self.exchange = exchange
        self.notification_mgr = notification_mgr
        self.settings = settings or config
        if enable_health_server is None:
            enable_health_server = self.settings.enable_health_server
        self.health_server = (
            HealthServer(self.settings.health_port, self._tracking_sessions)
            if enable_health_server
            else None
        )
        self.is_running = False
        self.background_tasks: list[asyncio.Task] = []
        self.funding_tasks: dict[str, asyncio.Task] = {}
        self._closers: list = []

        # Stats for the status endpoint
        self.swaps_created = 0
        self.swaps_redeemed = 0

    @property
    def network(self) -> str:
        return self.settings.bitcoin_network

    def descriptor_for(self, record: SwapSecretRecord) -> HTLCDescriptor:
        """Recompute the HTLC from the stored hash and key."""
        return build_htlc(
            bytes.fromhex(record.secret_hash),
            bytes.fromhex(record.redeemer_public_key),
            self.network,
        )

    # Produced surface

    async def create_swap(
        self,
        redeemer_public_key: bytes | str,
        amount: int,
        timelock: Optional[int] = None,
        order_params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Create the secret and derive the HTLC the counterparty should fund.

        With ``order_params`` the HTLC address is watched in the background
        and the order goes out as soon as the funding output shows up.
        """
        swap_id = await self.vault.create(redeemer_public_key, amount, timelock)
        record = await self.vault.get(swap_id)
        descriptor = self.descriptor_for(record)
        self.swaps_created += 1

        logger.info(
            "🔐 Swap created",
            swap_id=swap_id,
            address=descriptor.address,
            amount=amount,
            network=self.network,
        )
        if order_params is not None:
            self.watch_funding(swap_id, order_params)
        return {
            "swapId": swap_id,
            "address": descriptor.address,
            "script": descriptor.script_hex,
            "hash": record.secret_hash,
            "expiresAt": record.expires_at.isoformat(),
        }

    async def get_swap_view(
        self, swap_id: str, network_policy: Optional[str] = None
    ) -> dict[str, Any]:
        """Disclosure-gated view of a swap plus its HTLC and tracking state."""
        view = await self.vault.export_for_disclosure(swap_id, network_policy)
        descriptor = build_htlc(
            bytes.fromhex(view["hash"]),
            bytes.fromhex(view["redeemerPublicKey"]),
            self.network,
        )
        view["address"] = descriptor.address
        view["script"] = descriptor.script_hex
        view["tracking"] = self.get_tracking_status(swap_id)
        return view

    def get_tracking_status(self, swap_id: str) -> dict[str, Any]:
        return self.tracker.get_tracking_status(swap_id).model_dump(
            by_alias=True, mode="json", exclude={"swap_id"}
        )

    async def submit_order(
        self,
        swap_id: str,
        params: dict[str, Any],
        funding: Optional[SpendableOutput] = None,
    ) -> str:
        """
        Put the swap's order on the exchange and start following it.

        Only swaps that are still ``active`` and not past their expiry can
        submit an order.
        """
        record = await self.vault.get(swap_id)
        if record.status != SwapStatus.ACTIVE:
            raise StateConflictError(
                f"Swap {swap_id} is {record.status.value}, expected active",
                swap_id=swap_id,
            )
        if await self.vault.expire_if_due(swap_id):
            raise StateConflictError(f"Swap {swap_id} has expired", swap_id=swap_id)

        quote = await self.exchange.get_quote(params)
        order_reference = await self.exchange.submit_order(params)

        extra = {
            "orderReference": order_reference,
            "orderSubmittedAt": datetime.now(timezone.utc).isoformat(),
            "quote": {
                key: quote.get(key)
                for key in ("sellAmount", "buyAmount", "feeAmount")
                if key in quote
            },
        }
        if funding is not None:
            extra["funding"] = funding.model_dump()
        await self.vault.update_status(swap_id, SwapStatus.ORDER_PENDING, extra)
        await self.tracker.start_tracking(swap_id, order_reference)

        logger.info(
            "📤 Order submitted",
            swap_id=swap_id,
            order_reference=order_reference,
        )
        return order_reference

    async def cancel_order(self, swap_id: str, reason: str = "Cancelled by operator"):
        """
        Operator cancellation: cancel at the exchange, stop tracking, fail the swap.

        If the exchange refuses or cannot be reached the order may still
        fill, so tracking carries on and the error propagates.
        """
        record = await self.vault.get(swap_id)
        if not record.order_reference:
            raise StateConflictError(f"Swap {swap_id} has no order", swap_id=swap_id)

        await self.exchange.cancel_order(record.order_reference)
        await self.tracker.stop_tracking(swap_id)
        await self.vault.update_status(
            swap_id,
            SwapStatus.ORDER_FAILED,
            {"reason": reason, "failedAt": datetime.now(timezone.utc).isoformat()},
        )
        logger.info("🛑 Order cancelled", swap_id=swap_id, reason=reason)

    async def start_redemption(
        self, swap_id: str, destination: Optional[str] = None
    ) -> RedemptionResult:
        """Redeem the HTLC of a completed swap."""
        record = await self.vault.get(swap_id)
        if record.status == SwapStatus.REDEEMED:
            raise AlreadyRedeemedError(
                f"Swap {swap_id} already redeemed in {record.transaction_id}",
                swap_id=swap_id,
            )
        if record.status != SwapStatus.COMPLETED:
            raise StateConflictError(
                f"Swap {swap_id} is {record.status.value}, cannot redeem yet",
                swap_id=swap_id,
            )

        destination = destination or self.settings.redeem_destination_address
        if not destination:
            raise InvalidInputError("No redemption destination address given")

        descriptor = self.descriptor_for(record)
        result = await self.redemption.redeem(
            descriptor.address,
            record.preimage,
            descriptor.script,
            destination,
            swap_id=swap_id,
        )
        self.swaps_redeemed += 1
        self._update_health()
        return result

    async def resolve_abandoned(self, swap_id: str, status: SwapStatus | str, reason: str):
        return await self.vault.resolve_abandoned(swap_id, status, reason)

    # Funding

    async def _funding_output(self, record: SwapSecretRecord) -> Optional[SpendableOutput]:
        address = self.descriptor_for(record).address
        for output in await self.ledger.list_spendable_outputs(address):
            if output.amount >= record.locked_amount:
                return output
        return None

    async def check_funding(self, swap_id: str) -> Optional[SpendableOutput]:
        """First output at the HTLC address covering the locked amount, if any."""
        return await self._funding_output(await self.vault.get(swap_id))

    async def await_funding(self, swap_id: str, order_params: dict[str, Any]) -> str:
        """
        Wait for the HTLC to be funded, then submit the swap's order.

        Raises StateConflictError once the swap expires or stops being
        ``active``. Failed ledger lookups are logged and checked again on
        the next tick.
        """
        logger.info("👀 Watching HTLC for funding", swap_id=swap_id)
        while True:
            record = await self.vault.get(swap_id)
            if record.status != SwapStatus.ACTIVE:
                raise StateConflictError(
                    f"Swap {swap_id} is {record.status.value}, no longer awaiting funding",
                    swap_id=swap_id,
                )
            if await self.vault.expire_if_due(swap_id):
                raise StateConflictError(
                    f"Swap {swap_id} expired before it was funded", swap_id=swap_id
                )

            try:
                funding = await self._funding_output(record)
            except (ServiceUnavailableError, LedgerRejectedError) as e:
                logger.warning("Funding check failed, will retry", swap_id=swap_id, error=str(e))
                funding = None

            if funding is not None:
                logger.info(
                    "💵 HTLC funded",
                    swap_id=swap_id,
                    txid=funding.txid,
                    vout=funding.vout,
                    amount=funding.amount,
                )
                return await self.submit_order(swap_id, order_params, funding=funding)

            await asyncio.sleep(self.settings.funding_poll_interval)

    def watch_funding(self, swap_id: str, order_params: dict[str, Any]) -> asyncio.Task:
        """Run ``await_funding`` in the background; one watcher per swap."""
        task = self.funding_tasks.get(swap_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(
            self._watch_funding(swap_id, order_params), name=f"funding-{swap_id}"
        )
        self.funding_tasks[swap_id] = task
        task.add_done_callback(lambda done: self._forget_funding_task(swap_id, done))
        return task

    def _forget_funding_task(self, swap_id: str, task: asyncio.Task):
        if self.funding_tasks.get(swap_id) is task:
            del self.funding_tasks[swap_id]

    async def _watch_funding(self, swap_id: str, order_params: dict[str, Any]):
        try:
            await self.await_funding(swap_id, order_params)
        except StateConflictError as e:
            logger.warning("Stopped watching for funding", swap_id=swap_id, reason=e.message)
        except SwapError as e:
            logger.error(
                "🔥 Funded swap could not submit its order",
                swap_id=swap_id,
                code=e.code,
                error=str(e),
            )
            await self.notification_mgr.alert(
                "🔥 Order submission failed",
                f"Swap: {swap_id}\nError: {e.code}: {e.message}",
            )

    # Background work

    def _tracking_sessions(self) -> list[dict[str, Any]]:
        return [
            session.model_dump(by_alias=True, mode="json")
            for session in self.tracker.active_sessions()
        ]

    def _update_health(self):
        if self.health_server:
            self.health_server.update_status(
                network=self.network,
                swaps_created=self.swaps_created,
                swaps_redeemed=self.swaps_redeemed,
                tracked_orders=len(self.tracker.active_sessions()),
            )

    def _can_auto_redeem(self) -> bool:
        return (
            self.settings.auto_redeem
            and self.redemption.key is not None
            and bool(self.settings.redeem_destination_address)
        )

    async def handle_outcome(self, outcome: SwapOutcome):
        """React to a finished order."""
        if outcome.kind != OutcomeKind.COMPLETED:
            await self.notification_mgr.notify_outcome(outcome)
            return

        if not self._can_auto_redeem():
            logger.info("Order filled, awaiting manual redemption", swap_id=outcome.swap_id)
            return

        try:
            result = await self.start_redemption(outcome.swap_id)
            logger.info(
                "💰 Auto-redeemed swap",
                swap_id=outcome.swap_id,
                txid=result.transaction_id,
            )
        except AlreadyRedeemedError:
            logger.info("Swap was already redeemed", swap_id=outcome.swap_id)
        except (
            RedemptionError,
            StateConflictError,
            ProtocolViolationError,
            ServiceUnavailableError,
        ) as e:
            logger.error(
                "🔥 Auto-redemption failed",
                swap_id=outcome.swap_id,
                code=e.code,
                error=str(e),
            )
            await self.notification_mgr.alert(
                "🔥 Redemption failed",
                f"Swap: {outcome.swap_id}\nError: {e.code}: {e.message}",
            )

    async def _consume_outcomes(self):
        while self.is_running:
            outcome = await self.tracker.outcomes.get()
            try:
                await self.handle_outcome(outcome)
            except Exception as e:
                logger.error(
                    "🔥 Error handling swap outcome",
                    swap_id=outcome.swap_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self.tracker.outcomes.task_done()
                self._update_health()

    async def sweep_expired(self) -> list[str]:
        """Expire every open swap, tracked or not, whose timelock window has passed."""
        expired = []
        for record in await self.vault.list_swaps(OPEN_STATUSES):
            swap_id = record.swap_id
            try:
                if await self.vault.expire_if_due(swap_id):
                    await self.tracker.stop_tracking(swap_id)
                    expired.append(swap_id)
                    logger.warning("⏰ Swap expired", swap_id=swap_id)
            except SwapError as e:
                logger.error("Expiry check failed", swap_id=swap_id, error=str(e))
        return expired

    async def resume_tracking(self) -> list[str]:
        """Follow again the orders a previous run left live in the store."""
        resumed = []
        for record in await self.vault.list_swaps(LIVE_ORDER_STATUSES):
            swap_id = record.swap_id
            if not record.order_reference or self.tracker.is_tracking(swap_id):
                continue
            try:
                if await self.vault.expire_if_due(swap_id):
                    logger.warning("⏰ Swap expired", swap_id=swap_id)
                    continue
                await self.tracker.start_tracking(swap_id, record.order_reference)
            except SwapError as e:
                logger.error("Could not resume order tracking", swap_id=swap_id, error=str(e))
                continue
            resumed.append(swap_id)

        if resumed:
            logger.info("🔄 Resumed order tracking", count=len(resumed))
        return resumed

    async def _expiry_loop(self):
        while self.is_running:
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error("🔥 Error in expiry sweep", error=str(e))
            await asyncio.sleep(self.settings.check_interval)

    async def start(self):
        """Run the background workers until stopped."""
        self.is_running = True
        logger.info("🚀 Starting swap oracle", network=self.network)

        if self.health_server:
            await self.health_server.start()
            self.health_server.update_status(
                started_at=datetime.now(timezone.utc).isoformat()
            )
            self._update_health()

        try:
            await self.resume_tracking()
        except SwapError as e:
            logger.error("🔥 Could not resume order tracking", error=str(e))

        self.background_tasks = [
            asyncio.create_task(self._consume_outcomes(), name="outcome-consumer"),
            asyncio.create_task(self._expiry_loop(), name="expiry-sweep"),
        ]

        try:
            await asyncio.gather(*self.background_tasks)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(
                "💥 Background task crashed",
                error=str(e),
                task_count=len(self.background_tasks),
            )
            raise

    async def stop(self):
        """Gracefully shut down all services."""
        self.is_running = False
        logger.info("🛑 Shutting down swap oracle")

        tasks = self.background_tasks + list(self.funding_tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=30.0,
            )
        except asyncio.TimeoutError:
            logger.warning("⏰ Shutdown timeout - some tasks may still be running")

        await self.tracker.close()

        if self.health_server:
            await self.health_server.stop()

        logger.info("✅ Swap oracle stopped cleanly")

    async def close(self):
        """Release clients and storage opened by ``create_orchestrator``."""
        for closer in self._closers:
            await closer()


async def create_orchestrator(
    settings: Optional[Config] = None, enable_health_server: Optional[bool] = None
) -> SwapOrchestrator:
    """Build a fully wired oracle from configuration."""
    settings = settings or config

    store = create_secret_store(settings)
    await store.init()
    vault = SecretVault(store, settings)

    exchange = HTTPExchangeService(settings)
    push = PushChannel(settings.exchange_ws_url) if settings.exchange_ws_url else None
    tracker = OrderTracker(vault, exchange, push, settings)

    ledger = create_ledger(settings)
    redemption = RedemptionEngine(ledger, vault, settings)

    orchestrator = SwapOrchestrator(
        vault=vault,
        tracker=tracker,
        redemption=redemption,
        exchange=exchange,
        notification_mgr=NotificationManager(settings),
        settings=settings,
        enable_health_server=enable_health_server,
    )
    orchestrator._closers = [exchange.close, ledger.close, store.close]
    return orchestrator
