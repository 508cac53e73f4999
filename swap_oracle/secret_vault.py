"""
Custody of HTLC secrets.

The vault is the only component that ever touches a preimage. It generates
it, persists it alongside the swap's status, and decides whether it may be
shown to anyone. Status changes go through ``update_status`` which checks
them against the transition graph under a per-swap lock, so a push update
and a poll tick for the same swap can never interleave a read-modify-write.
"""

import asyncio
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

import structlog
from pydantic import ValidationError

from .config import TEST_NETWORK_POLICIES, Config, config
from .errors import (
    InvalidInputError,
    InvalidTransitionError,
    ProtocolViolationError,
    SecretExistsError,
    SecretNotFoundError,
    SecretStoreClientError,
    SecretStoreTransientError,
    StorageError,
    StorageUnavailableError,
    SwapNotFoundError,
)
from .locks import KeyedLock
from .models import (
    RedemptionResult,
    SwapSecretRecord,
    SwapStatus,
    can_transition,
    utcnow,
)
from .retry import RetryPolicy, retry_async
from .script_builder import hash_preimage, validate_public_key
from .secret_store import SecretStore

logger = structlog.get_logger()

T = TypeVar("T")

BLOCK_INTERVAL = timedelta(minutes=10)

# Keys of ``extra`` that live on the record itself rather than in details
_LIFTED_FIELDS = {
    "orderReference": "order_reference",
    "order_reference": "order_reference",
    "transactionId": "transaction_id",
    "transaction_id": "transaction_id",
}


class SecretVault:
    """Swap id -> secret record, with retries and the disclosure policy."""

    def __init__(
        self,
        store: SecretStore,
        settings: Optional[Config] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings or config
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.settings)
        self._sleep = sleep
        self._locks = KeyedLock("vault")

    async def _with_retry(
        self,
        description: str,
        swap_id: Optional[str],
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            return await retry_async(
                operation,
                self.retry_policy,
                retry_on=(SecretStoreTransientError,),
                description=description,
                sleep=self._sleep,
                swap_id=swap_id,
            )
        except SecretStoreTransientError as e:
            raise StorageUnavailableError(
                f"Secret store unavailable during {description}: {e}", swap_id=swap_id
            ) from e

    def _validate_create(self, redeemer_public_key, amount, timelock) -> bytes:
        public_key = validate_public_key(redeemer_public_key)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidInputError("Amount must be a positive integer number of satoshis")
        if amount > self.settings.max_lock_amount:
            raise InvalidInputError(
                f"Amount exceeds maximum of {self.settings.max_lock_amount} satoshis"
            )
        if not isinstance(timelock, int) or isinstance(timelock, bool) or timelock < 1:
            raise InvalidInputError("Timelock must be at least one block")
        return public_key

    async def create(
        self,
        redeemer_public_key: bytes | str,
        amount: int,
        timelock: Optional[int] = None,
    ) -> str:
        """
        Generate a fresh secret for a new swap and persist it.

        Input is validated before any I/O. The hash is always computed from
        the generated preimage; callers never supply either.

        Returns:
            The new swap id.
        """
        timelock = self.settings.default_timelock_blocks if timelock is None else timelock
        public_key = self._validate_create(redeemer_public_key, amount, timelock)

        preimage = secrets.token_bytes(32)
        swap_id = str(uuid.uuid4())
        now = utcnow()
        record = SwapSecretRecord(
            swap_id=swap_id,
            secret_hash=hash_preimage(preimage).hex(),
            preimage=preimage.hex(),
            redeemer_public_key=public_key.hex(),
            locked_amount=amount,
            timelock_blocks=timelock,
            status=SwapStatus.ACTIVE,
            created_at=now,
            expires_at=now + BLOCK_INTERVAL * timelock,
            last_updated=now,
        )

        try:
            await self._with_retry(
                "create", swap_id, lambda: self.store.put(swap_id, record.to_storage())
            )
        except SecretExistsError as e:
            raise StorageError(f"Swap {swap_id} already exists", swap_id=swap_id) from e
        except SecretStoreClientError as e:
            raise StorageError(f"Secret store rejected swap {swap_id}: {e}") from e

        logger.info(
            "Created swap secret",
            swap_id=swap_id,
            hash_preview=record.secret_hash[:16],
            amount=amount,
            timelock=timelock,
        )
        return swap_id

    async def get(self, swap_id: str) -> SwapSecretRecord:
        """Load a record, checking the hash invariant on the way."""
        try:
            data = await self._with_retry("get", swap_id, lambda: self.store.get(swap_id))
        except SecretNotFoundError:
            raise SwapNotFoundError(f"Swap {swap_id} not found", swap_id=swap_id) from None
        except SecretStoreClientError as e:
            raise StorageError(f"Secret store rejected read of {swap_id}: {e}") from e

        try:
            return SwapSecretRecord.model_validate(data)
        except ValidationError as e:
            logger.error(
                "Stored swap record failed validation",
                swap_id=swap_id,
                error=str(e),
                security=True,
            )
            raise ProtocolViolationError(
                f"Stored record for {swap_id} is corrupt", swap_id=swap_id
            ) from e

    async def list_swaps(
        self, statuses: Iterable[SwapStatus | str] = ()
    ) -> list[SwapSecretRecord]:
        """Live records, optionally only those in one of ``statuses``."""
        wanted = [SwapStatus(status).value for status in statuses] or [None]
        swap_ids: list[str] = []
        for status in wanted:
            try:
                swap_ids += await self._with_retry(
                    "list", None, lambda status=status: self.store.list_swap_ids(status)
                )
            except SecretStoreClientError as e:
                raise StorageError(f"Secret store rejected listing: {e}") from e

        records = []
        for swap_id in dict.fromkeys(swap_ids):
            try:
                records.append(await self.get(swap_id))
            except SwapNotFoundError:
                # deleted since the listing
                continue
        return records

    async def _write(self, record: SwapSecretRecord) -> None:
        swap_id = record.swap_id
        try:
            await self._with_retry(
                "update", swap_id, lambda: self.store.update(swap_id, record.to_storage())
            )
        except SecretNotFoundError:
            raise SwapNotFoundError(f"Swap {swap_id} not found", swap_id=swap_id) from None
        except SecretStoreClientError as e:
            raise StorageError(f"Secret store rejected update of {swap_id}: {e}") from e

    async def _transition(
        self,
        swap_id: str,
        new_status: SwapStatus,
        extra: Optional[dict[str, Any]],
        allow: Callable[[SwapSecretRecord], bool],
    ) -> SwapSecretRecord:
        async with self._locks.hold(swap_id, f"status:{new_status.value}"):
            record = await self.get(swap_id)
            if not allow(record):
                raise InvalidTransitionError(
                    record.status.value, new_status.value, swap_id=swap_id
                )

            updates: dict[str, Any] = {"status": new_status, "last_updated": utcnow()}
            details = dict(record.details)
            for key, value in (extra or {}).items():
                if key in _LIFTED_FIELDS:
                    updates[_LIFTED_FIELDS[key]] = value
                else:
                    details[key] = value
            updates["details"] = details

            updated = record.model_copy(update=updates)
            await self._write(updated)

        logger.info(
            "Swap status updated",
            swap_id=swap_id,
            previous=record.status.value,
            status=new_status.value,
        )
        return updated

    async def update_status(
        self,
        swap_id: str,
        new_status: SwapStatus | str,
        extra: Optional[dict[str, Any]] = None,
    ) -> SwapSecretRecord:
        """
        Move a swap to ``new_status``, merging ``extra`` into the record.

        Abandoned swaps are left alone here; only ``resolve_abandoned``
        may move them on.

        Raises:
            SwapNotFoundError: no such swap
            InvalidTransitionError: the transition graph forbids it
            StorageUnavailableError: the store kept failing
        """
        new_status = SwapStatus(new_status)
        return await self._transition(
            swap_id,
            new_status,
            extra,
            lambda record: record.status != SwapStatus.ABANDONED
            and can_transition(record.status, new_status),
        )

    async def resolve_abandoned(
        self, swap_id: str, new_status: SwapStatus | str, reason: str
    ) -> SwapSecretRecord:
        """Operator decision for a swap whose order went missing."""
        new_status = SwapStatus(new_status)
        record = await self._transition(
            swap_id,
            new_status,
            {"resolution": reason, "resolvedAt": utcnow().isoformat()},
            lambda record: record.status == SwapStatus.ABANDONED
            and can_transition(record.status, new_status),
        )
        logger.warning(
            "Abandoned swap resolved by operator",
            swap_id=swap_id,
            status=new_status.value,
            reason=reason,
        )
        return record

    async def note_pending_redemption(
        self, swap_id: str, result: Optional[RedemptionResult]
    ) -> SwapSecretRecord:
        """
        Remember a signed redemption before it is broadcast.

        The swap stays ``completed``. If the broadcast lands but recording
        it fails, a later attempt finds the output spent and finishes the
        bookkeeping from this entry.
        """
        return await self._transition(
            swap_id,
            SwapStatus.COMPLETED,
            {
                "pendingRedemption": result.model_dump(by_alias=True, mode="json")
                if result is not None
                else None
            },
            lambda record: record.status == SwapStatus.COMPLETED,
        )

    async def pending_redemption(self, swap_id: str) -> Optional[RedemptionResult]:
        record = await self.get(swap_id)
        pending = record.details.get("pendingRedemption")
        if not pending:
            return None
        return RedemptionResult.model_validate(pending)

    async def record_redemption(
        self, swap_id: str, result: RedemptionResult
    ) -> SwapSecretRecord:
        """Redemption-completion signal: ``completed`` -> ``redeemed``."""
        return await self.update_status(
            swap_id,
            SwapStatus.REDEEMED,
            {
                "transactionId": result.transaction_id,
                "claimedAmount": result.claimed_amount,
                "feePaid": result.fee_paid,
                "redeemedAt": utcnow().isoformat(),
                "pendingRedemption": None,
            },
        )

    async def expire_if_due(self, swap_id: str, now: Optional[datetime] = None) -> bool:
        """
        Mark a swap expired once its timelock window has passed.

        Completed swaps are skipped: the order already filled and the
        redemption must still go through.
        """
        now = now or utcnow()
        record = await self.get(swap_id)
        if record.expires_at > now:
            return False
        if record.status == SwapStatus.COMPLETED or not can_transition(
            record.status, SwapStatus.EXPIRED
        ):
            return False
        if record.status == SwapStatus.ABANDONED:
            return False

        try:
            await self.update_status(
                swap_id, SwapStatus.EXPIRED, {"expiredAt": now.isoformat()}
            )
        except InvalidTransitionError:
            # Status moved on between the read and the locked update
            return False
        return True

    async def export_for_disclosure(
        self, swap_id: str, network_policy: Optional[str] = None
    ) -> dict[str, Any]:
        """
        The only way a record leaves the oracle.

        The preimage is included solely for the non-value-bearing policies
        (regtest, testnet, signet). Production and anything unrecognised
        get the record without it.
        """
        network_policy = network_policy or self.settings.network_policy
        record = await self.get(swap_id)
        view = record.to_storage()
        if network_policy not in TEST_NETWORK_POLICIES:
            view.pop("preimage", None)
        return view

    async def delete(self, swap_id: str, force: bool = False) -> Optional[datetime]:
        """Schedule the secret for deletion, or delete it now with ``force``."""
        window = self.settings.secret_recovery_window_days
        try:
            deletion_date = await self._with_retry(
                "delete",
                swap_id,
                lambda: self.store.delete(swap_id, recovery_window_days=window, force=force),
            )
        except SecretNotFoundError:
            raise SwapNotFoundError(f"Swap {swap_id} not found", swap_id=swap_id) from None
        except SecretStoreClientError as e:
            raise StorageError(f"Secret store rejected deletion of {swap_id}: {e}") from e

        logger.warning(
            "Swap secret deletion initiated",
            swap_id=swap_id,
            force=force,
            deletion_date=deletion_date.isoformat() if deletion_date else None,
        )
        return deletion_date

    async def restore(self, swap_id: str) -> None:
        """Cancel a pending deletion inside the recovery window."""
        try:
            await self._with_retry("restore", swap_id, lambda: self.store.restore(swap_id))
        except SecretNotFoundError:
            raise SwapNotFoundError(f"Swap {swap_id} not found", swap_id=swap_id) from None
        except SecretStoreClientError as e:
            raise StorageError(f"Secret store rejected restore of {swap_id}: {e}") from e
        logger.warning("Swap secret restored", swap_id=swap_id)
