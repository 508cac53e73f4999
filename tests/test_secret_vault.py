"""Tests for secret custody, status transitions and disclosure."""

import asyncio
import hashlib
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from helpers import RecordingSleep
from swap_oracle.errors import (
    InvalidInputError,
    InvalidTransitionError,
    SecretAccessDeniedError,
    SecretExistsError,
    SecretStoreTransientError,
    StorageError,
    StorageUnavailableError,
    SwapNotFoundError,
)
from swap_oracle.models import RedemptionResult, SwapStatus
from swap_oracle.secret_store import SecretStore
from swap_oracle.secret_vault import SecretVault


@pytest.fixture
def mock_store():
    return AsyncMock(spec=SecretStore)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_persists_active_record(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 100_000_000, 144)
        record = await vault.get(swap_id)

        assert record.status == SwapStatus.ACTIVE
        assert record.locked_amount == 100_000_000
        assert record.timelock_blocks == 144
        assert record.redeemer_public_key == redeemer_pubkey.hex()
        assert record.expires_at - record.created_at == timedelta(minutes=1440)

    @pytest.mark.asyncio
    async def test_hash_matches_preimage(self, vault, redeemer_pubkey):
        swap_ids = [await vault.create(redeemer_pubkey, 50_000, 6) for _ in range(5)]

        preimages = set()
        for swap_id in swap_ids:
            record = await vault.get(swap_id)
            preimage = bytes.fromhex(record.preimage)
            assert len(preimage) == 32
            assert hashlib.sha256(preimage).hexdigest() == record.secret_hash
            preimages.add(record.preimage)

        assert len(preimages) == 5

    @pytest.mark.asyncio
    async def test_default_timelock(self, vault, redeemer_pubkey, settings):
        record = await vault.get(await vault.create(redeemer_pubkey, 10_000))
        assert record.timelock_blocks == settings.default_timelock_blocks

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "pubkey,amount,timelock",
        [
            ("04" + "11" * 32, 10_000, 144),
            (None, 0, 144),
            (None, -5, 144),
            (None, 100_000_001, 144),
            (None, 10_000, 0),
            (None, True, 144),
        ],
    )
    async def test_invalid_input_never_touches_store(
        self, mock_store, settings, redeemer_pubkey, pubkey, amount, timelock
    ):
        vault = SecretVault(mock_store, settings)

        with pytest.raises(InvalidInputError):
            await vault.create(pubkey or redeemer_pubkey, amount, timelock)

        mock_store.put.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_write_is_storage_error(self, mock_store, settings, redeemer_pubkey):
        mock_store.put.side_effect = SecretExistsError("taken")
        vault = SecretVault(mock_store, settings)

        with pytest.raises(StorageError):
            await vault.create(redeemer_pubkey, 10_000, 10)
        assert mock_store.put.await_count == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_with_backoff(
        self, mock_store, settings, no_sleep, vault, redeemer_pubkey
    ):
        real = await vault.store.get(await vault.create(redeemer_pubkey, 10_000, 10))
        mock_store.get.side_effect = [
            SecretStoreTransientError("throttled"),
            SecretStoreTransientError("throttled"),
            real,
        ]
        sleep = RecordingSleep()
        flaky = SecretVault(mock_store, settings, sleep=sleep)

        record = await flaky.get(real["swapId"])

        assert record.swap_id == real["swapId"]
        assert mock_store.get.await_count == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_storage_unavailable(
        self, mock_store, settings, no_sleep
    ):
        mock_store.get.side_effect = SecretStoreTransientError("down")
        vault = SecretVault(mock_store, settings, sleep=no_sleep)

        with pytest.raises(StorageUnavailableError) as exc_info:
            await vault.get("swap-1")

        assert isinstance(exc_info.value, StorageError)
        assert mock_store.get.await_count == settings.max_retries

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, mock_store, settings, no_sleep):
        mock_store.get.side_effect = SecretAccessDeniedError("nope")
        vault = SecretVault(mock_store, settings, sleep=no_sleep)

        with pytest.raises(StorageError):
            await vault.get("swap-1")

        assert mock_store.get.await_count == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, settings):
        from swap_oracle.retry import RetryPolicy

        policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_update_merges_extra(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)

        await vault.update_status(swap_id, SwapStatus.ORDER_PENDING, {"orderReference": "R1"})
        await vault.update_status(
            swap_id, "completed", {"txHash": "0xabc", "executedAmounts": {"sell": "1"}}
        )
        record = await vault.get(swap_id)

        assert record.status == SwapStatus.COMPLETED
        assert record.order_reference == "R1"
        assert record.details["txHash"] == "0xabc"
        assert record.details["executedAmounts"] == {"sell": "1"}

    @pytest.mark.asyncio
    async def test_missing_swap(self, vault):
        with pytest.raises(SwapNotFoundError):
            await vault.update_status("nope", SwapStatus.ORDER_PENDING)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "terminal", [SwapStatus.ORDER_FAILED, SwapStatus.EXPIRED]
    )
    async def test_terminal_statuses_are_final(self, vault, redeemer_pubkey, terminal):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)
        await vault.update_status(swap_id, terminal)

        for target in SwapStatus:
            with pytest.raises(InvalidTransitionError):
                await vault.update_status(swap_id, target)

        assert (await vault.get(swap_id)).status == terminal

    @pytest.mark.asyncio
    async def test_completed_only_moves_to_redeemed(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)
        await vault.update_status(swap_id, SwapStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await vault.update_status(swap_id, SwapStatus.ORDER_PENDING)

        result = RedemptionResult(
            transaction_id="ab" * 32,
            claimed_amount=9_000,
            fee_paid=1_000,
            spent_txid="cd" * 32,
            spent_vout=0,
            destination="bcrt1qexample",
        )
        record = await vault.record_redemption(swap_id, result)

        assert record.status == SwapStatus.REDEEMED
        assert record.transaction_id == "ab" * 32
        assert record.details["claimedAmount"] == 9_000

        with pytest.raises(InvalidTransitionError):
            await vault.record_redemption(swap_id, result)

    @pytest.mark.asyncio
    async def test_abandoned_needs_operator(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)
        await vault.update_status(swap_id, SwapStatus.ABANDONED, {"reason": "gone"})

        with pytest.raises(InvalidTransitionError):
            await vault.update_status(swap_id, SwapStatus.COMPLETED)

        record = await vault.resolve_abandoned(swap_id, SwapStatus.ORDER_FAILED, "confirmed dead")
        assert record.status == SwapStatus.ORDER_FAILED
        assert record.details["resolution"] == "confirmed dead"

    @pytest.mark.asyncio
    async def test_resolve_requires_abandoned(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)

        with pytest.raises(InvalidTransitionError):
            await vault.resolve_abandoned(swap_id, SwapStatus.COMPLETED, "eh")

    @pytest.mark.asyncio
    async def test_concurrent_updates_do_not_lose_writes(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)

        await asyncio.gather(
            *(
                vault.update_status(swap_id, SwapStatus.ORDER_PARTIAL, {f"fill{i}": i})
                for i in range(8)
            )
        )
        record = await vault.get(swap_id)

        assert {f"fill{i}" for i in range(8)} <= set(record.details)

    @pytest.mark.asyncio
    async def test_expire_if_due(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 1)
        record = await vault.get(swap_id)

        assert not await vault.expire_if_due(swap_id, now=record.created_at)
        assert await vault.expire_if_due(swap_id, now=record.expires_at + timedelta(seconds=1))
        assert (await vault.get(swap_id)).status == SwapStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_completed_swaps_do_not_expire(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 1)
        record = await vault.update_status(swap_id, SwapStatus.COMPLETED)

        assert not await vault.expire_if_due(swap_id, now=record.expires_at + timedelta(days=1))


class TestDisclosure:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", ["regtest", "testnet", "signet"])
    async def test_test_networks_include_preimage(self, vault, redeemer_pubkey, policy):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)
        view = await vault.export_for_disclosure(swap_id, policy)

        assert view["swapId"] == swap_id
        assert hashlib.sha256(bytes.fromhex(view["preimage"])).hexdigest() == view["hash"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", ["production", "mainnet", "unknown"])
    async def test_preimage_never_leaves_in_production(self, vault, redeemer_pubkey, policy):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)

        for status in (SwapStatus.ACTIVE, SwapStatus.COMPLETED):
            if status != SwapStatus.ACTIVE:
                await vault.update_status(swap_id, status)
            view = await vault.export_for_disclosure(swap_id, policy)
            assert "preimage" not in view
            assert view["hash"]

    @pytest.mark.asyncio
    async def test_default_policy_follows_network(self, store, settings, redeemer_pubkey):
        mainnet = settings.model_copy(update={"bitcoin_network": "mainnet"})
        vault = SecretVault(store, mainnet)
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)

        assert "preimage" not in await vault.export_for_disclosure(swap_id)


class TestDeletion:
    @pytest.mark.asyncio
    async def test_delete_and_restore(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)

        deletion_date = await vault.delete(swap_id)
        assert deletion_date is not None
        with pytest.raises(SwapNotFoundError):
            await vault.get(swap_id)

        await vault.restore(swap_id)
        assert (await vault.get(swap_id)).swap_id == swap_id

    @pytest.mark.asyncio
    async def test_forced_delete_is_final(self, vault, redeemer_pubkey):
        swap_id = await vault.create(redeemer_pubkey, 10_000, 10)
        await vault.delete(swap_id, force=True)

        with pytest.raises(SwapNotFoundError):
            await vault.restore(swap_id)
