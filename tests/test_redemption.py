"""Tests for HTLC redemption."""

import hashlib
from unittest.mock import AsyncMock

import pytest
from bitcoin import segwit_addr
from bitcoin.base58 import CBase58Data
from bitcoin.core import CTransaction, b2lx, lx
from bitcoin.core.script import SIGHASH_ALL, SIGVERSION_WITNESS_V0, CScript, SignatureHash
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.util import sigdecode_der

from helpers import FakeLedger
from swap_oracle.errors import (
    AddressMismatchError,
    AlreadyRedeemedError,
    BroadcastError,
    InsufficientFundsError,
    InvalidInputError,
    LedgerRejectedError,
    LedgerUnavailableError,
    NoUTXOError,
    PreimageMismatchError,
    RedemptionError,
    SecretStoreTransientError,
    StorageUnavailableError,
)
from swap_oracle.models import SwapStatus
from swap_oracle.redemption import RedeemerKey, RedemptionEngine
from swap_oracle.script_builder import build_htlc

PREIMAGE = bytes.fromhex("42" * 32)
DESTINATION = segwit_addr.encode("bcrt", 0, b"\x22" * 20)


@pytest.fixture
def htlc(redeemer_pubkey):
    return build_htlc(hashlib.sha256(PREIMAGE).digest(), redeemer_pubkey, "regtest")


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def engine(ledger, settings, redeemer_key, no_sleep):
    return RedemptionEngine(ledger, settings=settings, key=redeemer_key, sleep=no_sleep)


def _decode(raw_hex):
    return CTransaction.deserialize(bytes.fromhex(raw_hex))


class TestRedeem:
    @pytest.mark.asyncio
    async def test_claims_amount_minus_fee(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 5_000_000)

        result = await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert result.claimed_amount == 4_999_000
        assert result.fee_paid == 1000
        assert result.destination == DESTINATION
        assert len(ledger.broadcasts) == 1

        tx = _decode(ledger.broadcasts[0])
        assert b2lx(tx.GetTxid()) == result.transaction_id
        assert tx.nVersion == 2
        assert tx.vout[0].nValue == 4_999_000
        assert bytes(tx.vout[0].scriptPubKey) == b"\x00\x14" + b"\x22" * 20
        assert tx.vin[0].prevout.hash == lx(result.spent_txid)

    @pytest.mark.asyncio
    async def test_witness_layout_and_signature(self, engine, ledger, htlc, redeemer_pubkey):
        ledger.fund(htlc.address, 5_000_000)

        await engine.redeem(htlc.address, PREIMAGE.hex(), htlc.script_hex, DESTINATION)

        tx = _decode(ledger.broadcasts[0])
        signature, preimage, script = list(tx.wit.vtxinwit[0].scriptWitness.stack)
        assert preimage == PREIMAGE
        assert script == htlc.script
        assert signature[-1] == SIGHASH_ALL

        sighash = SignatureHash(
            CScript(htlc.script),
            tx,
            0,
            SIGHASH_ALL,
            amount=5_000_000,
            sigversion=SIGVERSION_WITNESS_V0,
        )
        verifying_key = VerifyingKey.from_string(redeemer_pubkey, curve=SECP256k1)
        assert verifying_key.verify_digest(signature[:-1], sighash, sigdecode=sigdecode_der)

    @pytest.mark.asyncio
    async def test_picks_first_output_above_fee(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 500, 3000, 9000)

        result = await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert result.claimed_amount == 2000
        assert result.spent_vout == 1
        assert result.spent_txid == f"{2:064x}"

    @pytest.mark.asyncio
    async def test_output_below_fee(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 500)

        with pytest.raises(InsufficientFundsError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert ledger.broadcasts == []

    @pytest.mark.asyncio
    async def test_output_equal_to_fee(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 1000)

        with pytest.raises(InsufficientFundsError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

    @pytest.mark.asyncio
    async def test_no_outputs(self, engine, ledger, htlc):
        with pytest.raises(NoUTXOError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert ledger.lookups == [htlc.address]


class TestLocalChecks:
    @pytest.mark.asyncio
    async def test_wrong_preimage_never_reaches_ledger(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 5_000_000)

        with pytest.raises(PreimageMismatchError):
            await engine.redeem(htlc.address, b"\x00" * 32, htlc.script, DESTINATION)

        assert ledger.lookups == []
        assert ledger.broadcasts == []

    @pytest.mark.asyncio
    async def test_address_must_match_script(self, engine, ledger, htlc, redeemer_pubkey):
        other = build_htlc(hashlib.sha256(b"other").digest(), redeemer_pubkey, "regtest")

        with pytest.raises(AddressMismatchError):
            await engine.redeem(other.address, PREIMAGE, htlc.script, DESTINATION)

        assert ledger.lookups == []

    @pytest.mark.asyncio
    async def test_signing_key_must_match_script(self, ledger, settings, htlc, no_sleep):
        engine = RedemptionEngine(
            ledger, settings=settings, key=RedeemerKey(b"\x22" * 32), sleep=no_sleep
        )

        with pytest.raises(InvalidInputError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

    @pytest.mark.asyncio
    async def test_missing_key(self, ledger, settings, htlc, no_sleep):
        engine = RedemptionEngine(ledger, settings=settings, sleep=no_sleep)

        with pytest.raises(RedemptionError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

    @pytest.mark.asyncio
    async def test_destination_on_wrong_network(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 5_000_000)

        with pytest.raises(InvalidInputError):
            await engine.redeem(
                htlc.address, PREIMAGE, htlc.script, segwit_addr.encode("bc", 0, b"\x22" * 20)
            )


class TestBroadcastOutcomes:
    @pytest.mark.asyncio
    async def test_already_known_counts_as_success(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 5_000_000)
        ledger.broadcast_errors.append(LedgerRejectedError("txn-already-in-mempool"))

        result = await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert len(result.transaction_id) == 64

    @pytest.mark.asyncio
    async def test_spent_output_is_already_redeemed(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 5_000_000)
        ledger.broadcast_errors.append(
            LedgerRejectedError("bad-txns-inputs-missingorspent")
        )

        with pytest.raises(AlreadyRedeemedError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

    @pytest.mark.asyncio
    async def test_other_rejections(self, engine, ledger, htlc):
        ledger.fund(htlc.address, 5_000_000)
        ledger.broadcast_errors.append(LedgerRejectedError("min relay fee not met"))

        with pytest.raises(BroadcastError) as exc_info:
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert exc_info.value.reason == "min relay fee not met"

    @pytest.mark.asyncio
    async def test_unreachable_ledger_is_retried(self, engine, ledger, htlc, no_sleep):
        ledger.fund(htlc.address, 5_000_000)
        ledger.broadcast_errors.append(LedgerUnavailableError("connection refused"))

        result = await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert len(ledger.broadcasts) == 1
        assert result.claimed_amount == 4_999_000
        assert no_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_lookup_gives_up_after_retries(self, engine, ledger, htlc, mocker):
        mocker.patch.object(
            ledger,
            "list_spendable_outputs",
            AsyncMock(side_effect=LedgerUnavailableError("down")),
        )

        with pytest.raises(LedgerUnavailableError):
            await engine.redeem(htlc.address, PREIMAGE, htlc.script, DESTINATION)

        assert ledger.list_spendable_outputs.await_count == 3


class TestVaultRecording:
    @pytest.mark.asyncio
    async def test_redemption_marks_swap_redeemed(
        self, vault, ledger, settings, redeemer_key, redeemer_pubkey, no_sleep
    ):
        swap_id = await vault.create(redeemer_pubkey, 5_000_000, 144)
        record = await vault.update_status(swap_id, SwapStatus.COMPLETED)
        htlc = build_htlc(bytes.fromhex(record.secret_hash), redeemer_pubkey, "regtest")
        ledger.fund(htlc.address, 5_000_000)
        engine = RedemptionEngine(
            ledger, vault=vault, settings=settings, key=redeemer_key, sleep=no_sleep
        )

        result = await engine.redeem(
            htlc.address, record.preimage, htlc.script, DESTINATION, swap_id=swap_id
        )

        stored = await vault.get(swap_id)
        assert stored.status == SwapStatus.REDEEMED
        assert stored.transaction_id == result.transaction_id
        assert stored.details["claimedAmount"] == 4_999_000


async def _completed_swap(vault, ledger, redeemer_pubkey):
    swap_id = await vault.create(redeemer_pubkey, 5_000_000, 144)
    record = await vault.update_status(swap_id, SwapStatus.COMPLETED)
    htlc = build_htlc(bytes.fromhex(record.secret_hash), redeemer_pubkey, "regtest")
    ledger.fund(htlc.address, 5_000_000)
    return swap_id, record, htlc


class TestUnrecordedBroadcast:
    """A broadcast that landed while the vault write after it failed."""

    @pytest.fixture
    def recording_engine(self, vault, ledger, settings, redeemer_key, no_sleep):
        return RedemptionEngine(
            ledger, vault=vault, settings=settings, key=redeemer_key, sleep=no_sleep
        )

    @pytest.fixture
    def lose_redeemed_write(self, store, mocker):
        real_update = store.update
        failing = {"on": True}

        async def update(swap_id, data):
            if failing["on"] and data["status"] == "redeemed":
                raise SecretStoreTransientError("database is locked")
            await real_update(swap_id, data)

        mocker.patch.object(store, "update", side_effect=update)
        return failing

    async def _first_attempt(self, engine, ledger, swap_id, record, htlc):
        with pytest.raises(StorageUnavailableError):
            await engine.redeem(
                htlc.address, record.preimage, htlc.script, DESTINATION, swap_id=swap_id
            )
        return b2lx(_decode(ledger.broadcasts[0]).GetTxid())

    @pytest.mark.asyncio
    async def test_retry_after_spend_records_first_broadcast(
        self, vault, ledger, redeemer_pubkey, recording_engine, lose_redeemed_write
    ):
        swap_id, record, htlc = await _completed_swap(vault, ledger, redeemer_pubkey)
        first_txid = await self._first_attempt(recording_engine, ledger, swap_id, record, htlc)
        assert (await vault.get(swap_id)).status == SwapStatus.COMPLETED

        lose_redeemed_write["on"] = False
        ledger.outputs.clear()

        with pytest.raises(AlreadyRedeemedError):
            await recording_engine.redeem(
                htlc.address, record.preimage, htlc.script, DESTINATION, swap_id=swap_id
            )

        stored = await vault.get(swap_id)
        assert stored.status == SwapStatus.REDEEMED
        assert stored.transaction_id == first_txid
        assert stored.details["claimedAmount"] == 4_999_000
        assert stored.details["pendingRedemption"] is None
        assert len(ledger.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_spent_rejection_records_first_broadcast(
        self, vault, ledger, redeemer_pubkey, recording_engine, lose_redeemed_write
    ):
        swap_id, record, htlc = await _completed_swap(vault, ledger, redeemer_pubkey)
        first_txid = await self._first_attempt(recording_engine, ledger, swap_id, record, htlc)

        lose_redeemed_write["on"] = False
        ledger.broadcast_errors.append(LedgerRejectedError("bad-txns-inputs-missingorspent"))
        other_destination = segwit_addr.encode("bcrt", 0, b"\x33" * 20)

        with pytest.raises(AlreadyRedeemedError):
            await recording_engine.redeem(
                htlc.address, record.preimage, htlc.script, other_destination, swap_id=swap_id
            )

        stored = await vault.get(swap_id)
        assert stored.status == SwapStatus.REDEEMED
        assert stored.transaction_id == first_txid
        assert stored.details["feePaid"] == 1000

    @pytest.mark.asyncio
    async def test_same_transaction_again_counts_as_success(
        self, vault, ledger, redeemer_pubkey, recording_engine, lose_redeemed_write
    ):
        swap_id, record, htlc = await _completed_swap(vault, ledger, redeemer_pubkey)
        first_txid = await self._first_attempt(recording_engine, ledger, swap_id, record, htlc)

        lose_redeemed_write["on"] = False
        ledger.broadcast_errors.append(LedgerRejectedError("txn-already-in-mempool"))

        result = await recording_engine.redeem(
            htlc.address, record.preimage, htlc.script, DESTINATION, swap_id=swap_id
        )

        assert result.transaction_id == first_txid
        assert (await vault.get(swap_id)).status == SwapStatus.REDEEMED

    @pytest.mark.asyncio
    async def test_rejected_broadcast_leaves_nothing_pending(
        self, vault, ledger, redeemer_pubkey, recording_engine
    ):
        swap_id, record, htlc = await _completed_swap(vault, ledger, redeemer_pubkey)
        ledger.broadcast_errors.append(LedgerRejectedError("min relay fee not met"))

        with pytest.raises(BroadcastError):
            await recording_engine.redeem(
                htlc.address, record.preimage, htlc.script, DESTINATION, swap_id=swap_id
            )

        assert await vault.pending_redemption(swap_id) is None
        ledger.outputs.clear()
        with pytest.raises(NoUTXOError):
            await recording_engine.redeem(
                htlc.address, record.preimage, htlc.script, DESTINATION, swap_id=swap_id
            )
        assert (await vault.get(swap_id)).status == SwapStatus.COMPLETED


class TestRedeemerKey:
    def test_hex_and_wif_give_same_key(self, redeemer_key):
        wif = str(CBase58Data.from_bytes(b"\x11" * 32 + b"\x01", 0xEF))

        assert RedeemerKey.from_string("11" * 32).public_key == redeemer_key.public_key
        assert RedeemerKey.from_string(wif).public_key == redeemer_key.public_key

    def test_compressed_public_key(self, redeemer_key):
        assert len(redeemer_key.public_key) == 33
        assert redeemer_key.public_key[0] in (2, 3)

    def test_rejects_garbage(self):
        with pytest.raises(InvalidInputError):
            RedeemerKey.from_string("not a key")
