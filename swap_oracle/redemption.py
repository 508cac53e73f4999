"""
HTLC redemption.

Builds the transaction that spends the HTLC output to the redeemer's
destination, signs it (BIP143, SIGHASH_ALL) and broadcasts it. Everything
that can be checked locally is checked before the first network call: a
wrong preimage or an address that does not match the script never reaches
the ledger.
"""

import asyncio
import hashlib
from typing import Awaitable, Callable, Optional

import structlog
from bitcoin.base58 import Base58Error, CBase58Data
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTxInWitness,
    CTxWitness,
    b2lx,
    lx,
)
from bitcoin.core.script import (
    SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptWitness,
    SignatureHash,
)
from ecdsa import SECP256k1, SigningKey
from ecdsa.util import sigencode_der_canonize

from .config import Config, config
from .errors import (
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
)
from .ledger import LedgerClient
from .models import RedemptionResult, SpendableOutput
from .retry import RetryPolicy, retry_async
from .script_builder import (
    address_to_script_pubkey,
    parse_htlc_script,
    verify_htlc_address,
    verify_preimage,
)

logger = structlog.get_logger()

WIF_VERSIONS = (0x80, 0xEF)  # mainnet, test networks

# Rejections meaning our transaction is already out there
_ALREADY_BROADCAST = (
    "already in block chain",
    "txn-already-known",
    "txn-already-in-mempool",
    "transaction already exists",
)
# Rejections meaning someone already spent the HTLC output
_ALREADY_SPENT = (
    "missingorspent",
    "missing inputs",
    "bad-txns-inputs-missingorspent",
    "txn-mempool-conflict",
)


def _as_bytes(value: bytes | str, what: str) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise InvalidInputError(f"{what} is not valid hex") from None


class RedeemerKey:
    """secp256k1 signing key for the redeemer side of the HTLC."""

    def __init__(self, secret: bytes):
        if len(secret) != 32:
            raise InvalidInputError("Private key must be 32 bytes")
        self._signing_key = SigningKey.from_string(secret, curve=SECP256k1)
        self.public_key = self._signing_key.get_verifying_key().to_string("compressed")

    @classmethod
    def from_string(cls, value: str) -> "RedeemerKey":
        """Accept a 64-char hex secret or a WIF-encoded key."""
        value = value.strip()
        if len(value) == 64:
            try:
                return cls(bytes.fromhex(value))
            except ValueError:
                pass

        try:
            decoded = CBase58Data(value)
        except Base58Error:
            raise InvalidInputError("Private key is neither hex nor WIF") from None
        if decoded.nVersion not in WIF_VERSIONS:
            raise InvalidInputError("Unknown WIF version byte")

        payload = bytes(decoded)
        if len(payload) == 33 and payload[-1] == 0x01:
            payload = payload[:32]
        return cls(payload)

    def sign(self, digest: bytes) -> bytes:
        """Deterministic (RFC 6979) low-S DER signature over a sighash."""
        return self._signing_key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
        )


def build_redeem_transaction(
    utxo: SpendableOutput,
    script: bytes,
    preimage: bytes,
    destination_script: bytes,
    spend_amount: int,
    key: RedeemerKey,
) -> CMutableTransaction:
    """Spend one HTLC output; witness is ``[signature, preimage, script]``."""
    txin = CMutableTxIn(COutPoint(lx(utxo.txid), utxo.vout))
    txout = CMutableTxOut(spend_amount, CScript(destination_script))
    tx = CMutableTransaction([txin], [txout], nLockTime=0, nVersion=2)

    sighash = SignatureHash(
        CScript(script),
        tx,
        0,
        SIGHASH_ALL,
        amount=utxo.amount,
        sigversion=SIGVERSION_WITNESS_V0,
    )
    signature = key.sign(sighash) + bytes([SIGHASH_ALL])
    tx.wit = CTxWitness([CTxInWitness(CScriptWitness([signature, preimage, script]))])
    return tx


class RedemptionEngine:
    """Claims HTLC funds once the secret may be used."""

    def __init__(
        self,
        ledger: LedgerClient,
        vault=None,
        settings: Optional[Config] = None,
        key: Optional[RedeemerKey] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.vault = vault
        self.settings = settings or config
        if key is None and self.settings.redeemer_private_key:
            key = RedeemerKey.from_string(self.settings.redeemer_private_key)
        self.key = key
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.settings)
        self._sleep = sleep

    @property
    def fee(self) -> int:
        return self.settings.redeem_fee_sats

    async def _ledger_call(self, description: str, operation):
        return await retry_async(
            operation,
            self.retry_policy,
            retry_on=(LedgerUnavailableError,),
            description=description,
            sleep=self._sleep,
        )

    def select_output(self, outputs: list[SpendableOutput]) -> SpendableOutput:
        """First output, in discovery order, worth more than the fee."""
        for output in outputs:
            if output.amount > self.fee:
                return output
        raise InsufficientFundsError(
            f"No output exceeds the {self.fee} sat fee",
            largest=max(o.amount for o in outputs),
            fee=self.fee,
        )

    async def redeem(
        self,
        htlc_address: str,
        preimage: bytes | str,
        script: bytes | str,
        destination_address: str,
        swap_id: Optional[str] = None,
    ) -> RedemptionResult:
        """
        Spend the HTLC output at ``htlc_address`` to ``destination_address``.

        Raises:
            PreimageMismatchError: the preimage does not open the script's hash
            AddressMismatchError: the address is not derived from the script
            NoUTXOError: nothing to spend at the address
            InsufficientFundsError: every output is worth no more than the fee
            AlreadyRedeemedError: the output was already spent
            BroadcastError: the ledger rejected the transaction
        """
        network = self.settings.bitcoin_network
        preimage = _as_bytes(preimage, "Preimage")
        script = _as_bytes(script, "Script")
        secret_hash, redeemer_public_key = parse_htlc_script(script)

        if not verify_preimage(preimage, secret_hash):
            logger.error(
                "Preimage does not match HTLC hash",
                swap_id=swap_id,
                htlc_address=htlc_address,
                hash_preview=secret_hash.hex()[:16],
                security=True,
            )
            raise PreimageMismatchError(swap_id=swap_id)

        try:
            verify_htlc_address(secret_hash, redeemer_public_key, network, htlc_address)
        except AddressMismatchError:
            logger.error(
                "HTLC address does not match script",
                swap_id=swap_id,
                htlc_address=htlc_address,
                security=True,
            )
            raise

        if self.key is None:
            raise RedemptionError("No redeemer signing key configured", swap_id=swap_id)
        if self.key.public_key != redeemer_public_key:
            raise InvalidInputError("Signing key does not match the HTLC redeemer key")

        destination_script = address_to_script_pubkey(destination_address, network)
        recording = bool(swap_id) and self.vault is not None
        previous = await self.vault.pending_redemption(swap_id) if recording else None

        try:
            outputs = await self._ledger_call(
                "list_spendable_outputs",
                lambda: self.ledger.list_spendable_outputs(htlc_address),
            )
        except LedgerRejectedError as e:
            raise RedemptionError(
                f"Ledger refused UTXO lookup: {e.reason}", swap_id=swap_id
            ) from e
        if not outputs:
            if previous is not None:
                await self._finish_previous(swap_id, previous)
            raise NoUTXOError(f"No spendable output at {htlc_address}", swap_id=swap_id)

        utxo = self.select_output(outputs)
        spend_amount = utxo.amount - self.fee
        tx = build_redeem_transaction(
            utxo, script, preimage, destination_script, spend_amount, self.key
        )
        txid = b2lx(tx.GetTxid())
        raw = tx.serialize().hex()

        result = RedemptionResult(
            transaction_id=txid,
            claimed_amount=spend_amount,
            fee_paid=self.fee,
            spent_txid=utxo.txid,
            spent_vout=utxo.vout,
            destination=destination_address,
        )
        if recording:
            await self.vault.note_pending_redemption(swap_id, result)

        logger.info(
            "Broadcasting redemption",
            swap_id=swap_id,
            txid=txid,
            outpoint=f"{utxo.txid}:{utxo.vout}",
            spend_amount=spend_amount,
            fee=self.fee,
        )
        try:
            broadcast_txid = await self._broadcast(raw, txid, swap_id)
        except AlreadyRedeemedError:
            if previous is not None and (previous.spent_txid, previous.spent_vout) == (
                utxo.txid,
                utxo.vout,
            ):
                await self._finish_previous(swap_id, previous)
            if recording:
                await self.vault.note_pending_redemption(swap_id, previous)
            raise
        except BroadcastError:
            # Definitely not on the network; forget this attempt
            if recording:
                await self.vault.note_pending_redemption(swap_id, previous)
            raise

        if broadcast_txid != txid:
            result = result.model_copy(update={"transaction_id": broadcast_txid})
        if recording:
            await self.vault.record_redemption(swap_id, result)

        logger.info(
            "HTLC redeemed",
            swap_id=swap_id,
            txid=result.transaction_id,
            claimed_amount=spend_amount,
        )
        return result

    async def _finish_previous(self, swap_id: str, previous: RedemptionResult):
        """An earlier attempt broadcast but never got recorded; record it now."""
        logger.warning(
            "HTLC output spent by an unrecorded redemption, recording it",
            swap_id=swap_id,
            txid=previous.transaction_id,
            outpoint=f"{previous.spent_txid}:{previous.spent_vout}",
        )
        await self.vault.record_redemption(swap_id, previous)
        raise AlreadyRedeemedError(
            f"HTLC already redeemed in {previous.transaction_id}", swap_id=swap_id
        )

    async def _broadcast(self, raw: str, local_txid: str, swap_id: Optional[str]) -> str:
        try:
            return await self._ledger_call("broadcast", lambda: self.ledger.broadcast(raw))
        except LedgerRejectedError as e:
            reason = e.reason.lower()
            if any(marker in reason for marker in _ALREADY_BROADCAST):
                logger.info(
                    "Redemption already broadcast", swap_id=swap_id, txid=local_txid
                )
                return local_txid
            if any(marker in reason for marker in _ALREADY_SPENT):
                logger.warning(
                    "HTLC output already spent", swap_id=swap_id, reason=e.reason
                )
                raise AlreadyRedeemedError(
                    f"HTLC output already spent: {e.reason}", swap_id=swap_id
                ) from e
            logger.error("Redemption rejected", swap_id=swap_id, reason=e.reason)
            raise BroadcastError(e.reason, swap_id=swap_id) from e
