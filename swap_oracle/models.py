"""
Data structures for swap custody and order reconciliation.

The persisted record uses camelCase keys on the wire because the records
are shared with other services reading the same secret store. Python code
works with the snake_case attribute names.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SwapStatus(str, Enum):
    """Lifecycle status of a swap secret record."""

    ACTIVE = "active"  # Secret generated, nothing submitted yet
    ORDER_PENDING = "order_pending"  # Order live on the exchange
    ORDER_PARTIAL = "order_partial"  # Partially filled, still live
    COMPLETED = "completed"  # Order filled, secret disclosable
    REDEEMED = "redeemed"  # HTLC spent on chain
    ORDER_FAILED = "order_failed"  # Cancelled or expired order
    EXPIRED = "expired"  # Timelock window elapsed
    ABANDONED = "abandoned"  # Order vanished, operator must resolve


TERMINAL_STATUSES = frozenset(
    {SwapStatus.REDEEMED, SwapStatus.ORDER_FAILED, SwapStatus.EXPIRED}
)

_LIVE_TARGETS = frozenset(
    {
        SwapStatus.ORDER_PENDING,
        SwapStatus.ORDER_PARTIAL,
        SwapStatus.COMPLETED,
        SwapStatus.ORDER_FAILED,
        SwapStatus.EXPIRED,
        SwapStatus.ABANDONED,
    }
)

ALLOWED_TRANSITIONS: dict[SwapStatus, frozenset[SwapStatus]] = {
    SwapStatus.ACTIVE: _LIVE_TARGETS,
    SwapStatus.ORDER_PENDING: _LIVE_TARGETS,
    SwapStatus.ORDER_PARTIAL: _LIVE_TARGETS,
    SwapStatus.COMPLETED: frozenset({SwapStatus.REDEEMED}),
    # Only reachable through operator resolution
    SwapStatus.ABANDONED: frozenset(
        {SwapStatus.COMPLETED, SwapStatus.ORDER_FAILED, SwapStatus.EXPIRED}
    ),
    SwapStatus.REDEEMED: frozenset(),
    SwapStatus.ORDER_FAILED: frozenset(),
    SwapStatus.EXPIRED: frozenset(),
}


def can_transition(current: SwapStatus, new: SwapStatus) -> bool:
    """Check a status change against the transition graph."""
    return new in ALLOWED_TRANSITIONS[current]


class SwapSecretRecord(BaseModel):
    """
    Everything the oracle knows about one swap.

    The preimage lives here and nowhere else. ``details`` collects the
    free-form extras passed along with status updates (tx hashes, executed
    amounts, failure reasons) so the top-level schema stays stable.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    swap_id: str = Field(description="uuid4 swap identifier")
    secret_hash: str = Field(alias="hash", description="SHA-256 of the preimage, hex")
    preimage: str = Field(description="32-byte HTLC secret, hex")
    redeemer_public_key: str = Field(description="33-byte compressed public key, hex")
    locked_amount: int = Field(gt=0, description="Amount locked in the HTLC, satoshis")
    timelock_blocks: int = Field(ge=1, description="HTLC timelock in blocks")
    status: SwapStatus = Field(default=SwapStatus.ACTIVE)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(description="createdAt + timelockBlocks x 10 minutes")
    last_updated: datetime = Field(default_factory=utcnow)
    order_reference: str | None = Field(None, description="Exchange order uid")
    transaction_id: str | None = Field(None, description="Redemption transaction id")
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_hash_matches_preimage(self) -> "SwapSecretRecord":
        try:
            preimage = bytes.fromhex(self.preimage)
        except ValueError as e:
            raise ValueError("preimage is not valid hex") from e
        if len(preimage) != 32:
            raise ValueError("preimage must be 32 bytes")
        if hashlib.sha256(preimage).hexdigest() != self.secret_hash.lower():
            raise ValueError("hash does not match SHA256(preimage)")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_storage(self) -> dict[str, Any]:
        """Serialize with the camelCase wire keys."""
        return self.model_dump(by_alias=True, mode="json")


class HTLCDescriptor(BaseModel):
    """Locking script and its P2WSH address."""

    model_config = ConfigDict(frozen=True)

    script: bytes = Field(description="Serialized witness script")
    address: str = Field(description="Bech32 witness-program address")
    network: str

    @property
    def script_hex(self) -> str:
        return self.script.hex()


class SpendableOutput(BaseModel):
    """An unspent output sitting at an HTLC address."""

    txid: str
    vout: int
    amount: int = Field(description="Value in satoshis")


class RedemptionResult(BaseModel):
    """Outcome of a successful HTLC redemption."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    transaction_id: str
    claimed_amount: int = Field(description="Satoshis sent to the destination")
    fee_paid: int
    spent_txid: str
    spent_vout: int
    destination: str


class OrderState(str, Enum):
    """Exchange-side order states."""

    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PARTIALLY_FILLED = "partially-filled"


_ORDER_STATE_ALIASES = {
    "partiallyfilled": OrderState.PARTIALLY_FILLED,
    "partially_filled": OrderState.PARTIALLY_FILLED,
    "partially-filled": OrderState.PARTIALLY_FILLED,
    "fulfilled": OrderState.FILLED,
    "canceled": OrderState.CANCELLED,
    "presignaturepending": OrderState.PENDING,
}


class OrderStatus(BaseModel):
    """Normalised order status from either tracking channel."""

    status: OrderState
    executed_amounts: dict[str, Any] | None = None
    tx_hash: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "OrderStatus":
        """
        Parse the exchange's payload.

        Accepts both the compact ``executedAmounts`` form and the
        ``executedSellAmount``/``executedBuyAmount`` pair, and the
        camelCase ``partiallyFilled`` status spelling.
        """
        if not isinstance(data, dict) or "status" not in data:
            raise ValueError("order status payload has no status")

        raw = str(data["status"])
        state = _ORDER_STATE_ALIASES.get(raw.lower())
        if state is None:
            state = OrderState(raw.lower())

        executed = data.get("executedAmounts")
        if executed is None and (
            "executedSellAmount" in data or "executedBuyAmount" in data
        ):
            executed = {
                "sell": data.get("executedSellAmount"),
                "buy": data.get("executedBuyAmount"),
            }

        return cls(
            status=state,
            executed_amounts=executed,
            tx_hash=data.get("txHash") or data.get("tx_hash"),
        )


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class SwapOutcome(BaseModel):
    """What the tracker hands to its consumer when tracking ends."""

    swap_id: str
    kind: OutcomeKind
    order_reference: str
    status: OrderState | None = None
    reason: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)


class Channel(str, Enum):
    PUSH = "push"
    POLL = "poll"


class TrackingStatus(BaseModel):
    """Read-only view of a swap's tracking entry."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    swap_id: str
    tracking: bool
    channel: Channel | None = None
    order_reference: str | None = None
    started_at: datetime | None = None
    last_checked: datetime | None = None
    reconnect_attempts: int = 0
