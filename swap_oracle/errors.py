"""
Error types for the swap oracle.

Every error carries a short machine-readable code and a message that is
safe to hand back to a caller. Infrastructure failures keep their raw
detail for the logs and only expose it on the test networks.
"""

from typing import Any

from .config import TEST_NETWORK_POLICIES


class SwapError(Exception):
    """Base class for all swap oracle errors."""

    code = "swap_error"
    public_message = "Swap operation failed"

    def __init__(self, message: str | None = None, **context: Any):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.context = context


class InvalidInputError(SwapError):
    """Caller supplied malformed or out-of-range input."""

    code = "invalid_input"
    public_message = "Invalid input"


# Transient failures

class ServiceUnavailableError(SwapError):
    """A dependency could not be reached; the caller may retry later."""

    code = "service_unavailable"
    public_message = "Service temporarily unavailable"


class StorageError(SwapError):
    """The secret store rejected or failed an operation."""

    code = "storage_error"
    public_message = "Secret storage failure"


class StorageUnavailableError(StorageError, ServiceUnavailableError):
    """Secret store still failing after the retry budget was spent."""

    code = "storage_unavailable"
    public_message = "Secret storage temporarily unavailable"


# Protocol violations

class ProtocolViolationError(SwapError):
    """Data contradicts the swap's cryptographic commitments."""

    code = "protocol_violation"
    public_message = "Protocol violation"


class PreimageMismatchError(ProtocolViolationError):
    code = "preimage_mismatch"
    public_message = "Preimage does not match the HTLC hash"


class AddressMismatchError(ProtocolViolationError):
    code = "address_mismatch"
    public_message = "HTLC address does not match the script"


# State conflicts

class StateConflictError(SwapError):
    """Operation is not allowed in the swap's current state."""

    code = "state_conflict"
    public_message = "Operation conflicts with swap state"


class SwapNotFoundError(StateConflictError):
    code = "swap_not_found"
    public_message = "Swap not found"


class AlreadyRedeemedError(StateConflictError):
    code = "already_redeemed"
    public_message = "HTLC has already been redeemed"


class InvalidTransitionError(StateConflictError):
    code = "invalid_transition"
    public_message = "Status transition not allowed"

    def __init__(self, current: str, requested: str, swap_id: str | None = None):
        super().__init__(
            f"Cannot move swap from {current} to {requested}",
            swap_id=swap_id,
        )
        self.current = current
        self.requested = requested


# Redemption failures

class RedemptionError(SwapError):
    code = "redemption_failed"
    public_message = "Redemption failed"


class NoUTXOError(RedemptionError):
    code = "no_utxo"
    public_message = "No spendable output found at the HTLC address"


class InsufficientFundsError(RedemptionError):
    code = "insufficient_funds"
    public_message = "HTLC output does not cover the redemption fee"


class BroadcastError(RedemptionError):
    code = "broadcast_rejected"
    public_message = "Redemption transaction was rejected"

    def __init__(self, reason: str, **context: Any):
        super().__init__(f"Broadcast rejected: {reason}", **context)
        self.reason = reason


# Secret store backends

class SecretStoreError(Exception):
    """Raised by secret store backends."""


class SecretStoreClientError(SecretStoreError):
    """The request itself is wrong; retrying will not help."""


class SecretNotFoundError(SecretStoreClientError):
    pass


class SecretExistsError(SecretStoreClientError):
    pass


class SecretAccessDeniedError(SecretStoreClientError):
    pass


class SecretStoreTransientError(SecretStoreError):
    """Throttling, timeouts and other failures worth retrying."""


# Ledger access

class LedgerRejectedError(Exception):
    """The ledger refused a request; ``reason`` holds its message."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LedgerUnavailableError(ServiceUnavailableError):
    code = "ledger_unavailable"
    public_message = "Bitcoin ledger temporarily unavailable"


# Exchange service

class ExchangeError(SwapError):
    code = "exchange_error"
    public_message = "Exchange request failed"


class ExchangeUnavailableError(ServiceUnavailableError):
    code = "exchange_unavailable"
    public_message = "Exchange service temporarily unavailable"


class OrderNotFoundError(ExchangeError):
    code = "order_not_found"
    public_message = "Order not found"


def error_response(exc: Exception, network_policy: str) -> dict[str, str]:
    """
    Shape an exception for the external layer.

    Test-network policies get the detailed message to ease debugging;
    production, mainnet and anything unrecognised only ever see the
    public message.
    """
    verbose = network_policy in TEST_NETWORK_POLICIES
    if isinstance(exc, SwapError):
        message = exc.message if verbose else exc.public_message
        if isinstance(exc, (InvalidInputError, StateConflictError)):
            # caller-facing detail never contains infrastructure text
            message = exc.message
        return {"code": exc.code, "message": message}

    if not verbose:
        return {"code": "internal_error", "message": "Internal server error"}
    return {"code": "internal_error", "message": str(exc)}
