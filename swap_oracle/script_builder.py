"""
HTLC locking script and P2WSH address construction.

The contract is deliberately minimal: whoever presents the preimage and a
signature from the redeemer key can spend. There is no refund branch, so
the redeem witness is just ``[signature, preimage, script]``.

    OP_SHA256 <32-byte hash> OP_EQUALVERIFY <33-byte pubkey> OP_CHECKSIG

Everything here is pure: same inputs, same bytes. Network parameters are
passed explicitly instead of going through ``bitcoin.SelectParams`` so
several networks can coexist in one process.
"""

import hashlib
import hmac

from bitcoin import segwit_addr
from bitcoin.base58 import Base58Error, CBase58Data
from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    OP_SHA256,
    CScript,
    CScriptInvalidError,
)

from .errors import AddressMismatchError, InvalidInputError
from .models import HTLCDescriptor

# Bech32 human-readable parts
BECH32_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

# Base58 version bytes: (P2PKH, P2SH)
BASE58_VERSIONS = {
    "mainnet": (0, 5),
    "testnet": (111, 196),
    "signet": (111, 196),
    "regtest": (111, 196),
}

HASH_SIZE = 32
PUBKEY_SIZE = 33


def _hrp_for(network: str) -> str:
    try:
        return BECH32_HRP[network]
    except KeyError:
        raise InvalidInputError(f"Unknown network: {network}") from None


def hash_preimage(preimage: bytes) -> bytes:
    """SHA-256 of the preimage, the value committed to in the script."""
    return hashlib.sha256(preimage).digest()


def verify_preimage(preimage: bytes, secret_hash: bytes) -> bool:
    """Constant-time check that ``preimage`` opens ``secret_hash``."""
    return hmac.compare_digest(hash_preimage(preimage), secret_hash)


def validate_public_key(public_key: bytes | str) -> bytes:
    """Return the key as bytes if it is a 33-byte compressed secp256k1 key."""
    if isinstance(public_key, str):
        try:
            public_key = bytes.fromhex(public_key)
        except ValueError:
            raise InvalidInputError("Public key is not valid hex") from None

    if len(public_key) != PUBKEY_SIZE:
        raise InvalidInputError(
            f"Public key must be {PUBKEY_SIZE} bytes, got {len(public_key)}"
        )
    if public_key[0] not in (0x02, 0x03):
        raise InvalidInputError("Public key must be compressed (0x02/0x03 prefix)")
    return public_key


def _validate_hash(secret_hash: bytes) -> bytes:
    if len(secret_hash) != HASH_SIZE:
        raise InvalidInputError(
            f"Hash must be {HASH_SIZE} bytes, got {len(secret_hash)}"
        )
    return secret_hash


def create_htlc_script(secret_hash: bytes, redeemer_public_key: bytes) -> bytes:
    """Build the serialized locking (witness) script."""
    _validate_hash(secret_hash)
    validate_public_key(redeemer_public_key)
    return bytes(
        CScript(
            [
                OP_SHA256,
                secret_hash,
                OP_EQUALVERIFY,
                redeemer_public_key,
                OP_CHECKSIG,
            ]
        )
    )


def witness_script_address(script: bytes, network: str) -> str:
    """P2WSH address: witness v0 program = SHA-256(script)."""
    hrp = _hrp_for(network)
    address = segwit_addr.encode(hrp, 0, hashlib.sha256(script).digest())
    if address is None:
        raise InvalidInputError("Could not encode witness program")
    return address


def build_htlc(
    secret_hash: bytes, redeemer_public_key: bytes, network: str
) -> HTLCDescriptor:
    """Derive the HTLC script and its witness-program address."""
    _hrp_for(network)
    script = create_htlc_script(secret_hash, redeemer_public_key)
    return HTLCDescriptor(
        script=script,
        address=witness_script_address(script, network),
        network=network,
    )


def parse_htlc_script(script: bytes) -> tuple[bytes, bytes]:
    """
    Split an HTLC script into (hash, redeemer public key).

    Raises InvalidInputError if the script is anything other than the
    exact five-element HTLC shape.
    """
    try:
        elements = list(CScript(script))
    except CScriptInvalidError:
        raise InvalidInputError("Script is not valid") from None

    if (
        len(elements) != 5
        or elements[0] != OP_SHA256
        or elements[2] != OP_EQUALVERIFY
        or elements[4] != OP_CHECKSIG
        or not isinstance(elements[1], bytes)
        or not isinstance(elements[3], bytes)
    ):
        raise InvalidInputError("Script is not an HTLC script")

    secret_hash, public_key = elements[1], elements[3]
    _validate_hash(secret_hash)
    validate_public_key(public_key)
    # Reject non-minimal encodings of an otherwise matching script
    if create_htlc_script(secret_hash, public_key) != bytes(script):
        raise InvalidInputError("Script is not canonically encoded")
    return secret_hash, public_key


def verify_htlc_address(
    secret_hash: bytes, redeemer_public_key: bytes, network: str, address: str
) -> HTLCDescriptor:
    """Recompute the descriptor and make sure it lands on ``address``."""
    descriptor = build_htlc(secret_hash, redeemer_public_key, network)
    if descriptor.address != address:
        raise AddressMismatchError(
            "HTLC address does not match hash and key",
            expected=descriptor.address,
            received=address,
        )
    return descriptor


def address_to_script_pubkey(address: str, network: str) -> bytes:
    """
    Decode a destination address into its output script.

    Supports witness v0 (P2WPKH/P2WSH) bech32 addresses and legacy base58
    P2PKH/P2SH addresses for the given network.
    """
    hrp = _hrp_for(network)
    if address.lower().startswith(hrp + "1"):
        version, program = segwit_addr.decode(hrp, address)
        if version is None or version != 0:
            raise InvalidInputError(f"Unsupported witness address: {address}")
        return bytes(CScript([0, bytes(program)]))

    try:
        decoded = CBase58Data(address)
    except Base58Error:
        raise InvalidInputError(f"Invalid address: {address}") from None

    p2pkh_version, p2sh_version = BASE58_VERSIONS[network]
    payload = bytes(decoded)
    if len(payload) != 20:
        raise InvalidInputError(f"Invalid address payload length: {address}")
    if decoded.nVersion == p2pkh_version:
        return bytes(
            CScript([OP_DUP, OP_HASH160, payload, OP_EQUALVERIFY, OP_CHECKSIG])
        )
    if decoded.nVersion == p2sh_version:
        return bytes(CScript([OP_HASH160, payload, OP_EQUAL]))
    raise InvalidInputError(f"Address is not for {network}: {address}")
