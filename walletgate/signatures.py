"""
walletgate/signatures.py

Wallet signature recovery (secp256k1 / EIP-191 personal messages).

The client signs the session challenge with its wallet using the standard
"personal_sign" envelope:

    keccak256("\\x19Ethereum Signed Message:\\n" + len(challenge) + challenge)

and sends back a 65-byte signature r || s || v as hex. The server does not
need the public key in advance: it recovers the signer's address from the
signature and the exact same envelope. If the envelope differs by a single
byte, recovery still "succeeds" but yields an unrelated address, so the
wrapping here must stay byte-for-byte identical to what wallets apply.

Everything in this module is pure: no I/O, no shared state.
"""

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeysValidationError

from .errors import MalformedSignature

SIGNATURE_LEN = 65

# Accepted recovery ids: raw (0/1) and the legacy Ethereum offset (27/28).
# EIP-155 style values (>= 35) are rejected: they fold many byte values onto
# the same recovery id, so a mangled v could still recover the right address.
ALLOWED_V = frozenset({0, 1, 27, 28})


def _decode_signature(signature: str) -> bytes:
    s = str(signature or "").strip()
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    try:
        raw = bytes.fromhex(s)
    except ValueError:
        raise MalformedSignature("signature must be hex")
    if len(raw) != SIGNATURE_LEN:
        raise MalformedSignature(f"signature must be {SIGNATURE_LEN} bytes, got {len(raw)}")
    if raw[-1] not in ALLOWED_V:
        raise MalformedSignature(f"invalid recovery id v={raw[-1]}")
    return raw


def recover_address(message: str, signature: str) -> str:
    """
    Recover the checksummed address that produced `signature` over `message`.

    Raises:
      MalformedSignature if the signature is not a structurally valid
      secp256k1 signature. A valid signature over another message is NOT an
      error: it recovers some other address.
    """
    raw = _decode_signature(signature)
    signable = encode_defunct(text=message)
    try:
        return Account.recover_message(signable, signature=raw)
    except (ValueError, TypeError, BadSignature, KeysValidationError) as e:
        raise MalformedSignature(str(e)[:120]) from e


def normalize_address(address: str) -> str:
    """Canonical storage/comparison form: stripped, lower-case."""
    return str(address or "").strip().lower()


def same_address(a: str, b: str) -> bool:
    return normalize_address(a) == normalize_address(b)


def sign_challenge(private_key, challenge: str) -> str:
    """
    Client-side counterpart of recover_address: personal_sign the challenge.

    Returns a 0x-prefixed 65-byte hex signature.
    """
    signed = Account.sign_message(encode_defunct(text=challenge), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()
