# walletgate/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Access tokens handed to a session after a successful wallet handshake.
#
# To the handshake a token is opaque: it only needs `issue(identity)` to return
# a bearer string plus the identity's effective permissions. Anything else
# (format, expiry, revocation) belongs to the issuer. Deployments with an
# existing token service plug it in through the `TokenIssuer` protocol.
#
# The bundled issuer signs compact tokens with ONE server Ed25519 key:
#
#     wg1.<payload_b64url>.<signature_b64url>
#
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = Ed25519.sign(payload_bytes)
#
# The server key is infrastructure authority. It is NOT a user wallet key and
# must never be confused with one.
# -----------------------------------------------------------------------------

import base64
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .identities import Identity

TOKEN_PREFIX = "wg1"


class TokenError(ValueError):
    """Token is malformed, forged or has wrong claims."""


class TokenExpired(TokenError):
    pass


@dataclass
class IssuedToken:
    access_token: str
    permissions: List[str] = field(default_factory=list)
    expires_at: Optional[int] = None


class TokenIssuer(Protocol):
    async def issue(self, identity: Identity) -> IssuedToken: ...


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (tokens travel in headers/URLs)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """URL-safe Base64 with optional missing padding."""
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw seed): no PEM, no headers, so it
    fits in a single environment variable.
    """
    raw = base64.b64decode(sk_b64.strip(), validate=True)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def load_or_generate_key(sk_b64: str) -> Ed25519PrivateKey:
    if sk_b64 and sk_b64.strip():
        return load_ed25519_private_key_from_b64(sk_b64)
    # Tokens from an ephemeral key die with the process.
    print("WARNING: SERVER_ED25519_SK_B64 not set, using an ephemeral signing key", flush=True)
    return Ed25519PrivateKey.generate()


# -----------------------------------------------------------------------------
# Wire format
# -----------------------------------------------------------------------------
def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return f"{TOKEN_PREFIX}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """Format validation only; cryptographic verification happens separately."""
    parts = str(token).strip().split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise TokenError("bad token format")
    try:
        return b64url_decode(parts[1]), b64url_decode(parts[2])
    except (ValueError, UnicodeEncodeError) as e:
        raise TokenError("bad token encoding") from e


def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    payload_bytes = json.dumps(
        payload_obj,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    return encode_token(payload_bytes, sk.sign(payload_bytes))


def verify_token(pk: Ed25519PublicKey, token: str) -> dict:
    """
    Verify signature and return the decoded payload.

    Does NOT enforce claims (typ, expiry); see Ed25519TokenIssuer.validate.
    """
    payload_bytes, sig = decode_token(token)
    try:
        pk.verify(sig, payload_bytes)
    except InvalidSignature as e:
        raise TokenError("bad token signature") from e
    return json.loads(payload_bytes.decode("utf-8"))


# -----------------------------------------------------------------------------
# Issuer
# -----------------------------------------------------------------------------
def permissions_for(roles: List[str], role_permissions: Dict[str, List[str]]) -> List[str]:
    perms = set()
    for role in roles:
        perms.update(role_permissions.get(role.lower(), []))
    return sorted(perms)


class Ed25519TokenIssuer:
    def __init__(
        self,
        sk: Ed25519PrivateKey,
        ttl_seconds: int = 3600,
        role_permissions: Optional[Dict[str, List[str]]] = None,
        identity_store=None,
    ):
        self.sk = sk
        self.pk = sk.public_key()
        self.ttl_seconds = ttl_seconds
        self.role_permissions = role_permissions or {}
        # optional: last-login bookkeeping
        self.identity_store = identity_store

    async def issue(self, identity: Identity) -> IssuedToken:
        now = int(time.time())
        perms = permissions_for(identity.roles, self.role_permissions)
        payload = {
            "v": 1,
            "typ": "access",
            "sub": identity.identity_id,
            "addr": identity.wallet_address,
            "roles": sorted(identity.roles),
            "perms": perms,
            "jti": secrets.token_urlsafe(12),
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        token = sign_token(self.sk, payload)

        if self.identity_store is not None:
            await self.identity_store.touch_login(identity.identity_id)

        return IssuedToken(access_token=token, permissions=perms, expires_at=payload["exp"])

    def validate(self, token: str, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Verify an access token and enforce its claims.

        Raises TokenError (forged/malformed/wrong type) or TokenExpired.
        """
        claims = verify_token(self.pk, token)
        if claims.get("v") != 1 or claims.get("typ") != "access":
            raise TokenError("invalid token claims")
        try:
            exp = int(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError("invalid token expiry")
        now = now or int(time.time())
        if now > exp:
            raise TokenExpired("token expired")
        return claims
