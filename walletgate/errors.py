"""
walletgate/errors.py

Error taxonomy.

Only protocol faults and validation failures are exceptions. Authentication
decisions (access granted / unauthorized / account locked) are ordinary
results, see handshake.HandshakeOutcome.
"""


class WalletGateError(Exception):
    """Base class for errors raised by walletgate."""


class SessionNotFound(WalletGateError):
    """The real-time session referenced by a login no longer exists."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("WebSocket client does not exist.")


class MalformedSignature(WalletGateError):
    """The signature is not a structurally valid secp256k1 signature."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"malformed signature: {reason}")


# Field name -> user-facing message. Order matters for the uniqueness guard.
DUPLICATE_MESSAGES = {
    "phone": "Phone Number Already Exists",
    "wallet_address": "Wallet Address Already Exists",
    "email": "Email Already Exists",
}


class DuplicateField(WalletGateError):
    """Another identity already owns this wallet address, phone or email."""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(DUPLICATE_MESSAGES.get(field, f"{field} already exists"))
