from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    """Signed challenge coming back from the wallet."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    signature: str = Field(min_length=1)
    # client-opaque blob echoed back on access-granted only
    encrypted_wallet: Optional[str] = Field(default=None, alias="encryptedWallet")


class RegisterRequest(BaseModel):
    wallet_address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


class SetWalletRequest(BaseModel):
    wallet_address: str = Field(min_length=1)


class TokenValidateRequest(BaseModel):
    access_token: str = Field(min_length=1)


# -----------------------------------------------------------------------------
# Session protocol messages (server -> client)
# -----------------------------------------------------------------------------
def challenge_message(session_id: str, challenge: str, expires_at: int) -> Dict[str, Any]:
    return {
        "action": "challenge",
        "sessionId": session_id,
        "challenge": challenge,
        "expiresAt": expires_at,
    }


def access_granted_message(access_token: str, encrypted_wallet: Optional[str] = None) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"action": "access-granted", "accessToken": access_token}
    if encrypted_wallet:
        msg["encryptedWallet"] = encrypted_wallet
    return msg


def unauthorized_message(address: str) -> Dict[str, Any]:
    return {"action": "unauthorized", "address": address}


def account_locked_message() -> Dict[str, Any]:
    return {"action": "account-locked"}
