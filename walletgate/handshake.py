"""
walletgate/handshake.py

Wallet login handshake.

    IDLE -> CHALLENGE_ISSUED -> SIGNATURE_RECEIVED -> ACCESS_GRANTED
                                                   -> UNAUTHORIZED
                                                   -> ACCOUNT_LOCKED
                                                   -> ERRORED

The challenge was delivered when the session opened (see sessions.py). A
login carries (session_id, signature); we recover the signer from the
session's challenge, look the address up and decide:

  1. identity exists but is inactive -> account-locked (no token)
  2. no identity for the address     -> unauthorized (address echoed back)
  3. otherwise                       -> access-granted (token issued)

The inactive check runs before the not-found check; do not swap them.

Each decision is pushed to the session exactly once, fire-and-forget: if
the client is gone the push is dropped and the decision still stands.
Decisions are returned as values. Only protocol faults raise:
SessionNotFound (nothing to push to) and MalformedSignature (before any
identity lookup). Store/issuer failures propagate as-is, nothing retries.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .audit import AuditLog, audit_log, build_common
from .errors import MalformedSignature, SessionNotFound
from .identities import IdentityStore
from .models import (
    LoginRequest,
    access_granted_message,
    account_locked_message,
    unauthorized_message,
)
from .sessions import HandshakeState, Session, SessionRegistry
from .signatures import recover_address
from .tokens import TokenIssuer


class HandshakeOutcome(str, Enum):
    ACCESS_GRANTED = "access-granted"
    UNAUTHORIZED = "unauthorized"
    ACCOUNT_LOCKED = "account-locked"


OUTCOME_STATE = {
    HandshakeOutcome.ACCESS_GRANTED: HandshakeState.ACCESS_GRANTED,
    HandshakeOutcome.UNAUTHORIZED: HandshakeState.UNAUTHORIZED,
    HandshakeOutcome.ACCOUNT_LOCKED: HandshakeState.ACCOUNT_LOCKED,
}

OUTCOME_MESSAGES = {
    HandshakeOutcome.ACCESS_GRANTED: "You have successfully logged on.",
    HandshakeOutcome.UNAUTHORIZED: "You are unauthorized to use this service.",
    HandshakeOutcome.ACCOUNT_LOCKED: "Your account is locked, please contact administrator.",
}

# audit "result" per outcome
OUTCOME_AUDIT = {
    HandshakeOutcome.ACCESS_GRANTED: ("approved", "signature_valid"),
    HandshakeOutcome.UNAUTHORIZED: ("denied", "unknown_address"),
    HandshakeOutcome.ACCOUNT_LOCKED: ("locked", "identity_inactive"),
}


@dataclass
class HandshakeResult:
    outcome: HandshakeOutcome
    message: str
    address: str
    identity_id: Optional[str] = None
    access_token: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    # False when the session vanished before the push went out
    delivered: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == HandshakeOutcome.ACCESS_GRANTED


class AuthHandshake:
    def __init__(
        self,
        sessions: SessionRegistry,
        identities: IdentityStore,
        tokens: TokenIssuer,
        audit: Optional[AuditLog] = None,
    ):
        self.sessions = sessions
        self.identities = identities
        self.tokens = tokens
        self.audit = audit if audit is not None else audit_log

    async def login(
        self,
        request: LoginRequest,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> HandshakeResult:
        common = dict(
            session_id=request.session_id,
            signature=request.signature,
            request_ip=request_ip,
            user_agent=user_agent,
        )

        if self.sessions.get(request.session_id) is None:
            await self.audit.aappend(
                {**build_common(**common), "result": "error", "reason": "session_not_found"}
            )
            raise SessionNotFound(request.session_id)

        # One handshake per session at a time; a second signature waits.
        async with self.sessions.handshake_lock(request.session_id):
            sess = self.sessions.get(request.session_id)
            if sess is None:
                await self.audit.aappend(
                    {**build_common(**common), "result": "error", "reason": "session_not_found"}
                )
                raise SessionNotFound(request.session_id)

            self.sessions.set_status(sess.session_id, HandshakeState.SIGNATURE_RECEIVED)
            try:
                return await self._decide(sess, request, common)
            except MalformedSignature as e:
                self.sessions.set_status(sess.session_id, HandshakeState.ERRORED)
                await self.audit.aappend(
                    {
                        **build_common(**common),
                        "result": "error",
                        "reason": "malformed_signature",
                        "detail": e.reason[:200],
                    }
                )
                raise
            except Exception as e:
                self.sessions.set_status(sess.session_id, HandshakeState.ERRORED)
                await self.audit.aappend(
                    {
                        **build_common(**common),
                        "result": "error",
                        "reason": "internal_error",
                        "detail": type(e).__name__,
                    }
                )
                raise

    async def _decide(self, sess: Session, request: LoginRequest, common: dict) -> HandshakeResult:
        address = recover_address(sess.challenge, request.signature)
        identity = await self.identities.find_by_wallet_address(address)

        if identity is not None and not identity.is_active:
            result = HandshakeResult(
                outcome=HandshakeOutcome.ACCOUNT_LOCKED,
                message=OUTCOME_MESSAGES[HandshakeOutcome.ACCOUNT_LOCKED],
                address=address,
                identity_id=identity.identity_id,
            )
            result.delivered = await self.sessions.push(sess.session_id, account_locked_message())

        elif identity is None:
            result = HandshakeResult(
                outcome=HandshakeOutcome.UNAUTHORIZED,
                message=OUTCOME_MESSAGES[HandshakeOutcome.UNAUTHORIZED],
                address=address,
            )
            result.delivered = await self.sessions.push(sess.session_id, unauthorized_message(address))

        else:
            issued = await self.tokens.issue(identity)
            result = HandshakeResult(
                outcome=HandshakeOutcome.ACCESS_GRANTED,
                message=OUTCOME_MESSAGES[HandshakeOutcome.ACCESS_GRANTED],
                address=address,
                identity_id=identity.identity_id,
                access_token=issued.access_token,
                permissions=list(issued.permissions),
            )
            result.delivered = await self.sessions.push(
                sess.session_id,
                access_granted_message(issued.access_token, request.encrypted_wallet),
            )

        self.sessions.set_status(sess.session_id, OUTCOME_STATE[result.outcome])

        audit_result, audit_reason = OUTCOME_AUDIT[result.outcome]
        await self.audit.aappend(
            {
                **build_common(**common, address=address, identity_id=result.identity_id),
                "result": audit_result,
                "reason": audit_reason,
                "delivered": result.delivered,
            }
        )
        return result
