# walletgate/sessions.py
import asyncio
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode


def b64url_token(nbytes: int) -> str:
    return secrets.token_urlsafe(nbytes)


class HandshakeState(str, Enum):
    IDLE = "idle"
    CHALLENGE_ISSUED = "challenge_issued"
    SIGNATURE_RECEIVED = "signature_received"
    ACCESS_GRANTED = "access_granted"
    UNAUTHORIZED = "unauthorized"
    ACCOUNT_LOCKED = "account_locked"
    ERRORED = "errored"


TERMINAL_STATES = frozenset(
    {
        HandshakeState.ACCESS_GRANTED,
        HandshakeState.UNAUTHORIZED,
        HandshakeState.ACCOUNT_LOCKED,
        HandshakeState.ERRORED,
    }
)


class Transport(Protocol):
    """Anything that can deliver a JSON message to the client (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


@dataclass
class Session:
    session_id: str
    challenge: str
    issued_at: int
    expires_at: int
    transport: Optional[Transport] = field(default=None, repr=False)
    status: HandshakeState = HandshakeState.CHALLENGE_ISSUED

    @property
    def is_expired(self) -> bool:
        return int(time.time()) >= self.expires_at

    def login_uri(self, origin: str, app_name: str) -> str:
        """
        URI a mobile wallet can scan to sign this session's challenge.

        All values are URL-encoded; the challenge is base64url so it survives
        as-is, but origin may carry reserved characters.
        """
        params = {
            "session_id": self.session_id,
            "challenge": self.challenge,
            "origin": origin.rstrip("/"),
            "app": app_name,
            "expires_at": str(self.expires_at),
        }
        return "walletgate://login?" + urlencode(params, safe=":/")

    def public_view(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


class SessionRegistry(Protocol):
    """
    Live real-time sessions, each bound to one server-generated challenge.

    Implementations may be process-local (InMemorySessionRegistry) or backed by
    a shared store; the handshake only relies on this surface.
    """

    def get(self, session_id: str) -> Optional[Session]: ...

    async def push(self, session_id: str, message: Dict[str, Any]) -> bool: ...

    def handshake_lock(self, session_id: str) -> asyncio.Lock: ...

    def set_status(self, session_id: str, status: HandshakeState) -> None: ...


class InMemorySessionRegistry:
    def __init__(self):
        self.sessions: Dict[str, Session] = {}
        self._push_locks: Dict[str, asyncio.Lock] = {}
        self._handshake_locks: Dict[str, asyncio.Lock] = {}

    def open(
        self,
        transport: Optional[Transport] = None,
        ttl_seconds: int = 900,
        challenge_bytes: int = 32,
    ) -> Session:
        now = int(time.time())
        sess = Session(
            session_id=b64url_token(24),
            challenge=b64url_token(challenge_bytes),
            issued_at=now,
            expires_at=now + ttl_seconds,
            transport=transport,
        )
        self.sessions[sess.session_id] = sess
        self._push_locks[sess.session_id] = asyncio.Lock()
        self._handshake_locks[sess.session_id] = asyncio.Lock()
        return sess

    def get(self, session_id: str) -> Optional[Session]:
        sess = self.sessions.get(session_id)
        if sess is None:
            return None
        if sess.is_expired:
            self.close(session_id)
            return None
        return sess

    def close(self, session_id: str) -> Optional[Session]:
        self._push_locks.pop(session_id, None)
        self._handshake_locks.pop(session_id, None)
        return self.sessions.pop(session_id, None)

    def set_status(self, session_id: str, status: HandshakeState) -> None:
        sess = self.sessions.get(session_id)
        if sess:
            sess.status = status

    def handshake_lock(self, session_id: str) -> asyncio.Lock:
        # A closed session still gets a throwaway lock so callers never branch.
        return self._handshake_locks.get(session_id) or asyncio.Lock()

    async def push(self, session_id: str, message: Dict[str, Any]) -> bool:
        """
        Deliver one message to the session's transport, at most once.

        Returns False when the session is gone or the transport refused the
        message; callers must not treat that as a failure of their own work.
        Messages to the same session go out in the order push() was called.
        """
        sess = self.get(session_id)
        lock = self._push_locks.get(session_id)
        if sess is None or sess.transport is None or lock is None:
            return False

        async with lock:
            if session_id not in self.sessions:
                return False
            try:
                await sess.transport.send_json(message)
            except Exception as e:
                # client went away mid-send; delivery is fire-and-forget
                print("PUSH_DROPPED:", session_id, type(e).__name__, flush=True)
                return False
        return True

    def prune_expired(self, now: Optional[int] = None) -> int:
        """Drop sessions past their expiry. Returns how many were removed."""
        now = now or int(time.time())
        dead = [k for k, s in self.sessions.items() if now >= s.expires_at]
        for k in dead:
            self.close(k)
        return len(dead)


registry = InMemorySessionRegistry()
