# walletgate/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is "thin" orchestration glue:
#   - It wires HTTP / WebSocket endpoints to the domain modules.
#   - It MUST NOT implement crypto itself (signatures.py + tokens.py do).
#   - It owns no state besides the process-wide singletons created below.
#
# Key modules / responsibilities:
#   - config.py      : environment-driven settings
#   - sessions.py    : live WebSocket sessions, challenges, FIFO push
#   - signatures.py  : EIP-191 signature -> wallet address recovery
#   - identities.py  : identity store boundary + in-memory reference store
#   - uniqueness.py  : one identity per wallet / phone / email
#   - tokens.py      : Ed25519 access tokens
#   - handshake.py   : challenge/response login state machine
#   - audit.py       : append-only hash-chained audit log
#   - qr.py          : QR rendering of a session login URI (no security)
#
# Login flow:
#   1. client opens WS /ws, receives {"action":"challenge", sessionId, challenge}
#   2. wallet personal_signs the challenge (off-protocol)
#   3. client POSTs {sessionId, signature} to /api/v1/auth/wallet
#   4. outcome is pushed over the WebSocket; the HTTP reply carries a message
#
# WARNING (DEPLOYMENT):
# - The session registry and the bundled identity store are in-memory: they are
#   NOT shared across Uvicorn workers or nodes. A login POST that lands on a
#   different worker than the WebSocket gets session_not_found. Run one worker
#   or swap in shared implementations of SessionRegistry / IdentityStore.
# -----------------------------------------------------------------------------

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.responses import Response

from .audit import audit_log, build_common
from .config import settings
from .errors import DuplicateField, MalformedSignature, SessionNotFound
from .handshake import AuthHandshake
from .identities import (
    InMemoryIdentityStore,
    load_identities_file,
    normalize_candidate,
    seed_store,
)
from .models import (
    LoginRequest,
    RegisterRequest,
    SetWalletRequest,
    TokenValidateRequest,
    challenge_message,
)
from .qr import make_login_qr_svg_bytes
from .sessions import registry
from .tokens import Ed25519TokenIssuer, TokenError, TokenExpired, load_or_generate_key
from .uniqueness import register_identity, set_wallet_address

# -----------------------------------------------------------------------------
# Singletons
# -----------------------------------------------------------------------------
# The server Ed25519 key signs access tokens only. It is NOT a wallet key.
TOKEN_SK = load_or_generate_key(settings.SERVER_ED25519_SK_B64)

identity_store = InMemoryIdentityStore()
token_issuer = Ed25519TokenIssuer(
    TOKEN_SK,
    ttl_seconds=settings.TOKEN_TTL_SECONDS,
    role_permissions=settings.ROLE_PERMISSIONS,
    identity_store=identity_store,
)
handshake = AuthHandshake(registry, identity_store, token_issuer)


@asynccontextmanager
async def lifespan(app: FastAPI):
    seeded = await seed_store(identity_store, load_identities_file(settings.KNOWN_IDENTITIES_PATH))
    if seeded:
        print("IDENTITIES_SEEDED:", seeded, flush=True)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
# Close code sent when a session outlives SESSION_TTL_SECONDS.
WS_CLOSE_EXPIRED = 4001


def _client_meta(request: Request):
    return (
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
    )


def _duplicate_409(e: DuplicateField) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"error": "duplicate_field", "field": e.field, "message": str(e)},
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def require_permission(permission: str):
    """
    Route dependency: a valid access token whose subject is still an active
    identity and whose permissions include `permission`.

    401 for a missing/invalid/expired token or a gone/locked subject,
    403 when the token lacks the permission.
    """

    async def dependency(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _unauthorized("missing bearer token")

        try:
            claims = token_issuer.validate(token.strip())
        except TokenExpired:
            raise _unauthorized("token expired")
        except TokenError as e:
            raise _unauthorized(f"invalid token: {e}")

        caller = await identity_store.get(str(claims.get("sub", "")))
        if caller is None or not caller.is_active:
            raise _unauthorized("token subject is not an active identity")

        if permission not in claims.get("perms", []):
            raise HTTPException(403, f"missing permission: {permission}")
        return claims

    return dependency


# -----------------------------------------------------------------------------
# Real-time session
# -----------------------------------------------------------------------------
@app.websocket("/ws")
async def ws_session(websocket: WebSocket):
    await websocket.accept()
    registry.prune_expired()

    sess = registry.open(
        websocket,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        challenge_bytes=settings.CHALLENGE_BYTES,
    )
    await audit_log.aappend(
        {
            **build_common(
                session_id=sess.session_id,
                request_ip=(websocket.client.host if websocket.client else None),
                user_agent=websocket.headers.get("user-agent"),
            ),
            "result": "issued",
            "reason": "challenge_issued",
        }
    )
    await registry.push(
        sess.session_id,
        challenge_message(sess.session_id, sess.challenge, sess.expires_at),
    )

    try:
        while True:
            remaining = sess.expires_at - time.time()
            try:
                frame = await asyncio.wait_for(websocket.receive(), timeout=max(remaining, 0))
            except asyncio.TimeoutError:
                # the registry already treats the session as gone
                await websocket.send_json({"action": "expired"})
                await websocket.close(code=WS_CLOSE_EXPIRED)
                break

            if frame["type"] == "websocket.disconnect":
                break

            raw = frame.get("text")
            if raw is None:
                await registry.push(sess.session_id, {"action": "error", "error": "bad message: text frames only"})
                continue
            try:
                msg = json.loads(raw)
            except ValueError:
                await registry.push(sess.session_id, {"action": "error", "error": "bad message: invalid JSON"})
                continue

            action = msg.get("action") if isinstance(msg, dict) else None
            if action == "ping":
                await registry.push(sess.session_id, {"action": "pong"})
                continue
            await registry.push(sess.session_id, {"action": "error", "error": f"unknown action: {action}"})
    finally:
        registry.close(sess.session_id)
        await audit_log.aappend(
            {
                **build_common(session_id=sess.session_id),
                "result": "closed",
                "reason": "session_expired" if sess.is_expired else "session_closed",
                "status": sess.status.value,
            }
        )


@app.get("/api/v1/session/{session_id}")
def session_status(session_id: str):
    sess = registry.get(session_id)
    if not sess:
        raise HTTPException(404, "session not found")
    return sess.public_view()


@app.get("/api/v1/session/{session_id}/qr.svg")
def session_qr_svg(session_id: str):
    sess = registry.get(session_id)
    if not sess:
        raise HTTPException(404, "session not found")

    uri = sess.login_uri(settings.ORIGIN, settings.APP_NAME)
    return Response(content=make_login_qr_svg_bytes(uri), media_type="image/svg+xml")


# -----------------------------------------------------------------------------
# Wallet login
# -----------------------------------------------------------------------------
@app.post("/api/v1/auth/wallet")
async def login_wallet(request: Request, body: LoginRequest):
    request_ip, user_agent = _client_meta(request)
    try:
        result = await handshake.login(body, request_ip=request_ip, user_agent=user_agent)
    except SessionNotFound as e:
        raise HTTPException(
            status_code=404,
            detail={"error": "session_not_found", "message": str(e)},
        )
    except MalformedSignature as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "malformed_signature", "message": e.reason},
        )

    return {
        "ok": result.ok,
        "outcome": result.outcome.value,
        "message": result.message,
        "delivered": result.delivered,
    }


@app.post("/api/v1/token/validate")
def validate_token(body: TokenValidateRequest):
    try:
        claims = token_issuer.validate(body.access_token)
    except TokenExpired:
        raise HTTPException(410, "token expired")
    except TokenError as e:
        raise HTTPException(400, f"invalid token: {e}")

    return {"ok": True, "claims": claims, "permissions": claims.get("perms", [])}


# -----------------------------------------------------------------------------
# Identity administration (uniqueness guard)
# -----------------------------------------------------------------------------
# Callers need an access token carrying PERM_WRITE / PERM_READ (see
# ROLE_PERMISSIONS). Roles are never taken from the request; they come from
# the seed file only.
PERM_READ = "user_read"
PERM_WRITE = "user_write"


@app.post("/api/v1/identities", status_code=201)
async def create_identity(body: RegisterRequest, claims: Dict[str, Any] = Depends(require_permission(PERM_WRITE))):
    candidate = normalize_candidate(
        wallet_address=body.wallet_address,
        email=body.email,
        phone=body.phone,
        name=body.name,
    )
    if not candidate.wallet_address:
        raise HTTPException(400, "wallet_address is required")

    try:
        identity = await register_identity(identity_store, candidate, actor=claims["sub"])
    except DuplicateField as e:
        raise _duplicate_409(e)
    return identity.public_view()


@app.get("/api/v1/identities/{key}", dependencies=[Depends(require_permission(PERM_READ))])
async def get_identity(key: str):
    identity = await identity_store.find_by_id_or_wallet(key)
    if identity is None:
        raise HTTPException(404, "identity not found")
    return identity.public_view()


@app.put("/api/v1/identities/{identity_id}/wallet")
async def put_identity_wallet(
    identity_id: str,
    body: SetWalletRequest = Body(...),
    claims: Dict[str, Any] = Depends(require_permission(PERM_WRITE)),
):
    try:
        identity = await set_wallet_address(identity_store, identity_id, body.wallet_address, actor=claims["sub"])
    except DuplicateField as e:
        raise _duplicate_409(e)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if identity is None:
        raise HTTPException(404, "identity not found")
    return identity.public_view()
