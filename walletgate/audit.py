"""
walletgate/audit.py

Tamper-evident audit log of authentication events.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <dir>/auth_audit.state
- Uses file locking (flock) to keep chain consistent across workers.

Events never contain signatures or tokens verbatim, only their length and
SHA3-256 digest.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from starlette.concurrency import run_in_threadpool

from .config import settings

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "auth_audit.jsonl"
STATE_NAME = "auth_audit.state"
LOCK_NAME = "auth_audit.lock"


def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Deterministic JSON: sorted keys, no whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


def build_common(
    *,
    session_id: Optional[str] = None,
    address: Optional[str] = None,
    identity_id: Optional[str] = None,
    actor: Optional[str] = None,
    signature: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """Common audit fields. Keep this "boring" and stable."""
    out: Dict[str, Any] = {"ts": int(time.time())}

    if session_id:
        out["session_id"] = session_id
    if address:
        out["address"] = address.lower()
    if identity_id:
        out["identity_id"] = identity_id
    if actor:
        out["actor"] = actor
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if signature is not None:
        sig_bytes = str(signature).encode("utf-8")
        out["signature_len"] = len(sig_bytes)
        out["signature_sha3_256"] = sha3_256_hex(sig_bytes)

    return out


class AuditLog:
    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return self.directory / LOG_NAME

    @property
    def state_path(self) -> Path:
        return self.directory / STATE_NAME

    @property
    def lock_path(self) -> Path:
        return self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """Last chain hash from the state file. Caller must hold the lock."""
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining. Returns the new chain hash, or
        None when auditing is disabled.
        """
        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)

        # Lock a dedicated file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = chain_hash(prev_hash, e)
                stored = dict(e, prev_hash=prev_hash, hash=next_hash)

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    async def aappend(self, event: Dict[str, Any]) -> Optional[str]:
        """append() for async callers: flock/fsync run in the threadpool."""
        return await run_in_threadpool(self.append, event)

    def verify_chain(self) -> bool:
        """True if every line links to the previous one and hashes match."""
        if not self.log_path.exists():
            return True

        prev = GENESIS_HASH
        with open(self.log_path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))
                if obj.get("prev_hash") != prev:
                    return False
                if chain_hash(prev, obj) != obj.get("hash"):
                    return False
                prev = obj["hash"]
        return True


audit_log = AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)
