"""
walletgate/identities.py

Identity records + the identity store boundary.

The handshake and the uniqueness guard only talk to the `IdentityStore`
protocol below. Production deployments plug in their own database-backed
store; `InMemoryIdentityStore` is the reference implementation used by the
service out of the box and by the tests.

Uniqueness contract (every store MUST honour it at write time):
  - at most one identity per non-empty wallet_address (case-insensitive)
  - at most one identity per non-empty email
  - at most one identity per non-empty phone
  - "" means "unset" and never collides

The guard in uniqueness.py is only a friendly pre-check. Two registrations
racing for the same wallet both pass the pre-check; only `create()` decides.

Seed file (optional, KNOWN_IDENTITIES_PATH):

   {
     "identities": [
       {"wallet_address": "0x...", "email": "a@x.com", "roles": ["admin"]},
       {"wallet_address": "0x...", "is_active": false}
     ]
   }
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .errors import DuplicateField
from .signatures import normalize_address

# Order in which colliding fields are reported.
UNIQUE_FIELDS: Tuple[str, ...] = ("phone", "wallet_address", "email")


@dataclass
class Identity:
    identity_id: str
    wallet_address: str
    email: str = ""
    phone: str = ""
    name: str = ""
    is_active: bool = True
    roles: List[str] = field(default_factory=list)
    created_at: int = 0
    last_login_at: Optional[int] = None

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.identity_id,
            "wallet_address": self.wallet_address,
            "email": self.email,
            "phone": self.phone,
            "name": self.name,
            "is_active": self.is_active,
            "roles": list(self.roles),
            "created_at": self.created_at,
            "last_login_at": self.last_login_at,
        }


@dataclass(frozen=True)
class Candidate:
    """Registration input, already normalized (see `normalize_candidate`)."""

    wallet_address: str = ""
    email: str = ""
    phone: str = ""
    name: str = ""
    is_active: bool = True
    roles: Tuple[str, ...] = ()


def normalize_candidate(
    wallet_address: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    name: Optional[str] = None,
    is_active: bool = True,
    roles: Optional[List[str]] = None,
) -> Candidate:
    """
    Missing fields become "" (unset). The wallet address is lower-cased so
    lookups and uniqueness are case-insensitive; the same normalized values
    must be used for the pre-check and for the write.
    """
    return Candidate(
        wallet_address=normalize_address(wallet_address),
        email=(email or "").strip(),
        phone=(phone or "").strip(),
        name=(name or "").strip(),
        is_active=bool(is_active),
        roles=tuple(r.strip().lower() for r in (roles or []) if r and r.strip()),
    )


class IdentityStore(Protocol):
    async def get(self, identity_id: str) -> Optional[Identity]: ...

    async def find_by_wallet_address(self, address: str) -> Optional[Identity]: ...

    async def find_by_any_of(
        self, wallet_address: str, email: str, phone: str
    ) -> Optional[Identity]: ...

    async def create(self, candidate: Candidate) -> Identity: ...

    async def update_wallet_address(self, identity_id: str, wallet_address: str) -> Optional[Identity]: ...

    async def touch_login(self, identity_id: str) -> None: ...


class InMemoryIdentityStore:
    def __init__(self):
        self.identities: Dict[str, Identity] = {}
        # field -> value -> identity_id
        self._index: Dict[str, Dict[str, str]] = {f: {} for f in UNIQUE_FIELDS}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------
    async def get(self, identity_id: str) -> Optional[Identity]:
        return self.identities.get(identity_id)

    async def find_by_wallet_address(self, address: str) -> Optional[Identity]:
        key = normalize_address(address)
        if not key:
            return None
        identity_id = self._index["wallet_address"].get(key)
        return self.identities.get(identity_id) if identity_id else None

    async def find_by_any_of(
        self, wallet_address: str, email: str, phone: str
    ) -> Optional[Identity]:
        """First identity (by creation order) owning any of the non-empty values."""
        wanted = {
            "wallet_address": normalize_address(wallet_address),
            "email": (email or "").strip(),
            "phone": (phone or "").strip(),
        }
        hits = set()
        for f, v in wanted.items():
            if v and v in self._index[f]:
                hits.add(self._index[f][v])
        if not hits:
            return None
        # dicts keep insertion order
        for identity_id, identity in self.identities.items():
            if identity_id in hits:
                return identity
        return None

    async def find_by_id_or_wallet(self, key: str) -> Optional[Identity]:
        """Resolve a path parameter that is either an identity id or a wallet address."""
        identity = self.identities.get(key)
        if identity:
            return identity
        return await self.find_by_wallet_address(key)

    # -------------------------------------------------------------------------
    # Writes (uniqueness enforced here, under the store lock)
    # -------------------------------------------------------------------------
    def _check_unique_unlocked(self, values: Dict[str, str], owner: Optional[str] = None) -> None:
        for f in UNIQUE_FIELDS:
            v = values.get(f, "")
            if not v:
                continue
            holder = self._index[f].get(v)
            if holder is not None and holder != owner:
                raise DuplicateField(f, v)

    def _index_unlocked(self, identity: Identity) -> None:
        for f in UNIQUE_FIELDS:
            v = getattr(identity, f)
            if v:
                self._index[f][v] = identity.identity_id

    def _unindex_unlocked(self, identity: Identity) -> None:
        for f in UNIQUE_FIELDS:
            v = getattr(identity, f)
            if v and self._index[f].get(v) == identity.identity_id:
                del self._index[f][v]

    async def create(self, candidate: Candidate) -> Identity:
        wallet = normalize_address(candidate.wallet_address)
        async with self._lock:
            self._check_unique_unlocked(
                {"phone": candidate.phone, "wallet_address": wallet, "email": candidate.email}
            )
            identity = Identity(
                identity_id=uuid.uuid4().hex,
                wallet_address=wallet,
                email=candidate.email,
                phone=candidate.phone,
                name=candidate.name,
                is_active=candidate.is_active,
                roles=list(candidate.roles),
                created_at=int(time.time()),
            )
            self.identities[identity.identity_id] = identity
            self._index_unlocked(identity)
            return identity

    async def update_wallet_address(self, identity_id: str, wallet_address: str) -> Optional[Identity]:
        wallet = normalize_address(wallet_address)
        async with self._lock:
            current = self.identities.get(identity_id)
            if current is None:
                return None
            self._check_unique_unlocked({"wallet_address": wallet}, owner=identity_id)
            self._unindex_unlocked(current)
            updated = replace(current, wallet_address=wallet)
            self.identities[identity_id] = updated
            self._index_unlocked(updated)
            return updated

    async def set_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        async with self._lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.is_active = bool(is_active)
            return identity

    async def touch_login(self, identity_id: str) -> None:
        identity = self.identities.get(identity_id)
        if identity:
            identity.last_login_at = int(time.time())


# -----------------------------------------------------------------------------
# Seed file
# -----------------------------------------------------------------------------
def load_identities_file(path: Optional[Path]) -> List[Candidate]:
    """
    Read identity candidates from a JSON seed file.

    Returns [] if no path is configured or the file does not exist. A file that
    exists but is not valid raises ValueError: starting with a silently empty
    identity set would lock everybody out.
    """
    if path is None or not Path(path).exists():
        return []

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid identities file {path}: {e}") from e

    rows = data.get("identities") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        raise ValueError(f"invalid identities file {path}: expected {{\"identities\": [...]}}")

    out: List[Candidate] = []
    for i, row in enumerate(rows):
        where = f"invalid identities file {path}: entry {i}"
        if not isinstance(row, dict):
            raise ValueError(f"{where} is not an object")
        if not isinstance(row.get("wallet_address"), str) or not row["wallet_address"].strip():
            raise ValueError(f"{where} needs a wallet_address string")
        for key in ("email", "phone", "name"):
            if row.get(key) is not None and not isinstance(row[key], str):
                raise ValueError(f"{where}: {key} must be a string")
        is_active = row.get("is_active", True)
        if not isinstance(is_active, bool):
            raise ValueError(f"{where}: is_active must be true or false")
        roles = row.get("roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise ValueError(f"{where}: roles must be a list of strings")

        out.append(
            normalize_candidate(
                wallet_address=row["wallet_address"],
                email=row.get("email"),
                phone=row.get("phone"),
                name=row.get("name"),
                is_active=is_active,
                roles=roles,
            )
        )
    return out


async def seed_store(store: IdentityStore, candidates: List[Candidate]) -> int:
    """Create every seed identity. Duplicates in the seed file raise DuplicateField."""
    for c in candidates:
        await store.create(c)
    return len(candidates)
