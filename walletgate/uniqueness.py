"""
walletgate/uniqueness.py

One identity per wallet address, per phone and per email.

`IdentityUniquenessGuard.check` is the advisory pre-check used by
registration to produce a deterministic, user-facing error. When several
fields collide, exactly one is reported, in this order:

    phone -> wallet_address -> email

The pre-check is not atomic with the write that follows it. The store's
`create()` re-validates under its own lock, so concurrent registrations for
the same wallet still end with one identity and one DuplicateField.
"""

from dataclasses import dataclass
from typing import Optional

from .audit import audit_log, build_common
from .errors import DuplicateField
from .identities import UNIQUE_FIELDS, Candidate, Identity, IdentityStore
from .signatures import normalize_address


@dataclass(frozen=True)
class UniquenessCheck:
    is_new: bool = True


class IdentityUniquenessGuard:
    def __init__(self, store: IdentityStore):
        self.store = store

    async def check(self, candidate: Candidate) -> UniquenessCheck:
        wallet = normalize_address(candidate.wallet_address)
        existing = await self.store.find_by_any_of(wallet, candidate.email, candidate.phone)
        if existing is None:
            return UniquenessCheck(is_new=True)

        wanted = {"phone": candidate.phone, "wallet_address": wallet, "email": candidate.email}
        for f in UNIQUE_FIELDS:
            mine = wanted[f]
            theirs = getattr(existing, f) or ""
            if f == "wallet_address":
                theirs = normalize_address(theirs)
            if mine and mine == theirs:
                raise DuplicateField(f, mine)

        # The store matched on something we did not ask for; treat as new and
        # let create() have the final word.
        return UniquenessCheck(is_new=True)


async def register_identity(
    store: IdentityStore, candidate: Candidate, actor: Optional[str] = None
) -> Identity:
    """
    Registration flow: pre-check, then create with the same normalized values.

    Raises DuplicateField from either step. Nothing is created on failure.
    """
    try:
        await IdentityUniquenessGuard(store).check(candidate)
        identity = await store.create(candidate)
    except DuplicateField as e:
        await audit_log.aappend(
            {
                **build_common(address=candidate.wallet_address or None, actor=actor),
                "result": "rejected",
                "reason": f"duplicate_{e.field}",
            }
        )
        raise

    await audit_log.aappend(
        {
            **build_common(address=identity.wallet_address, identity_id=identity.identity_id, actor=actor),
            "result": "registered",
            "reason": "identity_created",
        }
    )
    return identity


async def set_wallet_address(
    store: IdentityStore, identity_id: str, wallet_address: str, actor: Optional[str] = None
) -> Optional[Identity]:
    """
    Attach (or replace) the wallet of an existing identity.
    `actor` is the identity id of the caller, recorded in the audit event.

    Returns None if the identity does not exist; raises DuplicateField if
    another identity already owns the address.
    """
    wallet = normalize_address(wallet_address)
    if not wallet:
        raise ValueError("wallet_address is required")

    owner = await store.find_by_wallet_address(wallet)
    if owner is not None and owner.identity_id != identity_id:
        raise DuplicateField("wallet_address", wallet)

    identity = await store.update_wallet_address(identity_id, wallet)
    if identity is not None:
        await audit_log.aappend(
            {
                **build_common(address=wallet, identity_id=identity_id, actor=actor),
                "result": "registered",
                "reason": "wallet_assigned",
            }
        )
    return identity
