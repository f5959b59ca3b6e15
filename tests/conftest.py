"""
Test fixtures.

Every test gets its own audit directory, session registry, identity store and
token issuer. Wallets are real secp256k1 keys from eth_account.
"""

import asyncio

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from eth_account import Account

from walletgate.audit import audit_log
from walletgate.handshake import AuthHandshake
from walletgate.identities import InMemoryIdentityStore
from walletgate.sessions import InMemorySessionRegistry
from walletgate.tokens import Ed25519TokenIssuer


class FakeTransport:
    """Records pushed messages; can be told to fail like a dead socket."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.sent = []
        self.delay = delay
        self.fail = fail

    async def send_json(self, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)


@pytest.fixture(autouse=True)
def audit_dir(tmp_path, monkeypatch):
    """Redirect the process-wide audit log into the test's tmp dir."""
    d = tmp_path / "audit"
    monkeypatch.setattr(audit_log, "directory", d)
    monkeypatch.setattr(audit_log, "enabled", True)
    return d


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def wallet():
    return Account.create()


@pytest.fixture
def other_wallet():
    return Account.create()


@pytest.fixture
def registry():
    return InMemorySessionRegistry()


@pytest.fixture
def store():
    return InMemoryIdentityStore()


@pytest.fixture
def issuer(store):
    return Ed25519TokenIssuer(
        Ed25519PrivateKey.generate(),
        ttl_seconds=600,
        role_permissions={"admin": ["user_read", "user_write"], "staff": ["user_read"]},
        identity_store=store,
    )


@pytest.fixture
def handshake(registry, store, issuer):
    return AuthHandshake(registry, store, issuer)
