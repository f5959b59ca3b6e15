import asyncio
import json

import pytest

from walletgate.errors import DuplicateField
from walletgate.identities import (
    InMemoryIdentityStore,
    load_identities_file,
    normalize_candidate,
    seed_store,
)


def test_normalize_candidate_fills_and_lowercases():
    c = normalize_candidate(wallet_address=" 0xAbC ", email=None, phone=None, roles=["Admin", " "])
    assert c.wallet_address == "0xabc"
    assert c.email == ""
    assert c.phone == ""
    assert c.roles == ("admin",)
    assert c.is_active is True


async def test_create_stores_lowercase_wallet(store):
    identity = await store.create(normalize_candidate(wallet_address="0xAbCdEf"))
    assert identity.wallet_address == "0xabcdef"
    assert identity.created_at > 0
    assert await store.get(identity.identity_id) is identity


async def test_find_by_wallet_is_case_insensitive(store):
    identity = await store.create(normalize_candidate(wallet_address="0xAbC123"))
    assert await store.find_by_wallet_address("0xABC123") is identity
    assert await store.find_by_wallet_address("0xabc123") is identity
    assert await store.find_by_wallet_address("0xdef") is None
    assert await store.find_by_wallet_address("") is None


async def test_empty_phone_and_email_do_not_collide(store):
    await store.create(normalize_candidate(wallet_address="0x1"))
    await store.create(normalize_candidate(wallet_address="0x2"))
    assert len(store.identities) == 2
    assert await store.find_by_any_of("", "", "") is None


@pytest.mark.parametrize(
    "second, field",
    [
        ({"wallet_address": "0xAAA"}, "wallet_address"),
        ({"wallet_address": "0xbbb", "email": "a@x.com"}, "email"),
        ({"wallet_address": "0xbbb", "phone": "555"}, "phone"),
    ],
)
async def test_create_enforces_uniqueness(store, second, field):
    await store.create(normalize_candidate(wallet_address="0xaaa", email="a@x.com", phone="555"))
    with pytest.raises(DuplicateField) as exc:
        await store.create(normalize_candidate(**second))
    assert exc.value.field == field
    assert len(store.identities) == 1


async def test_concurrent_creates_yield_one_identity(store):
    candidates = [normalize_candidate(wallet_address="0xRACE", email=f"u{i}@x.com") for i in range(20)]
    results = await asyncio.gather(*(store.create(c) for c in candidates), return_exceptions=True)

    created = [r for r in results if not isinstance(r, Exception)]
    dupes = [r for r in results if isinstance(r, DuplicateField)]
    assert len(created) == 1
    assert len(dupes) == 19
    assert all(d.field == "wallet_address" for d in dupes)


async def test_find_by_any_of_returns_first_created(store):
    first = await store.create(normalize_candidate(wallet_address="0x1", email="a@x.com"))
    await store.create(normalize_candidate(wallet_address="0x2", phone="555"))
    assert await store.find_by_any_of("0x9", "a@x.com", "555") is first


async def test_find_by_id_or_wallet(store):
    identity = await store.create(normalize_candidate(wallet_address="0xFeed"))
    assert await store.find_by_id_or_wallet(identity.identity_id) is identity
    assert await store.find_by_id_or_wallet("0xFEED") is identity
    assert await store.find_by_id_or_wallet("unknown") is None


async def test_update_wallet_address_reindexes(store):
    identity = await store.create(normalize_candidate(wallet_address="0xold"))
    updated = await store.update_wallet_address(identity.identity_id, "0xNEW")
    assert updated.wallet_address == "0xnew"
    assert await store.find_by_wallet_address("0xold") is None
    assert (await store.find_by_wallet_address("0xnew")).identity_id == identity.identity_id


async def test_update_wallet_address_rejects_taken(store):
    await store.create(normalize_candidate(wallet_address="0xtaken"))
    other = await store.create(normalize_candidate(wallet_address="0xmine"))
    with pytest.raises(DuplicateField):
        await store.update_wallet_address(other.identity_id, "0xTAKEN")
    # re-assigning your own wallet is fine
    again = await store.update_wallet_address(other.identity_id, "0xMINE")
    assert again.wallet_address == "0xmine"


async def test_update_wallet_address_unknown_identity(store):
    assert await store.update_wallet_address("missing", "0x1") is None


async def test_set_active_and_touch_login(store):
    identity = await store.create(normalize_candidate(wallet_address="0x1"))
    await store.set_active(identity.identity_id, False)
    assert identity.is_active is False
    await store.touch_login(identity.identity_id)
    assert identity.last_login_at is not None


def test_load_identities_file_missing(tmp_path):
    assert load_identities_file(None) == []
    assert load_identities_file(tmp_path / "nope.json") == []


def test_load_identities_file(tmp_path):
    path = tmp_path / "known_identities.json"
    path.write_text(
        json.dumps(
            {
                "identities": [
                    {"wallet_address": "0xAA", "email": "a@x.com", "roles": ["admin"]},
                    {"wallet_address": "0xBB", "is_active": False},
                ]
            }
        ),
        encoding="utf-8",
    )
    rows = load_identities_file(path)
    assert [r.wallet_address for r in rows] == ["0xaa", "0xbb"]
    assert rows[0].roles == ("admin",)
    assert rows[1].is_active is False


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        json.dumps({"fingerprints": []}),
        json.dumps({"identities": [{"email": "x"}]}),
        json.dumps({"identities": ["0xAA"]}),
        json.dumps({"identities": [{"wallet_address": "0xAA", "is_active": "false"}]}),
        json.dumps({"identities": [{"wallet_address": "0xAA", "roles": "admin"}]}),
        json.dumps({"identities": [{"wallet_address": "0xAA", "roles": [1]}]}),
        json.dumps({"identities": [{"wallet_address": "0xAA", "phone": 5550100}]}),
    ],
)
def test_load_identities_file_invalid(tmp_path, content):
    path = tmp_path / "known_identities.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError):
        load_identities_file(path)


async def test_seed_store():
    store = InMemoryIdentityStore()
    n = await seed_store(store, [normalize_candidate(wallet_address="0x1"), normalize_candidate(wallet_address="0x2")])
    assert n == 2
    assert await store.find_by_wallet_address("0x2") is not None
