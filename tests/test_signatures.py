import pytest

from walletgate.errors import MalformedSignature
from walletgate.signatures import (
    normalize_address,
    recover_address,
    same_address,
    sign_challenge,
)


def _flip_bit(sig_hex: str, bit: int) -> str:
    raw = bytearray(bytes.fromhex(sig_hex[2:]))
    raw[bit // 8] ^= 1 << (bit % 8)
    return "0x" + raw.hex()


def test_recovers_signer_address(wallet):
    sig = sign_challenge(wallet.key, "c1")
    assert recover_address("c1", sig) == wallet.address


def test_recovered_address_is_checksummed(wallet):
    addr = recover_address("hello", sign_challenge(wallet.key, "hello"))
    # Account.address is the EIP-55 checksummed form
    assert addr == wallet.address
    assert normalize_address(addr) == wallet.address.lower()


def test_signature_without_0x_prefix(wallet):
    sig = sign_challenge(wallet.key, "challenge")
    assert recover_address("challenge", sig[2:]) == wallet.address


def test_raw_recovery_id_accepted(wallet):
    sig = bytearray(bytes.fromhex(sign_challenge(wallet.key, "abc")[2:]))
    sig[-1] -= 27
    assert recover_address("abc", "0x" + sig.hex()) == wallet.address


def test_other_message_recovers_other_address(wallet):
    sig = sign_challenge(wallet.key, "c1")
    # well-formed signature, wrong challenge: no error, just a stranger
    assert recover_address("c2", sig) != wallet.address


@pytest.mark.parametrize("bit", list(range(0, 520, 13)) + [512, 513, 514, 516, 519])
def test_single_bit_flip_never_recovers_signer(wallet, bit):
    sig = sign_challenge(wallet.key, "session-challenge")
    mutated = _flip_bit(sig, bit)
    try:
        addr = recover_address("session-challenge", mutated)
    except MalformedSignature:
        return
    assert addr != wallet.address


@pytest.mark.parametrize(
    "signature",
    [
        "",
        "0x",
        "not-hex",
        "0x1234",
        "0x" + "ab" * 64,
        "0x" + "ab" * 66,
    ],
)
def test_structurally_invalid_signature(signature):
    with pytest.raises(MalformedSignature):
        recover_address("c1", signature)


@pytest.mark.parametrize("v", [2, 26, 29, 35, 37, 155])
def test_bad_recovery_id_rejected(wallet, v):
    raw = bytearray(bytes.fromhex(sign_challenge(wallet.key, "c1")[2:]))
    raw[-1] = v
    with pytest.raises(MalformedSignature):
        recover_address("c1", "0x" + raw.hex())


def test_r_out_of_range_is_malformed(wallet):
    raw = bytearray(bytes.fromhex(sign_challenge(wallet.key, "c1")[2:]))
    raw[0:32] = b"\xff" * 32
    with pytest.raises(MalformedSignature):
        recover_address("c1", "0x" + raw.hex())


def test_address_normalization():
    assert normalize_address("  0xAbCDef  ") == "0xabcdef"
    assert normalize_address(None) == ""
    assert same_address("0xABC", "0xabc")
    assert not same_address("0xABC", "0xabd")
