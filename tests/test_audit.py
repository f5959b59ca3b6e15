import json

import audit_tui
import verify_audit
from walletgate.audit import GENESIS_HASH, AuditLog, audit_log, build_common, chain_hash


def _fill(log: AuditLog, n: int = 3):
    for i in range(n):
        log.append({**build_common(session_id=f"s{i}", signature="0xsig"), "result": "issued", "reason": "challenge_issued"})


def test_append_links_to_previous(tmp_path):
    log = AuditLog(tmp_path)
    h1 = log.append({"result": "issued"})
    h2 = log.append({"result": "closed"})

    lines = [json.loads(x) for x in log.log_path.read_text(encoding="utf-8").splitlines()]
    assert lines[0]["prev_hash"] == GENESIS_HASH
    assert lines[0]["hash"] == h1 == chain_hash(GENESIS_HASH, lines[0])
    assert lines[1]["prev_hash"] == h1
    assert lines[1]["hash"] == h2
    assert log.state_path.read_text(encoding="utf-8").strip() == h2
    assert log.verify_chain()


def test_callers_cannot_inject_chain_fields(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"result": "issued", "prev_hash": "f" * 64, "hash": "e" * 64})
    line = json.loads(log.log_path.read_text(encoding="utf-8"))
    assert line["prev_hash"] == GENESIS_HASH
    assert log.verify_chain()


def test_disabled_log_writes_nothing(tmp_path):
    log = AuditLog(tmp_path / "off", enabled=False)
    assert log.append({"result": "issued"}) is None
    assert not log.log_path.exists()


def test_build_common_hides_signature():
    common = build_common(session_id="s", address="0xABC", signature="0xdeadbeef", user_agent="x" * 500)
    assert "signature" not in common
    assert common["signature_len"] == len("0xdeadbeef")
    assert len(common["signature_sha3_256"]) == 64
    assert common["address"] == "0xabc"
    assert len(common["user_agent"]) == 200


def test_tampering_breaks_chain(tmp_path):
    log = AuditLog(tmp_path)
    _fill(log)
    lines = log.log_path.read_text(encoding="utf-8").splitlines()
    lines[1] = lines[1].replace('"issued"', '"approved"')
    log.log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    assert not log.verify_chain()


def test_verify_audit_ok(tmp_path, capsys):
    log = AuditLog(tmp_path)
    _fill(log)
    res = verify_audit.verify_audit(log.log_path, state_path=log.state_path)
    assert res.ok
    assert res.lines == 3
    assert res.results["issued"] == 3

    assert verify_audit.main([str(log.log_path), "--state", str(log.state_path)]) == 0
    assert "OK" in capsys.readouterr().out


def test_verify_audit_detects_deleted_line(tmp_path):
    log = AuditLog(tmp_path)
    _fill(log)
    lines = log.log_path.read_text(encoding="utf-8").splitlines()
    log.log_path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

    res = verify_audit.verify_audit(log.log_path)
    assert not res.ok
    assert "prev_hash mismatch" in res.message
    assert verify_audit.main([str(log.log_path)]) == 1


def test_verify_audit_rejects_leaked_signature(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"result": "approved", "signature": "0xraw"})
    res = verify_audit.verify_audit(log.log_path)
    assert not res.ok
    assert "signature" in res.message


def test_verify_audit_state_mismatch(tmp_path):
    log = AuditLog(tmp_path)
    _fill(log)
    log.state_path.write_text("0" * 64 + "\n", encoding="utf-8")
    assert not verify_audit.verify_audit(log.log_path, state_path=log.state_path).ok


def test_verify_audit_missing_log(tmp_path):
    assert verify_audit.main([str(tmp_path / "nope.jsonl")]) == 1


def test_process_log_is_redirected(audit_dir):
    assert audit_log.directory == audit_dir


# -----------------------------------------------------------------------------
# TUI helpers
# -----------------------------------------------------------------------------
def test_tui_helpers():
    assert audit_tui.short("abcdef", 4) == "abc…"
    assert audit_tui.short("abc", 4) == "abc"
    assert audit_tui.hhmmss("not a ts") == ""
    assert len(audit_tui.hhmmss(0)) == 8
    assert audit_tui.field_str({"a": None}, "a") == ""


def test_follower_reads_incrementally(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"result": "issued"})
    f = audit_tui.Follower(str(log.log_path))

    assert [e["result"] for e in f.read_new()] == ["issued"]
    assert f.read_new() == []

    log.append({"result": "closed"})
    with open(log.log_path, "a", encoding="utf-8") as fp:
        fp.write("garbage\n")
    assert [e["result"] for e in f.read_new()] == ["closed", "unparsed"]


async def test_async_append_chains_like_append(tmp_path):
    log = AuditLog(tmp_path)
    h1 = await log.aappend({"result": "issued"})
    h2 = log.append({"result": "closed"})
    lines = [json.loads(x) for x in log.log_path.read_text(encoding="utf-8").splitlines()]
    assert [e["hash"] for e in lines] == [h1, h2]
    assert log.verify_chain()
