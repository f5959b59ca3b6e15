#!/usr/bin/env python3
"""
verify_audit.py: verify the walletgate authentication audit log (JSONL).

Checks:
- every line is a JSON object
- hash chaining: prev_hash links to the previous line's hash, and
  hash == SHA3-256(prev_hash || canonical_json(event without hash fields))
- optional state file holds the last hash
- no line carries a raw signature or token (only *_len / *_sha3_256 digests)

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from walletgate.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, chain_hash

# keys that must never show up in an audit line
FORBIDDEN_KEYS = ("signature", "accessToken", "access_token", "encryptedWallet")


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str
    results: Counter = field(default_factory=Counter)


def _is_hex64(s: Any) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        int(s, 16)
        return True
    except ValueError:
        return False


def _iter_jsonl(path: Path) -> Iterable[Tuple[int, Dict[str, Any]]]:
    """Yields (line_number starting at 1, parsed_object)."""
    with path.open("r", encoding="utf-8") as f:
        for idx, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError as e:
                raise ValueError(f"{path}:{idx}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{idx}: JSON root must be object/dict")
            yield idx, obj


def verify_audit(jsonl_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    if not jsonl_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {jsonl_path}")

    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None
    results: Counter = Counter()

    def fail(msg: str) -> VerifyResult:
        return VerifyResult(False, lines, last_hash, msg, results)

    for lineno, event in _iter_jsonl(jsonl_path):
        lines += 1
        results[str(event.get("result", "?"))] += 1

        leaked = [k for k in FORBIDDEN_KEYS if k in event]
        if leaked:
            return fail(f"{jsonl_path}:{lineno}: secret-bearing field(s) present: {', '.join(leaked)}")

        if not _is_hex64(event.get("prev_hash")) or not _is_hex64(event.get("hash")):
            return fail(f"{jsonl_path}:{lineno}: prev_hash/hash missing or not 64-hex")

        if event["prev_hash"] != prev:
            return fail(f"{jsonl_path}:{lineno}: prev_hash mismatch: expected {prev} got {event['prev_hash']}")

        recomputed = chain_hash(prev, event)
        if event["hash"] != recomputed:
            return fail(f"{jsonl_path}:{lineno}: hash mismatch: expected {recomputed} got {event['hash']}")

        prev = event["hash"]
        last_hash = prev

    if state_path is not None:
        if not state_path.exists():
            return fail(f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if lines and state_val != last_hash:
            return fail(f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK", results)


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify walletgate audit log integrity (hash-chained JSONL).")
    p.add_argument(
        "log",
        type=Path,
        nargs="?",
        default=Path("audit") / LOG_NAME,
        help=f"Path to audit JSONL file (default: audit/{LOG_NAME})",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help=f"Optional state file containing last hash (e.g. audit/{STATE_NAME})",
    )
    args = p.parse_args(argv)

    try:
        res = verify_audit(args.log, state_path=args.state)
    except (OSError, ValueError) as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    for k, n in sorted(res.results.items()):
        print(f"result.{k}={n}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
