#!/usr/bin/env python3
"""
walletgate Audit TUI (Textual)

Loads the hash-chained authentication audit log and (by default) follows new
lines as the server appends them.

Keys
  q        Quit
  p        Pause/Resume follow
  f, /     Focus filter input (substring, Enter applies)
  Esc      Back to table
  Space    Pin details of the highlighted row
  u        Unpin (jump to latest)
  h        Toggle hash/prev_hash in details
"""

from __future__ import annotations

import argparse
import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from textual import events
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.reactive import reactive
from textual.widgets import DataTable, Footer, Input, Static

__app_name__ = "walletgate audit"
__version__ = "0.1.0"

COLUMNS = ("Time", "Result", "Reason", "Session", "Address", "IP", "Chain")

# result -> (counter bucket, markup color)
RESULT_STYLE = {
    "approved": ("approved", "green"),
    "denied": ("denied", "red"),
    "locked": ("locked", "magenta"),
    "error": ("error", "red"),
    "issued": ("issued", "cyan"),
    "registered": ("registered", "cyan"),
    "rejected": ("rejected", "yellow"),
    "closed": ("closed", "dim"),
}


def field_str(d: Dict[str, Any], key: str) -> str:
    v = d.get(key)
    return "" if v is None else str(v)


def short(s: str, n: int) -> str:
    return s if len(s) <= n else s[: max(0, n - 1)] + "…"


def hhmmss(ts: Any) -> str:
    try:
        return datetime.fromtimestamp(int(ts)).strftime("%H:%M:%S")
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


class Follower:
    """Tails a JSONL file; reopens it if the inode changes (rotation)."""

    def __init__(self, path: str):
        self.path = path
        self._fp = None
        self._ino = None

    def _open(self) -> None:
        self._fp = open(self.path, "r", encoding="utf-8", errors="replace")
        self._ino = os.fstat(self._fp.fileno()).st_ino

    def read_new(self, limit: int = 500) -> List[Dict[str, Any]]:
        if self._fp is None:
            self._open()
        else:
            try:
                if os.stat(self.path).st_ino != self._ino:
                    self._fp.close()
                    self._open()
            except FileNotFoundError:
                return []

        out: List[Dict[str, Any]] = []
        for _ in range(limit):
            line = self._fp.readline()
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                obj = {"result": "unparsed", "raw": line}
            if isinstance(obj, dict):
                out.append(obj)
        return out


class Stats(Static):
    counts: reactive[Dict[str, int]] = reactive(dict, always_update=True)
    chain_breaks = reactive(0)
    paused = reactive(False)
    filter_text = reactive("")

    def render(self) -> str:
        parts = [f"[b]events[/b]: {sum(self.counts.values())}"]
        for bucket, color in RESULT_STYLE.values():
            n = self.counts.get(bucket, 0)
            if n:
                parts.append(f"[{color}]{bucket}[/{color}]: {n}")
        if self.chain_breaks:
            parts.append(f"[b]chain[/b]: [red]BROKEN ({self.chain_breaks})[/red]")
        else:
            parts.append("[b]chain[/b]: [green]OK[/green]")
        if self.paused:
            parts.append("[yellow][b]PAUSED[/b][/yellow]")
        if self.filter_text:
            parts.append(f"[b]filter[/b]: “{short(self.filter_text, 40)}”")
        return "  |  ".join(parts)


class Details(Static):
    def show(self, e: Optional[Dict[str, Any]], show_hashes: bool) -> None:
        if not e:
            self.update("↑↓ select • Space pin • f filter • p pause • h hashes • u unpin")
            return

        result = field_str(e, "result")
        color = RESULT_STYLE.get(result, ("", "bold"))[1]
        lines = [
            f"[b]Result[/b]: [{color}]{result}[/{color}]",
            f"[b]Reason[/b]: [yellow]{field_str(e, 'reason')}[/yellow]",
            f"[b]Time[/b]: {hhmmss(e.get('ts'))} ({field_str(e, 'ts')})",
            "",
        ]
        for key, label in (
            ("session_id", "Session"),
            ("address", "Address"),
            ("identity_id", "Identity"),
            ("delivered", "Delivered"),
            ("signature_len", "Signature len"),
            ("signature_sha3_256", "Signature SHA3"),
            ("request_ip", "IP"),
            ("user_agent", "User-Agent"),
            ("detail", "Detail"),
        ):
            if key in e:
                lines.append(f"[b]{label}[/b]: {e[key]}")

        if show_hashes:
            lines.append("")
            lines.append(f"[b]Hash[/b]: [dim]{field_str(e, 'hash')}[/dim]")
            lines.append(f"[b]Prev[/b]: [dim]{field_str(e, 'prev_hash')}[/dim]")
        self.update("\n".join(lines))


class AuditTui(App):
    TITLE = f"{__app_name__} v{__version__}"

    CSS = """
    Screen { layout: vertical; }
    #stats { height: 1; padding: 0 1; }
    #filter_row { height: 3; }
    #filter { width: 1fr; }
    #body { height: 1fr; }
    #left { width: 3fr; }
    #right { width: 2fr; }
    #details { height: 1fr; padding: 1; border: round $accent; }
    DataTable { height: 1fr; }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("p", "toggle_pause", "Pause"),
        ("u", "unpin", "Unpin"),
        ("h", "toggle_hashes", "Hashes"),
        ("f", "focus_filter", "Filter"),
        ("/", "focus_filter", "Filter"),
        ("space", "pin", "Pin"),
    ]

    def __init__(self, log_path: str, follow: bool = True, refresh_hz: float = 4.0, max_rows: int = 500):
        super().__init__()
        self.follower = Follower(log_path)
        self.follow = follow
        self.refresh_hz = refresh_hz
        self.max_rows = max_rows

        self.events: List[Dict[str, Any]] = []
        self.chain_ok: List[bool] = []
        self.visible: List[int] = []  # table row -> index into self.events
        self.last_hash: Optional[str] = None
        self.paused = False
        self.pinned = False
        self.show_hashes = False

    def compose(self) -> ComposeResult:
        yield Stats(id="stats")
        with Horizontal(id="filter_row"):
            yield Input(placeholder="filter: session, address, result, reason, ip…", id="filter")
        with Horizontal(id="body"):
            with Vertical(id="left"):
                table = DataTable(id="table", cursor_type="row")
                table.add_columns(*COLUMNS)
                yield table
            with Vertical(id="right"):
                yield Details(id="details")
        yield Footer()

    def on_mount(self) -> None:
        self._ingest(self.follower.read_new(limit=1_000_000))
        self._rebuild()
        self.query_one(DataTable).focus()
        if self.follow:
            self.set_interval(1.0 / self.refresh_hz, self._tick)

    # --- data

    def _ingest(self, new_events: List[Dict[str, Any]]) -> None:
        stats = self.query_one(Stats)
        counts = dict(stats.counts)
        for e in new_events:
            prev = field_str(e, "prev_hash")
            ok = not (self.last_hash and prev and prev != self.last_hash)
            if not ok:
                stats.chain_breaks += 1
            if e.get("hash"):
                self.last_hash = str(e["hash"])

            bucket = RESULT_STYLE.get(field_str(e, "result"), ("other", ""))[0]
            counts[bucket] = counts.get(bucket, 0) + 1

            self.events.append(e)
            self.chain_ok.append(ok)
        stats.counts = counts

    def _matches(self, e: Dict[str, Any]) -> bool:
        filt = self.query_one(Stats).filter_text.lower()
        if not filt:
            return True
        blob = " ".join(
            field_str(e, k)
            for k in ("session_id", "address", "identity_id", "result", "reason", "request_ip", "user_agent")
        ).lower()
        return filt in blob

    def _row(self, idx: int) -> tuple:
        e = self.events[idx]
        return (
            hhmmss(e.get("ts")),
            short(field_str(e, "result"), 10),
            short(field_str(e, "reason"), 20),
            short(field_str(e, "session_id"), 14),
            short(field_str(e, "address"), 16),
            short(field_str(e, "request_ip"), 15),
            "OK" if self.chain_ok[idx] else "BROKE",
        )

    def _rebuild(self) -> None:
        table = self.query_one(DataTable)
        table.clear()
        self.visible = [i for i, e in enumerate(self.events) if self._matches(e)][-self.max_rows:]
        for i in self.visible:
            table.add_row(*self._row(i))
        self._select_latest()

    def _select_latest(self) -> None:
        table = self.query_one(DataTable)
        if self.pinned or not self.visible:
            if not self.visible:
                self.query_one(Details).show(None, self.show_hashes)
            return
        table.move_cursor(row=len(self.visible) - 1)
        self.query_one(Details).show(self.events[self.visible[-1]], self.show_hashes)

    def _current(self) -> Optional[Dict[str, Any]]:
        row = self.query_one(DataTable).cursor_row
        if row is None or not (0 <= row < len(self.visible)):
            return None
        return self.events[self.visible[row]]

    def _tick(self) -> None:
        if self.paused:
            return
        new_events = self.follower.read_new()
        if not new_events:
            return
        start = len(self.events)
        self._ingest(new_events)
        table = self.query_one(DataTable)
        for i in range(start, len(self.events)):
            if self._matches(self.events[i]):
                self.visible.append(i)
                table.add_row(*self._row(i))
        if len(self.visible) > self.max_rows:
            self._rebuild()
        else:
            self._select_latest()

    # --- actions

    def action_toggle_pause(self) -> None:
        self.paused = not self.paused
        self.query_one(Stats).paused = self.paused

    def action_focus_filter(self) -> None:
        self.query_one(Input).focus()

    def action_pin(self) -> None:
        self.pinned = True
        self.query_one(Details).show(self._current(), self.show_hashes)

    def action_unpin(self) -> None:
        self.pinned = False
        self._select_latest()

    def action_toggle_hashes(self) -> None:
        self.show_hashes = not self.show_hashes
        self.query_one(Details).show(self._current(), self.show_hashes)

    # --- callbacks

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.query_one(Stats).filter_text = event.value.strip()
        self._rebuild()
        self.query_one(DataTable).focus()

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.query_one(DataTable).focus()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if not self.pinned:
            self.query_one(Details).show(self._current(), self.show_hashes)


def main() -> None:
    ap = argparse.ArgumentParser(description="walletgate audit log viewer (Textual)")
    ap.add_argument("logfile", help="Path to audit JSONL file (e.g. audit/auth_audit.jsonl)")
    ap.add_argument("--no-follow", action="store_true", help="Load once and do NOT follow new lines")
    ap.add_argument("--hz", type=float, default=4.0, help="Follow refresh rate (default: 4)")
    ap.add_argument("--max-rows", type=int, default=500, help="Max visible rows (default: 500)")
    args = ap.parse_args()

    if not os.path.exists(args.logfile):
        raise SystemExit(f"Log file not found: {args.logfile}")

    AuditTui(args.logfile, follow=not args.no_follow, refresh_hz=args.hz, max_rows=args.max_rows).run()


if __name__ == "__main__":
    main()
