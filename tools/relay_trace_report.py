#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List


RELAY_TRACE_RE = re.compile(r"relay_trace\s+(\{.*\})\s*$")


def _parse_relay_rows(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            m = RELAY_TRACE_RE.search(line.strip())
            if not m:
                continue
            try:
                row = json.loads(m.group(1))
            except json.JSONDecodeError:
                continue
            if str(row.get("topic", "")) != "relay":
                continue
            rows.append(row)
    return rows


def _group_rows(rows: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        sid = str(row.get("session_id", "") or "")
        if not sid:
            continue
        grouped[sid].append(row)
    return grouped


def _summarize(grouped: Dict[str, List[Dict[str, Any]]]) -> str:
    lines: List[str] = [f"sessions={len(grouped)}"]
    for sid, rows in sorted(grouped.items()):
        rows_sorted = sorted(rows, key=lambda r: int(r.get("trace_seq", 0) or 0))
        fragments = sum(1 for r in rows_sorted if r.get("event") == "fragment")
        emits = [r for r in rows_sorted if r.get("event") == "translation_emit"]
        interims = sum(1 for r in emits if not r.get("final"))
        finals = sum(1 for r in emits if r.get("final"))
        stale = sum(1 for r in rows_sorted if r.get("event") == "interim_stale")
        failed = sum(1 for r in rows_sorted if str(r.get("event", "")).endswith("_failed"))
        last_event = str(rows_sorted[-1].get("event", "")) if rows_sorted else ""
        lines.append(
            f"[{sid}] fragments={fragments} interim={interims} final={finals} "
            f"stale={stale} failed={failed} last_event={last_event}"
        )
        for row in rows_sorted[-5:]:
            lines.append(
                "  - "
                f"trace_seq={int(row.get('trace_seq', 0) or 0)} event={row.get('event', '')} "
                f"seq={int(row.get('seq', 0) or 0)} chars={int(row.get('text_chars', 0) or 0)} "
                f"reason={row.get('reason', '')}"
            )
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize relay_trace events from the relay server log.")
    p.add_argument("--log", required=True, help="Path to relay server log file")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    rows = _parse_relay_rows(Path(args.log).expanduser())
    print(_summarize(_group_rows(rows)))


if __name__ == "__main__":
    main()
