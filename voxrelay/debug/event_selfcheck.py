from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Set

from voxrelay.relay.events import SUPPORTED_LANGUAGES


@dataclass
class EventSelfcheckResult:
    interim_count: int
    final_count: int
    session_count: int
    error_count: int
    max_subscribers: int
    events_after_final: int
    duplicate_finals: int
    language_mismatches: int
    examples: List[Dict[str, Any]]

    @property
    def ok(self) -> bool:
        return self.events_after_final == 0 and self.duplicate_finals == 0 and self.language_mismatches == 0


def analyze_relay_events(events: Iterable[Dict[str, Any]]) -> EventSelfcheckResult:
    """
    Check a subscriber's received stream: a final event must close its session and
    every translation must go between the two supported languages.
    """
    interim_count = 0
    final_count = 0
    error_count = 0
    max_subscribers = 0
    after_final = 0
    dup_finals = 0
    mismatches = 0
    sessions: Set[str] = set()
    finalized: Set[str] = set()
    examples: List[Dict[str, Any]] = []

    def _example(kind: str, idx: int, **fields: Any) -> None:
        if len(examples) < 8:
            row = {"kind": kind, "index": idx}
            row.update(fields)
            examples.append(row)

    for idx, msg in enumerate(events):
        msg_type = str(msg.get("type", "")).lower()
        if msg_type == "subscriber_count":
            max_subscribers = max(max_subscribers, int(msg.get("count", 0) or 0))
            continue
        if msg_type == "error":
            error_count += 1
            continue
        if msg_type != "translation":
            continue

        event = msg.get("event") or {}
        sid = str(event.get("session_id", "") or "")
        final = bool(event.get("final", False))
        src = str(event.get("source_language", "") or "")
        tgt = str(event.get("target_language", "") or "")
        sessions.add(sid)

        if final:
            final_count += 1
        else:
            interim_count += 1

        if sid in finalized:
            if final:
                dup_finals += 1
                _example("duplicate_final", idx, session_id=sid)
            else:
                after_final += 1
                _example("interim_after_final", idx, session_id=sid)
        if final:
            finalized.add(sid)

        if src not in SUPPORTED_LANGUAGES or tgt not in SUPPORTED_LANGUAGES or src == tgt:
            mismatches += 1
            _example("language_mismatch", idx, session_id=sid, source=src, target=tgt)

    return EventSelfcheckResult(
        interim_count=interim_count,
        final_count=final_count,
        session_count=len(sessions),
        error_count=error_count,
        max_subscribers=max_subscribers,
        events_after_final=after_final,
        duplicate_finals=dup_finals,
        language_mismatches=mismatches,
        examples=examples,
    )


def summarize_result(result: EventSelfcheckResult) -> str:
    lines = [
        f"interims={result.interim_count}",
        f"finals={result.final_count}",
        f"sessions={result.session_count}",
        f"errors={result.error_count}",
        f"max_subscribers={result.max_subscribers}",
        f"events_after_final={result.events_after_final}",
        f"duplicate_finals={result.duplicate_finals}",
        f"language_mismatches={result.language_mismatches}",
        f"ok={result.ok}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
