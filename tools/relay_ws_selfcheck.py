#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List

import websockets

from voxrelay.debug.event_selfcheck import analyze_relay_events, summarize_result


def _load_script(path: Path) -> List[Dict[str, Any]]:
    """
    One fragment per line: either a json object {"text", "isFinal", "delay_ms"} or
    plain text, which is sent as a final fragment.
    """
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            if text.startswith("{"):
                row = json.loads(text)
                rows.append(
                    {
                        "text": str(row.get("text", "") or ""),
                        "isFinal": bool(row.get("isFinal", True)),
                        "delay_ms": max(0, int(row.get("delay_ms", 0) or 0)),
                    }
                )
            else:
                rows.append({"text": text, "isFinal": True, "delay_ms": 0})
    return rows


async def _recv_loop(ws, events: List[Dict[str, Any]], stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        except Exception:
            break
        if isinstance(raw, bytes):
            continue
        events.append(json.loads(raw))


async def _replay(
    ws_url: str,
    secret: str,
    script: List[Dict[str, Any]],
    realtime_factor: float,
    settle_sec: float,
) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    stop = asyncio.Event()

    async with websockets.connect(ws_url) as subscriber, websockets.connect(ws_url) as publisher:
        recv_task = asyncio.create_task(_recv_loop(subscriber, events, stop))

        await publisher.send(json.dumps({"type": "authenticate", "secret": secret}))
        while True:
            reply = json.loads(await publisher.recv())
            msg_type = str(reply.get("type", "")).lower()
            if msg_type == "auth_success":
                break
            if msg_type == "auth_failed":
                raise RuntimeError(f"publisher auth failed: {reply}")

        scale = max(0.01, float(realtime_factor))
        for row in script:
            if row["delay_ms"] > 0:
                await asyncio.sleep(row["delay_ms"] / 1000.0 / scale)
            await publisher.send(json.dumps({"type": "fragment", "text": row["text"], "isFinal": row["isFinal"]}))

        await asyncio.sleep(max(0.0, float(settle_sec)))
        stop.set()
        await recv_task

    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if text:
                events.append(json.loads(text))
    return events


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay transcript fragments through the relay and self-check the broadcast stream.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:3000/ws")
    p.add_argument("--secret", default=os.environ.get("PUBLISHER_SECRET", ""), help="Publisher secret")
    p.add_argument("--script", default="", help="Fragment script (jsonl or plain text lines)")
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster")
    p.add_argument("--settle-sec", type=float, default=4.0, help="Keep listening this long after the last fragment")
    p.add_argument("--events-jsonl", default="", help="save received events to jsonl; or load existing when --script omitted")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.script:
        script = _load_script(Path(args.script).expanduser())
        events = asyncio.run(
            _replay(
                ws_url=str(args.ws_url),
                secret=str(args.secret),
                script=script,
                realtime_factor=float(args.realtime_factor),
                settle_sec=float(args.settle_sec),
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --script for replay, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    result = analyze_relay_events(events)
    print(summarize_result(result))


if __name__ == "__main__":
    main()
