# coding=utf-8
# Copyright 2026 The Alibaba Qwen team.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Korean/English live translation relay over WebSocket.

One authenticated publisher streams speech transcript fragments; every connected
client receives the translated text.
"""
import argparse
import asyncio
import json
import logging
import os
import urllib.error
import urllib.request
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from voxrelay.relay.coordinator import RelayCoordinator
from voxrelay.relay.events import error_message
from voxrelay.relay.text_normalize import TextNormalizer

logger = logging.getLogger(__name__)

TERMINOLOGY_KO = (
    ("Status", "스테이터스"),
    ("The Status Network", "스테이터스 네트워크"),
    ("Status Messenger", "스테이터스 메신저"),
    ("Logos", "로고스"),
    ("Codex", "코덱스"),
    ("Waku", "와쿠"),
    ("Nimbus", "님버스"),
    ("Nomos", "노모스"),
    ("Ethereum", "이더리움"),
    ("Bitcoin", "비트코인"),
    ("Blockchain", "블록체인"),
    ("Cryptocurrency", "암호화폐"),
    ("Decentralization", "탈중앙화"),
    ("dApps", "디앱"),
    ("Private messaging", "비밀 메시징"),
)


class OpenAIAPITranslator:
    """
    Translation client using an OpenAI-compatible Chat Completions HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        max_new_tokens: int = 256,
        timeout_sec: float = 30.0,
        api_key: str = "",
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("translation api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("translation api model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.api_key = str(api_key or "").strip()

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            self.chat_url = f"{normalized}/v1/chat/completions"

    def _build_prompt(self, text: str, source_language: str, target_language: str) -> str:
        glossary = "\n".join(f"- {en} → {ko}" for en, ko in TERMINOLOGY_KO)
        return (
            "You are a professional translator for the Status Network, Logos and Web3 ecosystem.\n"
            f"Translate the following {source_language} text to {target_language}.\n"
            "Rules: output only the translation; no explanations or conversational replies; "
            "keep brand names, using these Korean renderings:\n"
            f"{glossary}\n\n"
            f"TEXT TO TRANSLATE: {text}"
        )

    def _extract_content(self, payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def translate(self, text: str, source_language: str = "Korean", target_language: str = "English") -> str:
        src = str(text or "").strip()
        if not src:
            return ""

        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": self._build_prompt(
                        src,
                        source_language=str(source_language),
                        target_language=str(target_language),
                    ),
                }
            ],
            "max_tokens": self.max_new_tokens,
            "temperature": 0,
            "stream": False,
        }
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        req = urllib.request.Request(self.chat_url, data=data, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            detail = ""
            with suppress(Exception):
                detail = e.read().decode("utf-8", errors="replace")[:200]
            raise RuntimeError(f"translation api http {e.code}: {detail}") from e
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("translation api response must be an object")
        return self._extract_content(payload)


class _WebSocketTransport:
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.closed = False

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, payload: Dict[str, Any]) -> None:
        await self.websocket.send_json(payload)


def _load_corrections(path_text: Optional[str]) -> Dict[str, str]:
    raw = str(path_text or "").strip()
    if not raw:
        return {}
    path = Path(raw).expanduser()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValueError(f"cannot read corrections file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid corrections file {path}: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("corrections file must hold a json object")
    out: Dict[str, str] = {}
    for k, v in payload.items():
        if not isinstance(v, str):
            raise ValueError(f"correction for {k!r} must be a string")
        out[str(k)] = v
    return out


def _create_app(args: argparse.Namespace, translator: Any) -> FastAPI:
    normalizer = TextNormalizer(
        corrections=_load_corrections(getattr(args, "corrections_file", None)),
        include_defaults=bool(getattr(args, "default_corrections", True)),
    )
    coordinator = RelayCoordinator(
        translator,
        publisher_secret=str(getattr(args, "publisher_secret", "") or ""),
        interim_delay_sec=float(getattr(args, "interim_delay_sec", 0.5)),
        session_idle_sec=float(getattr(args, "session_idle_sec", 3.0)),
        history_size=int(getattr(args, "history_size", 10)),
        send_timeout_sec=float(getattr(args, "send_timeout_sec", 0.5)),
        normalizer=normalizer,
        trace_log=bool(getattr(args, "relay_trace_log", False)),
    )
    idle_timeout_sec = max(0.0, float(getattr(args, "idle_timeout_sec", 0) or 0))

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await coordinator.aclose()

    app = FastAPI(title="VoxRelay Live Translation Relay", lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        snap = coordinator.snapshot()
        return {
            "status": "ok",
            "subscribers": snap["subscribers"],
            "has_publisher": snap["has_publisher"],
        }

    @app.get("/api/history")
    async def history() -> Dict[str, Any]:
        return {"translations": coordinator.recent_translations()}

    @app.websocket("/ws")
    async def ws_relay(websocket: WebSocket) -> None:
        await websocket.accept()
        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        transport = _WebSocketTransport(websocket)
        connection = await coordinator.connect(transport, peer=peer)
        logger.info("ws open peer=%s id=%s active=%d", peer, connection.conn_id, coordinator.registry.count())

        try:
            while True:
                try:
                    if idle_timeout_sec > 0:
                        msg = await asyncio.wait_for(websocket.receive(), timeout=idle_timeout_sec)
                    else:
                        msg = await websocket.receive()
                except asyncio.TimeoutError:
                    await coordinator.send(connection, error_message("idle timeout"))
                    break

                if msg.get("type") == "websocket.disconnect":
                    break

                text = msg.get("text")
                if text is None:
                    await coordinator.send(connection, error_message("binary frames are not supported"))
                    continue
                await coordinator.handle_text(connection, text)
                if connection.stalled:
                    break
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("ws handler failed peer=%s id=%s", peer, connection.conn_id)
        finally:
            was_publisher = connection.is_publisher
            transport.closed = True
            await coordinator.disconnect(connection)
            with suppress(Exception):
                await websocket.close(code=1000)
            logger.info(
                "ws close peer=%s id=%s publisher=%s active=%d",
                peer,
                connection.conn_id,
                was_publisher,
                coordinator.registry.count(),
            )

    return app


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="VoxRelay Korean/English live translation relay (HTTP + WebSocket)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=3000, help="Bind port")
    p.add_argument(
        "--publisher-secret",
        default=os.environ.get("PUBLISHER_SECRET", os.environ.get("PUBLISHER_PASSWORD", "")),
        help="Shared secret a connection must present to become the publisher (env: PUBLISHER_SECRET)",
    )
    p.add_argument(
        "--translation-api-base-url",
        default=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com"),
        help="OpenAI-compatible translation API base URL",
    )
    p.add_argument("--translation-api-model", default="gpt-4o-mini", help="OpenAI-compatible translation model name")
    p.add_argument(
        "--translation-api-key",
        default=os.environ.get("OPENAI_API_KEY", ""),
        help="Bearer token for the translation API (env: OPENAI_API_KEY)",
    )
    p.add_argument(
        "--translation-api-timeout-sec",
        type=float,
        default=30.0,
        help="Timeout seconds for each translation API request",
    )
    p.add_argument(
        "--translation-max-new-tokens",
        type=int,
        default=256,
        help="Translation max generation tokens",
    )
    p.add_argument(
        "--interim-delay-sec",
        type=float,
        default=0.5,
        help="Debounce delay before an interim fragment is translated as a live preview",
    )
    p.add_argument(
        "--session-idle-sec",
        type=float,
        default=3.0,
        help="Silence after which the accumulated utterance is dropped and a new session starts",
    )
    p.add_argument("--history-size", type=int, default=10, help="Final translations kept for /api/history")
    p.add_argument(
        "--send-timeout-sec",
        type=float,
        default=0.5,
        help="Drop a client whose outbound send does not finish within this many seconds (0 disables)",
    )
    p.add_argument(
        "--idle-timeout-sec",
        type=float,
        default=0.0,
        help="Close a websocket that sends nothing for this long (0 disables)",
    )
    p.add_argument(
        "--corrections-file",
        default=None,
        help="JSON object of extra misrecognition corrections (phrase -> replacement)",
    )
    p.add_argument(
        "--default-corrections",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Apply the built-in Web3 terminology corrections before translation",
    )
    p.add_argument(
        "--relay-trace-log",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Emit structured relay_trace logs for session and translation transitions",
    )
    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if not str(args.publisher_secret or "").strip():
        logger.error("startup guard failed: publisher secret is empty (set --publisher-secret or PUBLISHER_SECRET)")
        raise SystemExit(2)
    if not args.translation_api_key:
        logger.warning("translation api key is empty; requests go out unauthenticated")

    try:
        translator = OpenAIAPITranslator(
            base_url=args.translation_api_base_url,
            model=args.translation_api_model,
            max_new_tokens=args.translation_max_new_tokens,
            timeout_sec=args.translation_api_timeout_sec,
            api_key=args.translation_api_key,
        )
        app = _create_app(args, translator)
    except ValueError as exc:
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc
    logger.info(
        "translator ready base_url=%s model=%s interim_delay=%.2fs session_idle=%.2fs",
        args.translation_api_base_url,
        args.translation_api_model,
        args.interim_delay_sec,
        args.session_idle_sec,
    )

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
