# coding=utf-8
from __future__ import annotations

import json
import logging
import time
from collections import deque
from types import SimpleNamespace
from typing import Any, Deque, Dict, List, Optional, Tuple

from .debounce import InterimDebouncer, PendingInterim
from .dispatch import BroadcastDispatcher
from .events import (
    AuthenticationFailure,
    MalformedMessage,
    RelayError,
    TranslationError,
    TranslationEvent,
    UnauthorizedAction,
    error_message,
    translation_message,
)
from .gateway import TranslationGateway
from .registry import ROLE_PUBLISHER, ROLE_SUBSCRIBER, Connection, ConnectionRegistry, PublisherArbiter
from .session import Session, SessionAccumulator
from .text_normalize import TextNormalizer

logger = logging.getLogger(__name__)


def parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedMessage("json message must be an object")
    return payload


class RelayCoordinator:
    """
    Single owner of relay state for one server process.

    Publisher fragments flow through the session accumulator; interim text is
    debounced into live previews, final text is translated immediately. Every
    translation becomes a TranslationEvent broadcast to all open connections.
    Handlers run on one event loop, so the only interleaving happens while a
    debounce timer is pending or a gateway call is in flight. Results are checked
    against the captured session id and sequence number before they are applied.
    """

    def __init__(
        self,
        translator: Any,
        publisher_secret: str,
        *,
        interim_delay_sec: float = 0.5,
        session_idle_sec: float = 3.0,
        history_size: int = 10,
        send_timeout_sec: float = 0.5,
        normalizer: Optional[TextNormalizer] = None,
        trace_log: bool = False,
    ) -> None:
        self.registry = ConnectionRegistry(send_timeout_sec=send_timeout_sec)
        self.dispatcher = BroadcastDispatcher(self.registry)
        self.arbiter = PublisherArbiter(self.registry, publisher_secret)
        self.gateway = translator if isinstance(translator, TranslationGateway) else TranslationGateway(translator)
        self.normalizer = normalizer if normalizer is not None else TextNormalizer()
        self.accumulator = SessionAccumulator(idle_timeout_sec=session_idle_sec, on_expire=self._on_session_expired)
        self.debouncer = InterimDebouncer(self._translate_interim, delay_sec=interim_delay_sec)
        self.history: Deque[TranslationEvent] = deque(maxlen=max(1, int(history_size)))
        self.trace_log = bool(trace_log)
        self._last_interim_seq = 0
        self._trace_seq = 0
        self.stats = SimpleNamespace(
            fragments=0,
            interim_scheduled=0,
            interim_calls=0,
            final_calls=0,
            interim_events=0,
            final_events=0,
            stale_dropped=0,
            gateway_failures=0,
        )

    def _trace(self, event: str, **payload: Any) -> None:
        if not self.trace_log:
            return
        self._trace_seq += 1
        row: Dict[str, Any] = {
            "topic": "relay",
            "trace_seq": int(self._trace_seq),
            "ts_ms": int(time.time() * 1000),
            "event": str(event or ""),
        }
        row.update(payload)
        logger.info("relay_trace %s", json.dumps(row, ensure_ascii=False, separators=(",", ":")))

    # connections

    async def connect(self, transport: Any, peer: str = "unknown") -> Connection:
        return await self.registry.register(transport, peer=peer)

    async def disconnect(self, connection: Connection) -> None:
        await self.registry.unregister(connection)

    async def send(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        return await self.dispatcher.send(connection, payload)

    # inbound messages

    async def handle_text(self, connection: Connection, raw: str) -> None:
        try:
            payload = parse_json_message(raw)
        except MalformedMessage as e:
            logger.info("malformed message id=%s peer=%s err=%s", connection.conn_id, connection.peer, e.reason)
            await self.send(connection, error_message(e.reason))
            return
        await self.handle_message(connection, payload)

    async def handle_message(self, connection: Connection, payload: Dict[str, Any]) -> None:
        msg_type = str(payload.get("type", "") or "").strip().lower()
        try:
            if msg_type in {"authenticate", "auth"}:
                await self._handle_authenticate(connection, payload)
            elif msg_type in {"fragment", "translation"}:
                await self._handle_fragment(connection, payload)
            elif msg_type == "mode":
                await self._handle_mode(connection, payload)
            else:
                raise MalformedMessage(f"unknown message type: {msg_type or '<missing>'}")
        except RelayError as e:
            await self.send(connection, error_message(e.reason))

    async def _handle_authenticate(self, connection: Connection, payload: Dict[str, Any]) -> None:
        secret = payload.get("secret", payload.get("password"))
        try:
            if not self.arbiter.authenticate(connection, secret):
                raise AuthenticationFailure("Invalid password")
        except AuthenticationFailure as e:
            self._trace("auth_failed", conn_id=connection.conn_id)
            await self.send(connection, {"type": "auth_failed", "message": e.reason})
            return
        self._trace("auth_success", conn_id=connection.conn_id)
        await self.send(connection, {"type": "auth_success", "message": "Publisher mode activated"})

    async def _handle_fragment(self, connection: Connection, payload: Dict[str, Any]) -> None:
        if not connection.is_publisher:
            raise UnauthorizedAction("Only the publisher can send fragments")
        text = payload.get("text", payload.get("data"))
        if not isinstance(text, str):
            raise MalformedMessage("fragment text must be a string")
        is_final = payload.get("isFinal", payload.get("is_final", True))
        if not isinstance(is_final, bool):
            raise MalformedMessage("isFinal must be a boolean")
        await self.on_fragment(connection, text, is_final)

    async def _handle_mode(self, connection: Connection, payload: Dict[str, Any]) -> None:
        mode = str(payload.get("mode", "") or "").strip().lower()
        if mode == ROLE_SUBSCRIBER:
            if self.arbiter.switch_to_subscriber(connection):
                self.abandon_session("mode_switch")
        elif mode == ROLE_PUBLISHER:
            if not connection.is_publisher:
                raise UnauthorizedAction("Authenticate to enter publisher mode")
        else:
            raise MalformedMessage("mode must be 'publisher' or 'subscriber'")
        await self.send(connection, {"type": "mode", "mode": connection.role})

    # fragment pipeline

    async def on_fragment(self, connection: Connection, text: str, is_final: bool) -> Optional[TranslationEvent]:
        merged = self.accumulator.on_fragment(text, is_final)
        if merged is None:
            return None
        session_id, accumulated = merged
        self.stats.fragments += 1
        self._trace(
            "fragment",
            session_id=session_id,
            final=bool(is_final),
            text_chars=len(accumulated),
        )

        if not is_final:
            if self.debouncer.on_interim(session_id, accumulated):
                self.stats.interim_scheduled += 1
                self._trace("interim_scheduled", session_id=session_id, seq=self.debouncer.seq)
            return None

        self.debouncer.reset(session_id=session_id)
        return await self._translate_final(connection, session_id, accumulated)

    def _prepare(self, text: str) -> Optional[Tuple[str, str, str]]:
        normalized, source, target = self.normalizer.prepare(text)
        if not normalized:
            return None
        return normalized, source, target

    def _is_current(self, pending: PendingInterim) -> bool:
        return pending.session_id == self.accumulator.current_session_id and pending.seq > self._last_interim_seq

    async def _translate_interim(self, pending: PendingInterim) -> None:
        if not self._is_current(pending):
            self._drop_stale(pending, "superseded_before_call")
            return
        prepared = self._prepare(pending.text)
        if prepared is None:
            self._trace("interim_skipped", session_id=pending.session_id, seq=pending.seq, reason="empty")
            return

        self.stats.interim_calls += 1
        try:
            result = await self.gateway.translate(*prepared)
        except TranslationError as e:
            self.stats.gateway_failures += 1
            logger.warning("interim translation failed session=%s seq=%d err=%s", pending.session_id, pending.seq, e.reason)
            self._trace("interim_failed", session_id=pending.session_id, seq=pending.seq, reason=e.reason)
            return

        if not self._is_current(pending):
            self._drop_stale(pending, "superseded_during_call")
            return
        self._last_interim_seq = pending.seq
        event = TranslationEvent.from_result(
            result,
            session_id=pending.session_id,
            timestamp=int(time.time() * 1000),
            final=False,
        )
        self.stats.interim_events += 1
        await self._emit(event, seq=pending.seq)

    async def _translate_final(self, connection: Connection, session_id: str, text: str) -> Optional[TranslationEvent]:
        prepared = self._prepare(text)
        if prepared is None:
            logger.info("final skipped session=%s reason=empty_after_normalize", session_id)
            self._trace("final_skipped", session_id=session_id, reason="empty")
            return None

        self.stats.final_calls += 1
        try:
            result = await self.gateway.translate(*prepared)
        except TranslationError as e:
            self.stats.gateway_failures += 1
            logger.warning(
                "final translation failed session=%s peer=%s err=%s",
                session_id,
                connection.peer,
                e.reason,
            )
            self._trace("final_failed", session_id=session_id, reason=e.reason)
            raise

        event = TranslationEvent.from_result(
            result,
            session_id=session_id,
            timestamp=int(time.time() * 1000),
            final=True,
        )
        self.history.appendleft(event)
        self.stats.final_events += 1
        logger.info(
            "final translation session=%s %s->%s src_chars=%d",
            session_id,
            event.source_language,
            event.target_language,
            len(event.original_text),
        )
        await self._emit(event)
        return event

    def _drop_stale(self, pending: PendingInterim, reason: str) -> None:
        self.stats.stale_dropped += 1
        logger.debug("stale interim dropped session=%s seq=%d reason=%s", pending.session_id, pending.seq, reason)
        self._trace("interim_stale", session_id=pending.session_id, seq=pending.seq, reason=reason)

    async def _emit(self, event: TranslationEvent, seq: int = 0) -> int:
        delivered = await self.dispatcher.broadcast(translation_message(event))
        self._trace(
            "translation_emit",
            session_id=event.session_id,
            seq=int(seq),
            final=event.final,
            text_chars=len(event.original_text),
            delivered=int(delivered),
        )
        return delivered

    # session lifecycle

    def _on_session_expired(self, session: Session) -> None:
        self.debouncer.reset(session_id=session.session_id)
        logger.debug("session idle expired id=%s", session.session_id)
        self._trace("session_expired", session_id=session.session_id, text_chars=len(session.text))

    def abandon_session(self, reason: str) -> Optional[Session]:
        session = self.accumulator.abandon()
        self.debouncer.reset()
        if session is not None:
            logger.info("session abandoned id=%s reason=%s", session.session_id, reason)
            self._trace("session_abandoned", session_id=session.session_id, reason=reason)
        return session

    def recent_translations(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.history]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "subscribers": self.registry.count(),
            "has_publisher": self.registry.publisher is not None,
            "session_id": self.accumulator.current_session_id,
            "stats": dict(vars(self.stats)),
        }

    async def aclose(self) -> None:
        self.accumulator.abandon()
        await self.debouncer.aclose()
