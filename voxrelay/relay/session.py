# coding=utf-8
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .text_normalize import compact

logger = logging.getLogger(__name__)


def _restates(accumulated: str, fragment: str) -> bool:
    head = compact(accumulated)
    if not compact(fragment).startswith(head):
        return False
    # The restated text must end on a word boundary: "The" -> "Then" is a new word.
    seen = 0
    for idx, ch in enumerate(fragment):
        if ch.isspace():
            continue
        seen += 1
        if seen == len(head):
            rest = fragment[idx + 1 :]
            return not rest or not rest[0].isalnum()
    return False


def merge_fragment(accumulated: str, fragment: str) -> str:
    cur = str(accumulated or "").strip()
    nxt = str(fragment or "").strip()
    if not nxt:
        return cur
    if not cur:
        return nxt
    # Recognizers re-send the whole hypothesis; a restated prefix replaces, anything else appends.
    if compact(nxt) == compact(cur) or _restates(cur, nxt):
        return nxt
    return f"{cur} {nxt}"


@dataclass
class Session:
    session_id: str
    text: str
    created_at: float
    last_activity_at: float
    fragments: int = 1

    def merge(self, fragment: str, now: float) -> None:
        self.text = merge_fragment(self.text, fragment)
        self.last_activity_at = now
        self.fragments += 1


class SessionAccumulator:
    """
    Merges successive transcript fragments into one running utterance.

    A session starts on the first non-empty fragment, is extended by every later
    fragment, and ends either when a final fragment has been consumed or when no
    fragment arrives for ``idle_timeout_sec``.
    """

    def __init__(
        self,
        idle_timeout_sec: float = 3.0,
        on_expire: Optional[Callable[[Session], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.idle_timeout_sec = max(0.01, float(idle_timeout_sec))
        self.on_expire = on_expire
        self._clock = clock
        self._session: Optional[Session] = None
        self._idle_handle: Optional[asyncio.TimerHandle] = None
        self._counter = itertools.count(1)

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def current_session_id(self) -> Optional[str]:
        return self._session.session_id if self._session is not None else None

    @property
    def accumulated_text(self) -> str:
        return self._session.text if self._session is not None else ""

    def _new_session_id(self, now: float) -> str:
        return f"session-{int(now * 1000)}-{next(self._counter)}"

    def on_fragment(self, text: str, is_final: bool) -> Optional[Tuple[str, str]]:
        src = str(text or "").strip()
        if not src:
            return None

        now = self._clock()
        if self._session is None:
            self._session = Session(
                session_id=self._new_session_id(now),
                text=src,
                created_at=now,
                last_activity_at=now,
            )
            logger.debug("session open id=%s", self._session.session_id)
        else:
            self._session.merge(src, now)

        session_id = self._session.session_id
        accumulated = self._session.text
        if is_final:
            self._close("final")
        else:
            self._arm_idle_timer()
        return session_id, accumulated

    def abandon(self) -> Optional[Session]:
        return self._close("abandon")

    def _close(self, reason: str) -> Optional[Session]:
        self._cancel_idle_timer()
        session = self._session
        self._session = None
        if session is not None:
            logger.debug(
                "session close id=%s reason=%s fragments=%d chars=%d",
                session.session_id,
                reason,
                session.fragments,
                len(session.text),
            )
        return session

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.idle_timeout_sec, self._expire, self.current_session_id)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _expire(self, session_id: Optional[str]) -> None:
        self._idle_handle = None
        if session_id is None or session_id != self.current_session_id:
            return
        session = self._close("idle")
        if session is not None and self.on_expire is not None:
            self.on_expire(session)
