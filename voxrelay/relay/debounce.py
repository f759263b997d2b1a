# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingInterim:
    session_id: str
    text: str
    seq: int


class InterimDebouncer:
    """
    Trailing debounce for interim (live preview) translations.

    Every new interim text cancels the pending timer and reschedules it, so only the
    latest state inside one ``delay_sec`` window reaches the callback. Repeating the
    text that triggered the previous schedule is a no-op.
    """

    def __init__(
        self,
        callback: Callable[[PendingInterim], Awaitable[None]],
        delay_sec: float = 0.5,
    ) -> None:
        self.callback = callback
        self.delay_sec = max(0.0, float(delay_sec))
        self.last_text = ""
        self._seq = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._pending: Optional[PendingInterim] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> Optional[PendingInterim]:
        return self._pending

    @property
    def seq(self) -> int:
        return self._seq

    def on_interim(self, session_id: str, accumulated_text: str) -> bool:
        text = str(accumulated_text or "")
        if not text.strip():
            return False
        if text == self.last_text:
            return False
        self.last_text = text
        self.cancel()

        self._seq += 1
        pending = PendingInterim(session_id=str(session_id), text=text, seq=self._seq)
        loop = asyncio.get_running_loop()
        self._pending = pending
        self._handle = loop.call_later(self.delay_sec, self._fire, pending)
        return True

    def cancel(self, session_id: Optional[str] = None) -> bool:
        if self._handle is None or self._pending is None:
            return False
        if session_id is not None and self._pending.session_id != session_id:
            return False
        self._handle.cancel()
        self._handle = None
        self._pending = None
        return True

    def reset(self, session_id: Optional[str] = None) -> None:
        self.cancel(session_id=session_id)
        self.last_text = ""

    def _fire(self, pending: PendingInterim) -> None:
        if self._pending is not pending:
            return
        self._handle = None
        self._pending = None
        task = asyncio.get_running_loop().create_task(self.callback(pending))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("interim callback failed err=%r", exc)

    async def aclose(self) -> None:
        self.reset()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
