# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class BroadcastDispatcher:
    """
    Best-effort fan-out to every open connection in the registry.

    A peer whose send outlasts its timeout is dropped from the registry, so it costs
    at most one timeout and never holds up later broadcasts.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        registry.bind(self)

    async def send(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        if not connection.is_open:
            return False
        try:
            await connection.send_json(payload)
        except asyncio.TimeoutError:
            logger.warning(
                "send stalled id=%s peer=%s type=%s timeout=%.2fs, dropping connection",
                connection.conn_id,
                connection.peer,
                payload.get("type", ""),
                connection.send_timeout_sec,
            )
            await self.registry.unregister(connection)
            return False
        except Exception as e:
            logger.warning(
                "send failed id=%s peer=%s type=%s err=%s",
                connection.conn_id,
                connection.peer,
                payload.get("type", ""),
                e,
            )
            return False
        return True

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        targets = [c for c in self.registry.connections() if c.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(self.send(c, payload) for c in targets))
        delivered = sum(1 for ok in results if ok)
        logger.debug("broadcast type=%s targets=%d delivered=%d", payload.get("type", ""), len(targets), delivered)
        return delivered
