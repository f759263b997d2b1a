# coding=utf-8
from __future__ import annotations

import asyncio
import hmac
import itertools
import logging
import time
from typing import Any, Dict, List, Optional

from .events import subscriber_count_message

logger = logging.getLogger(__name__)

ROLE_PUBLISHER = "publisher"
ROLE_SUBSCRIBER = "subscriber"


class Connection:
    """
    Registry record for one live transport.

    ``transport`` must expose ``is_open`` and ``async send_json(payload)``. Sends are
    serialized through a FIFO lock so one connection sees messages in broadcast order.
    A send that cannot finish within ``send_timeout_sec``, lock wait included, marks the
    connection stalled; a stalled connection reports itself closed from then on.
    """

    def __init__(self, conn_id: str, transport: Any, peer: str = "unknown", send_timeout_sec: float = 0.5) -> None:
        self.conn_id = conn_id
        self.transport = transport
        self.peer = peer
        self.role = ROLE_SUBSCRIBER
        self.connected_at = int(time.time() * 1000)
        self.send_timeout_sec = max(0.0, float(send_timeout_sec))
        self.stalled = False
        self._send_lock = asyncio.Lock()

    @property
    def is_publisher(self) -> bool:
        return self.role == ROLE_PUBLISHER

    @property
    def is_open(self) -> bool:
        if self.stalled:
            return False
        return bool(getattr(self.transport, "is_open", False))

    async def _send_in_order(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.transport.send_json(payload)

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self.send_timeout_sec <= 0:
            await self._send_in_order(payload)
            return
        try:
            await asyncio.wait_for(self._send_in_order(payload), timeout=self.send_timeout_sec)
        except asyncio.TimeoutError:
            self.stalled = True
            raise

    def __repr__(self) -> str:
        return f"Connection(conn_id={self.conn_id!r}, peer={self.peer!r}, role={self.role!r})"


class ConnectionRegistry:
    """
    Owns every live connection record and the single publisher pointer.
    """

    def __init__(self, send_timeout_sec: float = 0.5) -> None:
        self.send_timeout_sec = max(0.0, float(send_timeout_sec))
        self._connections: Dict[str, Connection] = {}
        self._publisher_id: Optional[str] = None
        self._counter = itertools.count(1)
        self.dispatcher = None

    def bind(self, dispatcher) -> None:
        self.dispatcher = dispatcher

    @property
    def publisher(self) -> Optional[Connection]:
        if self._publisher_id is None:
            return None
        return self._connections.get(self._publisher_id)

    def count(self) -> int:
        return len(self._connections)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def get(self, conn_id: str) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def __contains__(self, connection: Connection) -> bool:
        return self._connections.get(connection.conn_id) is connection

    async def register(self, transport: Any, peer: str = "unknown") -> Connection:
        connection = Connection(
            f"conn-{next(self._counter)}",
            transport,
            peer=peer,
            send_timeout_sec=self.send_timeout_sec,
        )
        self._connections[connection.conn_id] = connection
        logger.info("connection registered id=%s peer=%s active=%d", connection.conn_id, peer, self.count())
        await self.broadcast_count()
        return connection

    async def unregister(self, connection: Connection) -> bool:
        if connection not in self:
            return False
        del self._connections[connection.conn_id]
        if self._publisher_id == connection.conn_id:
            self._publisher_id = None
            logger.info("publisher disconnected id=%s peer=%s", connection.conn_id, connection.peer)
        connection.role = ROLE_SUBSCRIBER
        logger.info("connection unregistered id=%s peer=%s active=%d", connection.conn_id, connection.peer, self.count())
        await self.broadcast_count()
        return True

    def assign_publisher(self, connection: Connection) -> Optional[Connection]:
        if connection not in self:
            raise KeyError(f"connection {connection.conn_id} is not registered")
        previous = self.publisher
        if previous is not None and previous is not connection:
            previous.role = ROLE_SUBSCRIBER
            logger.info("publisher demoted id=%s peer=%s", previous.conn_id, previous.peer)
        connection.role = ROLE_PUBLISHER
        self._publisher_id = connection.conn_id
        return previous if previous is not connection else None

    def demote(self, connection: Connection) -> bool:
        if not connection.is_publisher:
            return False
        connection.role = ROLE_SUBSCRIBER
        if self._publisher_id == connection.conn_id:
            self._publisher_id = None
        return True

    async def broadcast_count(self) -> int:
        if self.dispatcher is None:
            return 0
        return await self.dispatcher.broadcast(subscriber_count_message(self.count()))


class PublisherArbiter:
    """
    Grants the publisher role against a single shared secret.
    """

    def __init__(self, registry: ConnectionRegistry, secret: str) -> None:
        if not str(secret or ""):
            raise ValueError("publisher secret is empty")
        self.registry = registry
        self._secret = str(secret).encode("utf-8")

    def check_secret(self, supplied: Any) -> bool:
        if not isinstance(supplied, str):
            return False
        return hmac.compare_digest(supplied.encode("utf-8"), self._secret)

    def authenticate(self, connection: Connection, supplied_secret: Any) -> bool:
        if connection not in self.registry:
            return False
        if not self.check_secret(supplied_secret):
            logger.warning("publisher auth failed id=%s peer=%s", connection.conn_id, connection.peer)
            return False
        self.registry.assign_publisher(connection)
        logger.info("publisher authenticated id=%s peer=%s", connection.conn_id, connection.peer)
        return True

    def switch_to_subscriber(self, connection: Connection) -> bool:
        switched = self.registry.demote(connection)
        if switched:
            logger.info("publisher switched to subscriber id=%s peer=%s", connection.conn_id, connection.peer)
        return switched
