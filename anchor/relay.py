"""Fan-out of note events to the other live connections of the same user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

NOTE_CREATED = "note-created"
NOTE_UPDATED = "note-updated"
NOTE_DELETED = "note-deleted"
HELLO = "hello"

NOTE_EVENTS = frozenset({NOTE_CREATED, NOTE_UPDATED, NOTE_DELETED})


class Peer(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass
class _Connection:
    peer: Peer
    channel: Optional[str]


class BroadcastRelay:
    """Stateless relay: no persistence, no acknowledgement, no replay.

    A peer that joins late only learns about notes through its own list fetch.
    Sends run in registration order, so frames reach a single peer in the
    order they were broadcast.
    """

    def __init__(self) -> None:
        self._connections: dict[str, _Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def connect(self, peer: Peer, channel: Optional[str] = None) -> str:
        """Register an already-open peer and return its connection id."""
        connection_id = uuid4().hex
        self._connections[connection_id] = _Connection(peer, channel)
        logger.info("peer connected: %s (channel %s)", connection_id, channel)
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is not None:
            logger.info("peer disconnected: %s", connection_id)

    def peers(self, channel: Optional[str] = None) -> list[str]:
        return [cid for cid, conn in self._connections.items() if conn.channel == channel]

    async def send(self, connection_id: str, event: str, payload: Any = None) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        try:
            await conn.peer.send_json({"event": event, "payload": payload})
        except Exception as exc:
            logger.warning("dropping peer %s after failed send: %s", connection_id, exc)
            self.disconnect(connection_id)
            return False
        return True

    async def broadcast(
        self,
        event: str,
        payload: Any = None,
        *,
        exclude: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> int:
        """Deliver to every peer in ``channel`` except ``exclude``; returns the delivered count.

        Failures are logged and swallowed: callers never depend on delivery.
        """
        if event not in NOTE_EVENTS:
            logger.warning("ignoring unknown relay event %r", event)
            return 0
        targets = [
            cid for cid, conn in list(self._connections.items())
            if cid != exclude and conn.channel == channel
        ]
        delivered = 0
        for cid in targets:
            if await self.send(cid, event, payload):
                delivered += 1
        return delivered


class LocalRelayLink:
    """In-process transport between a sync client and a relay.

    ``emit`` is what the client calls; frames coming back from the relay are
    handed to ``deliver`` (typically ``SyncEngine.receive``).
    """

    def __init__(self, relay: BroadcastRelay, channel: Optional[str] = None) -> None:
        self.relay = relay
        self.channel = channel
        self.connection_id: Optional[str] = None
        self._deliver = None

    def attach(self, deliver) -> str:
        self._deliver = deliver
        self.connection_id = self.relay.connect(self, self.channel)
        return self.connection_id

    def close(self) -> None:
        if self.connection_id is not None:
            self.relay.disconnect(self.connection_id)
            self.connection_id = None

    async def send_json(self, data: Any) -> None:
        if self._deliver is not None:
            self._deliver(data["event"], data.get("payload"))

    async def emit(self, event: str, payload: Any) -> None:
        if self.connection_id is None:
            return
        await self.relay.broadcast(event, payload, exclude=self.connection_id, channel=self.channel)


__all__ = [
    "BroadcastRelay",
    "LocalRelayLink",
    "Peer",
    "NOTE_CREATED",
    "NOTE_UPDATED",
    "NOTE_DELETED",
    "NOTE_EVENTS",
    "HELLO",
]
