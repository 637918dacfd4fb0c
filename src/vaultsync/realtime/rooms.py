"""Connection registry — authenticated sockets grouped into owner rooms.

Learn: Every accepted connection belongs to exactly one room,
`owner:<owner_id>`. A phone and a laptop logged in as the same owner share
the room and both get every event. Emission is fire-and-forget:

- no room members → the event is dropped silently
- a recipient that errors or doesn't drain within `send_timeout` misses
  that event; the others still get it
- nothing is stored for later delivery

The manager is a plain object built once per process (see main.py) — not a
module-level singleton.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

from vaultsync.auth.jwt import TokenExpiredError, TokenInvalidError, verify_token
from vaultsync.errors import AUTH_REQUIRED, INVALID_TOKEN, TOKEN_EXPIRED, AuthError

logger = structlog.get_logger()


class Transport(Protocol):
    """Anything that can carry JSON frames to one client (e.g. a Starlette WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class EventEmitter(Protocol):
    """Where the worker sends owner-addressed events."""

    async def emit_to_owner(self, owner_id: str, payload: dict[str, Any]) -> int: ...


@dataclass
class Connection:
    socket_id: str
    owner_id: str
    room: str
    transport: Transport


def room_for(owner_id: str) -> str:
    return f"owner:{owner_id}"


class ConnectionManager:

    def __init__(self, jwt_secret: Optional[str] = None, send_timeout: float = 5.0):
        self.jwt_secret = jwt_secret
        self.send_timeout = send_timeout
        self._rooms: dict[str, dict[str, Connection]] = {}
        self._by_socket: dict[str, Connection] = {}

    # ─── Handshake ────────────────────────────────────────

    def authenticate(self, handshake: Optional[dict[str, Any]]) -> str:
        """Return the owner id for a handshake, or raise AuthError."""
        token = (handshake or {}).get("token")
        if not token or not isinstance(token, str):
            raise AuthError(AUTH_REQUIRED)
        try:
            claims = verify_token(token, secret=self.jwt_secret)
        except TokenExpiredError:
            raise AuthError(TOKEN_EXPIRED)
        except TokenInvalidError:
            raise AuthError(INVALID_TOKEN)
        return str(claims["sub"])

    async def connect(
        self, transport: Transport, handshake: Optional[dict[str, Any]]
    ) -> Connection:
        """Authenticate and join the owner's room."""
        try:
            owner_id = self.authenticate(handshake)
        except AuthError as e:
            logger.warning("realtime.connection_rejected", reason=e.reason)
            raise

        conn = Connection(
            socket_id=uuid.uuid4().hex,
            owner_id=owner_id,
            room=room_for(owner_id),
            transport=transport,
        )
        self._rooms.setdefault(conn.room, {})[conn.socket_id] = conn
        self._by_socket[conn.socket_id] = conn
        logger.info(
            "realtime.connected",
            socket_id=conn.socket_id,
            owner_id=owner_id,
            room=conn.room,
        )
        return conn

    async def disconnect(self, socket_id: str) -> None:
        conn = self._by_socket.pop(socket_id, None)
        if conn is None:
            return
        members = self._rooms.get(conn.room)
        if members is not None:
            members.pop(socket_id, None)
            if not members:
                del self._rooms[conn.room]
        logger.info("realtime.disconnected", socket_id=socket_id, owner_id=conn.owner_id)

    # ─── Introspection ───────────────────────────────────

    def room_members(self, owner_id: str) -> list[Connection]:
        return list(self._rooms.get(room_for(owner_id), {}).values())

    @property
    def connection_count(self) -> int:
        return len(self._by_socket)

    # ─── Emission ────────────────────────────────────────

    async def emit_to_owner(self, owner_id: str, payload: dict[str, Any]) -> int:
        """Broadcast to every live connection of one owner. Returns deliveries."""
        members = self.room_members(owner_id)
        if not members:
            logger.debug("realtime.no_listeners", owner_id=owner_id, event=payload.get("event"))
            return 0

        results = await asyncio.gather(*(self._send(conn, payload) for conn in members))
        delivered = sum(results)
        logger.info(
            "realtime.event_emitted",
            owner_id=owner_id,
            room=room_for(owner_id),
            event=payload.get("event"),
            delivered=delivered,
            recipients=len(members),
        )
        return delivered

    async def _send(self, conn: Connection, payload: dict[str, Any]) -> int:
        try:
            await asyncio.wait_for(conn.transport.send_json(payload), timeout=self.send_timeout)
            return 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Best-effort: this recipient misses the event
            logger.warning(
                "realtime.send_failed",
                socket_id=conn.socket_id,
                owner_id=conn.owner_id,
                error=str(e) or e.__class__.__name__,
            )
            return 0
