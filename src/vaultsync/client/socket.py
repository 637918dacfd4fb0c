"""Event stream — the client end of the /ws connection.

Learn: EventStream connects with the session's access token, waits for the
server's first frame, then dispatches every event frame to the handlers
registered for its `event` name:

    stream = EventStream("ws://localhost:8000/ws", session)
    stream.on("asset_processed", synchronizer.handle_event)
    task = asyncio.create_task(stream.run())

Status moves through disconnected → connecting → connected, and on a
dropped connection through reconnecting with exponential backoff (1s, 2s,
4s ... capped at 30s). After `max_attempts` failed reconnects in a row, or
when the server rejects the token, the status is `error` and run() returns.
"""

import asyncio
import json
from typing import Any, Callable, Optional

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from vaultsync.client.session import SessionStore

logger = structlog.get_logger()

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECTING = "reconnecting"
ERROR = "error"

Handler = Callable[[dict[str, Any]], Any]
StatusCallback = Callable[[str], None]


def _parse(raw: str | bytes) -> Optional[dict[str, Any]]:
    try:
        message = json.loads(raw)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


class EventStream:

    def __init__(
        self,
        url: str,
        session: SessionStore,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect: Callable = websockets.connect,
    ):
        self.url = url
        self.session = session
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.last_error: Optional[str] = None
        self._connect = connect
        self._handlers: dict[str, list[Handler]] = {}
        self._status_callbacks: list[StatusCallback] = []
        self._status = DISCONNECTED
        self._stopping = False
        self._ws = None

    # ─── Registration ─────────────────────────────────────

    @property
    def status(self) -> str:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status == CONNECTED

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a function that unregisters it."""
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self._handlers.get(event, []).remove(handler)

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        self._status_callbacks.append(callback)
        return lambda: self._status_callbacks.remove(callback)

    def backoff_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)

    # ─── Lifecycle ────────────────────────────────────────

    async def run(self) -> None:
        """Connect and keep reconnecting until stop(), rejection or give-up."""
        self._stopping = False
        attempt = 0
        while not self._stopping:
            token = self.session.access_token
            if not token:
                self._set_status(DISCONNECTED)
                return

            self._set_status(RECONNECTING if attempt else CONNECTING)
            try:
                rejected = await self._session(token)
                if rejected:
                    return
                attempt = 0
            except (WebSocketException, OSError) as e:
                self.last_error = str(e)
                logger.warning("client.stream_connect_failed", error=str(e), attempt=attempt)

            if self._stopping:
                break
            attempt += 1
            if attempt > self.max_attempts:
                logger.error("client.stream_gave_up", attempts=self.max_attempts)
                self._set_status(ERROR)
                return
            self._set_status(RECONNECTING)
            await asyncio.sleep(self.backoff_for(attempt))

        self._set_status(DISCONNECTED)

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()
        self._set_status(DISCONNECTED)

    async def _session(self, token: str) -> bool:
        """One connection. True if the server rejected the credential."""
        url = str(httpx.URL(self.url).copy_merge_params({"token": token}))
        async with self._connect(url) as ws:
            self._ws = ws
            try:
                first = _parse(await ws.recv()) or {}
                if first.get("event") == "connect_error":
                    self.last_error = first.get("message")
                    logger.warning("client.stream_rejected", reason=self.last_error)
                    self._set_status(ERROR)
                    return True
                self._set_status(CONNECTED)
                logger.info("client.stream_connected", room=first.get("room"))

                async for raw in ws:
                    self.dispatch(raw)
            except ConnectionClosed as e:
                logger.info("client.stream_closed", code=e.rcvd.code if e.rcvd else None)
            finally:
                self._ws = None
        return False

    # ─── Dispatch ─────────────────────────────────────────

    def dispatch(self, raw: str | bytes) -> int:
        """Hand one frame to its handlers. Returns how many ran."""
        message = _parse(raw)
        if message is None:
            logger.warning("client.stream_bad_frame")
            return 0

        ran = 0
        for handler in list(self._handlers.get(message.get("event"), [])):
            try:
                handler(message)
                ran += 1
            except Exception:
                logger.exception("client.stream_handler_error", event=message.get("event"))
        return ran

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        for callback in list(self._status_callbacks):
            callback(status)
