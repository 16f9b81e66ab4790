"""Realtime channel client with reconnect/backoff and terminal auth failure."""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from lockgate.client.errors import ChannelAuthFailed
from lockgate.models import ChannelErrorCode, ConnectionState

logger = logging.getLogger("lockgate.client.channel")

AUTH_FAILED_CLOSE_CODE = 4401

EventCallback = Callable[[dict[str, Any]], Any]
StateCallback = Callable[[ConnectionState], Any]
AuthFailedCallback = Callable[[str], Any]


class TransportClosed(Exception):
    """The underlying connection closed; ``code`` is the close code if known."""

    def __init__(self, code: int | None = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"connection closed (code={code}) {reason}".strip())


class ChannelTransport(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str], Awaitable[ChannelTransport]]


class WebSocketTransport:
    """Adapts a ``websockets`` client connection to ``ChannelTransport``."""

    def __init__(self, websocket):
        self._websocket = websocket

    async def send(self, message: str) -> None:
        try:
            await self._websocket.send(message)
        except websockets.ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e

    async def recv(self) -> str:
        try:
            message = await self._websocket.recv()
        except websockets.ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e
        if isinstance(message, bytes):
            return message.decode("utf-8")
        return message

    async def close(self) -> None:
        await self._websocket.close()


def _close_details(error: websockets.ConnectionClosed) -> tuple[int | None, str]:
    frame = error.rcvd or error.sent
    if frame is None:
        return None, ""
    return frame.code, frame.reason


async def websocket_connect(url: str) -> WebSocketTransport:
    websocket = await websockets.connect(url)
    return WebSocketTransport(websocket)


class _AuthRejected(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RealtimeChannel:
    """
    One persistent connection per client session.

    State machine:
        disconnected -> connecting -> connected -> reconnecting -> disconnected
    plus the terminal ``auth_failed``. Reconnects back off as
    ``base_delay * 2**attempt`` capped at ``max_delay``; after
    ``max_attempts`` failed reconnects the channel gives up. An auth failure
    never reconnects: the token must be refreshed out of band.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        params: Optional[dict[str, str]] = None,
        connect: TransportFactory = websocket_connect,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        max_attempts: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.url = url
        self.token = token
        self.params = dict(params or {})
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._connect = connect
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[ChannelTransport] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._listeners: dict[str, list[EventCallback]] = {}
        self._state_listeners: list[StateCallback] = []
        self._auth_failed_listeners: list[AuthFailedCallback] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)

    def on(self, event: str, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to a server event; returns the unsubscribe function."""
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def on_state(self, callback: StateCallback) -> Callable[[], None]:
        self._state_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._state_listeners:
                self._state_listeners.remove(callback)

        return unsubscribe

    def on_auth_failed(self, callback: AuthFailedCallback) -> Callable[[], None]:
        self._auth_failed_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._auth_failed_listeners:
                self._auth_failed_listeners.remove(callback)

        return unsubscribe

    async def send(self, event: str, data: dict[str, Any] | None = None) -> bool:
        """Send a frame. Dropped (False) when not connected."""
        transport = self._transport
        if transport is None or not self.connected:
            logger.debug(f"Dropping {event}: channel not connected")
            return False
        try:
            await transport.send(json.dumps({"event": event, "data": data or {}}))
            return True
        except (TransportClosed, OSError) as e:
            logger.info(f"Send of {event} failed: {e}")
            return False

    async def open(self) -> None:
        """
        Start connecting in the background.

        Raises:
            ChannelAuthFailed: the last token was rejected; call ``reauthenticate``
        """
        if self._state.is_terminal():
            raise ChannelAuthFailed("Realtime token rejected; reauthenticate first")
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self.run())

    async def close(self) -> None:
        self._closing = True
        transport = self._transport
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport: {e}")
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._transport = None
        if not self._state.is_terminal():
            await self._set_state(ConnectionState.DISCONNECTED)

    async def reauthenticate(self, token: str) -> None:
        """Replace the token after an auth failure and connect again."""
        await self.close()
        self.token = token
        await self._set_state(ConnectionState.DISCONNECTED)
        await self.open()

    async def run(self) -> ConnectionState:
        """
        Connect and keep reconnecting until closed, exhausted or rejected.

        Returns the final state.
        """
        attempt = 0
        ever_tried = False
        while not self._closing:
            await self._set_state(
                ConnectionState.RECONNECTING if ever_tried else ConnectionState.CONNECTING
            )
            ever_tried = True
            try:
                transport = await self._connect(self._build_url())
            except TransportClosed as e:
                if e.code == AUTH_FAILED_CLOSE_CODE:
                    await self._fail_auth(e.reason or "Authentication failed")
                    return self._state
                logger.info(f"Realtime connect failed: {e}")
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                logger.info(f"Realtime connect failed: {e}")
            else:
                attempt = 0
                self._transport = transport
                await self._set_state(ConnectionState.CONNECTED)
                try:
                    await self._receive(transport)
                except _AuthRejected as e:
                    await self._close_quietly(transport)
                    await self._fail_auth(e.message)
                    return self._state
                except TransportClosed as e:
                    if e.code == AUTH_FAILED_CLOSE_CODE:
                        await self._fail_auth(e.reason or "Authentication failed")
                        return self._state
                    logger.info(f"Realtime connection lost: {e}")
                except OSError as e:
                    logger.info(f"Realtime connection lost: {e}")
                finally:
                    self._transport = None

            if self._closing:
                break
            if attempt >= self.max_attempts:
                logger.warning(f"Giving up after {self.max_attempts} reconnect attempts")
                break

            delay = self.backoff_delay(attempt)
            attempt += 1
            await self._set_state(ConnectionState.RECONNECTING)
            logger.info(f"Reconnecting in {delay}s (attempt {attempt}/{self.max_attempts})")
            await self._sleep(delay)

        await self._set_state(ConnectionState.DISCONNECTED)
        return self._state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_url(self) -> str:
        params = dict(self.params)
        if self.token:
            params["token"] = self.token
        if not params:
            return self.url
        parts = urlsplit(self.url)
        query = "&".join(part for part in (parts.query, urlencode(params)) if part)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    async def _receive(self, transport: ChannelTransport) -> None:
        while True:
            raw = await transport.recv()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON frame")
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                continue

            event = frame["event"]
            data = frame.get("data") or {}
            if event == "error" and data.get("code") == ChannelErrorCode.AUTH_FAILED.value:
                raise _AuthRejected(data.get("message") or "Authentication failed")
            await self._dispatch(event, data)

    async def _dispatch(self, event: str, data: dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, [])):
            await _invoke(callback, data, f"{event} listener")

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug(f"Realtime channel state: {state.value}")
        for callback in list(self._state_listeners):
            await _invoke(callback, state, "state listener")

    async def _fail_auth(self, message: str) -> None:
        logger.error(f"Realtime authentication failed: {message}")
        await self._set_state(ConnectionState.AUTH_FAILED)
        for callback in list(self._auth_failed_listeners):
            await _invoke(callback, message, "auth-failed listener")

    async def _close_quietly(self, transport: ChannelTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")


async def _invoke(callback: Callable[[Any], Any], arg: Any, label: str) -> None:
    try:
        outcome = callback(arg)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"Realtime {label} failed: {e}", exc_info=True)
