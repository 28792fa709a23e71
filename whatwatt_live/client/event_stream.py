"""
MODULE OVERVIEW:
The live telemetry stream manager: connect, read, watch, recover.

WHAT IS HAPPENING HERE:
One `EventStreamManager` owns one logical connection to `/api/v1/live` and walks
it through an explicit state machine:

    idle -> connecting -> connected -> erroring -> reconnect_scheduled -> connecting ...
      any state -> stopped (explicit stop, terminal until start)

Three asyncio tasks can exist per instance, each held by a handle that is
cancelled idempotently: the connection task (open + read loop), the reconnect
task (backoff sleep, address refresh, next attempt) and the heartbeat task
(detects a connection that is open but silent). All of them run on the same
event loop and only touch state between awaits, so there are no locks.

Error policy:
  * 401 on the stream: AuthenticationError to on_error, no reconnect, idle.
  * anything else going wrong with the transport, including heartbeat silence:
    TransportError to on_error, bounded backoff reconnect.
  * a live frame with broken JSON: logged and skipped, the stream stays up.
  * backoff bound reached: ExhaustionError to on_give_up and on_error, idle.
"""
import asyncio
import codecs
import json
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from loguru import logger

from whatwatt_live.client.address import AddressResolver
from whatwatt_live.client.auth import RequestFn, request_for, resolve_scheme
from whatwatt_live.client.base_client import CALLBACK_NAMES, BaseConnectionClient, Callback, LogSink
from whatwatt_live.shared.client_utils import HeartbeatMonitor, ReconnectPolicy
from whatwatt_live.shared.config import LIVE_EVENT, LIVE_PATH, STREAM_HEADERS
from whatwatt_live.shared.errors import (
    AuthenticationError,
    ExhaustionError,
    InvalidTransitionError,
    ProtocolError,
    StreamError,
    StreamSourceError,
    TransportError,
)
from whatwatt_live.shared.models import AuthScheme, ConnectionConfig, ConnectionState, Frame, StreamStatus
from whatwatt_live.shared.sse import SSEBuffer
from whatwatt_live.shared.streams import iter_chunks

State = ConnectionState

_TRANSITIONS = {
    State.IDLE: {State.CONNECTING, State.STOPPED},
    State.CONNECTING: {State.CONNECTED, State.ERRORING, State.IDLE, State.STOPPED},
    State.CONNECTED: {State.ERRORING, State.STOPPED},
    State.ERRORING: {State.RECONNECT_SCHEDULED, State.IDLE, State.STOPPED},
    State.RECONNECT_SCHEDULED: {State.CONNECTING, State.STOPPED},
    State.STOPPED: {State.CONNECTING},
}

# A session is open in these states; stopping one fires on_disconnect
_ACTIVE = frozenset({State.CONNECTING, State.CONNECTED, State.ERRORING, State.RECONNECT_SCHEDULED})

_SETTABLE_HOOKS = CALLBACK_NAMES + ("logger", "resolver")


async def _cancel(task: Optional[asyncio.Task]) -> None:
    """Cancel `task` and wait for it to unwind. A task never cancels itself."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    await asyncio.wait([task])


class EventStreamManager(BaseConnectionClient):
    protocol_name: str = "event_stream"

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        on_data: Optional[Callback] = None,
        on_connect: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        on_disconnect: Optional[Callback] = None,
        on_give_up: Optional[Callback] = None,
        logger: Optional[LogSink] = None,
        resolver: Optional[AddressResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            on_data=on_data,
            on_connect=on_connect,
            on_error=on_error,
            on_disconnect=on_disconnect,
            on_give_up=on_give_up,
            logger=logger,
        )
        self.resolver = resolver
        self._transport = transport

        self._config = config
        self._state = State.IDLE
        self._url: Optional[str] = None
        self._policy = ReconnectPolicy(
            config.reconnect_delay, config.max_reconnect_attempts, config.max_backoff_multiplier
        )
        self._heartbeat = HeartbeatMonitor(config.heartbeat_timeout, config.heartbeat_interval)
        # (connection key, resolved scheme); dropped whenever credentials or address change
        self._auth_cache: Optional[tuple[tuple, AuthScheme]] = None

        self._connection_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ accessors

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is State.CONNECTED

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def reconnect_attempts(self) -> int:
        return self._policy.attempts

    def get_status(self) -> StreamStatus:
        return StreamStatus(
            connected=self.is_connected,
            reconnect_attempts=self._policy.attempts,
            url=self._url,
            state=self._state,
        )

    def reset_reconnect_counter(self) -> None:
        self._policy.reset()

    # ------------------------------------------------------------------ public lifecycle

    async def start(self) -> None:
        """Open the stream, stopping any live session first."""
        while self._state in _ACTIVE:
            self._log("Event stream already active, stopping existing connection first")
            await self.stop()
        if self._policy.exhausted:
            self._policy.reset()
        self._open()

    async def stop(self) -> None:
        """Tear everything down. Safe from any state and from inside a callback."""
        previous = self._state
        self._cancel_reconnect()
        self._stop_heartbeat()
        if previous is State.STOPPED:
            return

        self._transition(State.STOPPED)
        self._url = None
        task, self._connection_task = self._connection_task, None
        await _cancel(task)

        if previous in _ACTIVE:
            self._log("Stopping event stream")
            await self._invoke("on_disconnect")

    async def aclose(self) -> None:
        await self.stop()

    async def __aenter__(self) -> "EventStreamManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def update_settings(self, config: Optional[ConnectionConfig] = None, **changes: Any) -> bool:
        """Adopt new settings; restart only when the connection itself changed.

        Accepts either a complete `ConnectionConfig` or keyword changes to the
        current one. Callback, `logger` and `resolver` keywords are swapped in
        place and never cause a restart. Returns True when the stream restarted.
        """
        for name in [key for key in changes if key in _SETTABLE_HOOKS]:
            setattr(self, name, changes.pop(name))

        if config is None:
            if not changes:
                return False
            config = ConnectionConfig.model_validate({**self._config.model_dump(), **changes})
        elif changes:
            raise TypeError("Pass either a ConnectionConfig or keyword changes, not both")

        restart = self._config.needs_restart(config)
        self._config = config
        self._policy.base_delay_s = config.reconnect_delay
        self._policy.max_attempts = config.max_reconnect_attempts
        self._policy.max_multiplier = config.max_backoff_multiplier
        if not restart:
            return False

        self._log("Connection settings changed, restarting stream")
        self._auth_cache = None
        self.reset_reconnect_counter()
        await self.stop()
        await self.start()
        return True

    # ------------------------------------------------------------------ state machine

    def _transition(self, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._state, target)
        logger.debug(f"protocol={self.protocol_name} host={self._config.host} state={self._state.value}->{target.value}")
        self._state = target

    def _open(self) -> None:
        self._transition(State.CONNECTING)
        self._url = f"{self._config.base_url}{LIVE_PATH}"
        self._log(f"Starting event stream from: {self._url}")
        self._connection_task = asyncio.create_task(
            self._connect(self._config, self._url), name=f"whatwatt-live:{self._url}"
        )

    def _new_client(self, config: ConnectionConfig) -> httpx.AsyncClient:
        timeout = httpx.Timeout(config.timeout, read=config.effective_read_timeout)
        return httpx.AsyncClient(timeout=timeout, verify=config.verify_tls, transport=self._transport)

    async def _resolve_request(self, client: httpx.AsyncClient, config: ConnectionConfig) -> RequestFn:
        key = config.connection_key() + (config.auth_scheme,)
        if self._auth_cache is None or self._auth_cache[0] != key:
            scheme = await resolve_scheme(client, config)
            self._auth_cache = (key, scheme)
            if config.password:
                self._log(f"Resolved {scheme.value} authentication for {config.host}")
        return request_for(client, config, self._auth_cache[1])

    async def _connect(self, config: ConnectionConfig, url: str) -> None:
        try:
            async with self._new_client(config) as client:
                request = await self._resolve_request(client, config)
                async with request("GET", url, headers=STREAM_HEADERS) as response:
                    if response.status_code == 401:
                        raise AuthenticationError()
                    if not response.is_success:
                        raise TransportError(
                            f"HTTP {response.status_code} {response.reason_phrase}", status_code=response.status_code
                        )
                    await self._on_open()
                    if self._state is not State.CONNECTED:
                        return
                    await self._read(response)
                    if self._state is not State.CONNECTED:
                        return
            raise TransportError("Event stream ended")
        except AuthenticationError as e:
            await self._fail_auth(e)
        except (TransportError, StreamSourceError) as e:
            await self._fail(e)
        except InvalidTransitionError:
            raise
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            await self._fail(self._wrap(e))
        except Exception as e:
            logger.exception(f"protocol={self.protocol_name} host={config.host} event=unexpected_error")
            await self._fail(self._wrap(e))

    @staticmethod
    def _wrap(exc: Exception) -> TransportError:
        error = TransportError(f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
        error.__cause__ = exc
        return error

    async def _on_open(self) -> None:
        self._transition(State.CONNECTED)
        self._policy.reset()
        self.stats["connected_at"] = datetime.now(timezone.utc).isoformat()
        self._start_heartbeat()
        self._log("Event stream connected")
        await self._invoke("on_connect")

    async def _read(self, response: httpx.Response) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        buffer = SSEBuffer()
        async for chunk in iter_chunks(response):
            self.stats["bytes_received"] += len(chunk)
            for frame in buffer.feed(decoder.decode(chunk)):
                await self._dispatch(frame)
                if self._state is not State.CONNECTED:
                    return

    def _decode(self, frame: Frame) -> Any:
        try:
            return json.loads(frame.data)
        except ValueError as e:
            raise ProtocolError(f"Failed to parse live data: {e}") from e

    async def _dispatch(self, frame: Frame) -> None:
        if frame.event != LIVE_EVENT or not frame.data:
            return
        try:
            payload = self._decode(frame)
        except ProtocolError as e:
            self.stats["frames_dropped"] += 1
            self._log(str(e))
            return

        self._heartbeat.beat()
        self.stats["events_received"] += 1
        self.stats["last_event_at"] = datetime.now(timezone.utc).isoformat()
        await self._invoke("on_data", payload)

    async def _fail_auth(self, error: AuthenticationError) -> None:
        self._stop_heartbeat()
        # the device may have switched schemes (firmware update); probe again next time
        self._auth_cache = None
        self._transition(State.IDLE)
        self._log(f"{error}; not reconnecting until settings change")
        await self._invoke("on_error", error)

    async def _fail(self, error: StreamError) -> None:
        """Shared path for transport errors, early stream end and heartbeat silence."""
        if self._state not in (State.CONNECTING, State.CONNECTED):
            return
        was_connected = self._state is State.CONNECTED
        self._stop_heartbeat()
        self._transition(State.ERRORING)
        self._log(f"Event stream error: {error}")
        await _cancel(self._connection_task)

        await self._invoke("on_error", error)
        if self._state is not State.ERRORING:
            return
        if was_connected:
            await self._invoke("on_disconnect")
            if self._state is not State.ERRORING:
                return
        await self._schedule_reconnect()

    # ------------------------------------------------------------------ reconnect

    async def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None:
            return

        if self._policy.exhausted:
            self._transition(State.IDLE)
            error = ExhaustionError(self._policy.max_attempts)
            self._log(str(error))
            await self._invoke("on_give_up", error)
            await self._invoke("on_error", error)
            return

        delay = self._policy.next_delay()
        self.stats["reconnect_count"] += 1
        self._transition(State.RECONNECT_SCHEDULED)
        self._log(f"Scheduling reconnect attempt {self._policy.attempts} in {delay:g}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._refresh_address()
        if self._state is not State.RECONNECT_SCHEDULED:
            return
        self._reconnect_task = None
        self._log(f"Attempting to reconnect (attempt {self._policy.attempts})")
        self._open()

    async def _refresh_address(self) -> None:
        device_id = self._config.device_id
        if self.resolver is None or not device_id:
            return
        try:
            result = await self.resolver.resolve(device_id)
        except Exception as e:
            self._log(f"Address resolution failed, keeping {self._config.host}: {e}")
            return

        if not result.success:
            self._log(f"Address resolution failed, keeping {self._config.host}: {result.error}")
            return
        if not result.found:
            self._log(f"Device {device_id} not found during discovery, keeping {self._config.host}")
            return
        if result.ip_updated and result.connection_host:
            port = result.connection_port or self._config.port
            self._config = self._config.model_copy(update={"host": result.connection_host, "port": port})
            self._log(f"Device address changed, next attempt goes to {result.connection_host}:{port}")

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------ heartbeat

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat = HeartbeatMonitor(self._config.heartbeat_timeout, self._config.heartbeat_interval)
        self._heartbeat.start()
        self._log(f"Starting heartbeat monitoring (timeout: {self._heartbeat.timeout_s:g}s)")
        self._heartbeat_task = asyncio.create_task(self._watch_heartbeat())

    def _stop_heartbeat(self) -> None:
        self._heartbeat.stop()
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            self._log("Stopped heartbeat monitoring")

    async def _watch_heartbeat(self) -> None:
        while self._state is State.CONNECTED:
            await asyncio.sleep(self._heartbeat.interval_s)
            if self._state is State.CONNECTED and self._heartbeat.is_expired():
                elapsed = self._heartbeat.elapsed()
                self._log(f"Heartbeat timeout detected ({elapsed:.0f}s since last data), triggering reconnection")
                await self._fail(TransportError("Heartbeat timeout: no data received"))
                return
