"""Reconnecting JSON-RPC style client for the OpenClaw gateway control channel.

Outbound requests are ``{"id", "method", "params"}`` envelopes. Replies carry
the same id and are matched against the pending-call table; anything shaped
like ``{"event", "data"}`` is handed to ``on_event``. A call is retired exactly
once, by whichever of reply, timeout or disconnect pops it from the table first.
"""

from __future__ import annotations

import itertools
import json
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import websocket

CALL_TIMEOUT_SEC = 10.0
RECONNECT_DELAY_SEC = 3.0


class GatewayError(Exception):
    """Base class for control-channel failures surfaced to callers."""


class GatewayUnavailable(GatewayError):
    pass


class GatewayTimeout(GatewayError):
    pass


class GatewayCallError(GatewayError):
    def __init__(self, method, error):
        super().__init__(f'{method} failed: {error}')
        self.method = method
        self.error = error


@dataclass
class PendingCall:
    id: int
    method: str
    deadline: float
    future: Future = field(default_factory=Future)


class GatewayRpcClient:
    def __init__(
        self,
        url: str,
        token: str = '',
        on_event: Optional[Callable[[str, Any], None]] = None,
        call_timeout: float = CALL_TIMEOUT_SEC,
        reconnect_delay: float = RECONNECT_DELAY_SEC,
        clock: Callable[[], float] = time.monotonic,
        app_factory=None,
    ):
        self.url = url
        self.token = token
        self.on_event = on_event
        self.call_timeout = call_timeout
        self.reconnect_delay = reconnect_delay
        self._clock = clock
        self._app_factory = app_factory or websocket.WebSocketApp

        # ids never repeat, so a late reply cannot match a newer call
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}
        self._lock = threading.RLock()
        self._ws = None
        self._connected = False
        self._stop = threading.Event()
        self._thread = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # -- lifecycle ---------------------------------------------------------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='gateway-client', daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                print(f'[GATEWAY] Close failed: {e}')
        self._handle_disconnect('client stopped')

    def _headers(self):
        return [f'Authorization: Bearer {self.token}'] if self.token else []

    def _run(self):
        print(f'[GATEWAY] Control channel client started for {self.url}')
        while not self._stop.is_set():
            try:
                app = self._app_factory(
                    self.url,
                    header=self._headers(),
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
                app.run_forever(ping_interval=15, ping_timeout=10)
            except Exception as e:
                print(f'[GATEWAY] Connection attempt failed: {e!r}')
            self._handle_disconnect('connection closed')
            if self._stop.wait(self.reconnect_delay):
                break
            print(f'[GATEWAY] Reconnecting to {self.url}')

    # -- websocket callbacks -----------------------------------------------

    def _on_open(self, ws):
        with self._lock:
            self._ws = ws
            self._connected = True
        print('[GATEWAY] Connected')

    def _on_close(self, _ws, *args):
        self._handle_disconnect(f'closed {args}' if any(args) else 'closed')

    def _on_error(self, _ws, err):
        print(f'[GATEWAY] Error: {err!r}')

    def _on_message(self, _ws, message):
        try:
            envelope = json.loads(message)
        except (TypeError, ValueError) as e:
            print(f'[GATEWAY] Dropping malformed message: {e}')
            return
        if not isinstance(envelope, dict):
            return

        if 'event' in envelope:
            self._dispatch_event(envelope.get('event'), envelope.get('data'))
            return
        if 'id' in envelope and not self._settle_reply(envelope):
            print(f"[GATEWAY] Dropping reply for unknown or retired call id={envelope.get('id')}")

    def _dispatch_event(self, name, data):
        if self.on_event is None:
            return
        try:
            self.on_event(name, data if isinstance(data, dict) else {})
        except Exception as e:
            print(f'[GATEWAY] Event handler failed for {name}: {e}')

    def _handle_disconnect(self, reason):
        with self._lock:
            was_connected = self._connected
            self._connected = False
            self._ws = None
            pending = list(self._pending.values())
            self._pending.clear()
            for call in pending:
                call.future.set_exception(GatewayUnavailable(f'{call.method}: connection lost ({reason})'))
        if was_connected:
            print(f'[GATEWAY] Disconnected: {reason}; failed {len(pending)} pending call(s)')

    # -- call table --------------------------------------------------------

    def _settle_reply(self, envelope):
        with self._lock:
            call = self._pending.pop(envelope.get('id'), None)
            if call is None:
                return False
            if envelope.get('ok') is False or envelope.get('error') is not None:
                call.future.set_exception(GatewayCallError(call.method, envelope.get('error')))
            else:
                call.future.set_result(envelope.get('result'))
        return True

    def _expire(self, call_id):
        with self._lock:
            call = self._pending.pop(call_id, None)
            if call is None:
                return False
            call.future.set_exception(GatewayTimeout(f'{call.method} timed out'))
        return True

    def _issue(self, method, params, timeout):
        with self._lock:
            if not self._connected or self._ws is None:
                raise GatewayUnavailable(f'{method}: gateway is not connected')
            call = PendingCall(id=next(self._ids), method=method, deadline=self._clock() + timeout)
            self._pending[call.id] = call
            ws = self._ws

        payload = json.dumps({'id': call.id, 'method': method, 'params': params or {}})
        try:
            ws.send(payload)
        except Exception as e:
            with self._lock:
                if self._pending.pop(call.id, None) is not None:
                    call.future.set_exception(GatewayUnavailable(f'{method}: send failed ({e})'))
        return call

    def call_async(self, method, params=None, timeout=None) -> Future:
        """Send a request and return a future settled by its reply, timeout or disconnect."""
        timeout = self.call_timeout if timeout is None else timeout
        return self._issue(method, params, timeout).future

    def call(self, method, params=None, timeout=None):
        """Blocking call. Raises ``GatewayError`` subclasses on failure."""
        timeout = self.call_timeout if timeout is None else timeout
        call = self._issue(method, params, timeout)
        try:
            return call.future.result(timeout=timeout)
        except FutureTimeoutError:
            self._expire(call.id)
        # whichever path retired the call has already settled the future
        return call.future.result(timeout=0)

    def expire_overdue(self) -> int:
        """Retire every pending call whose deadline has passed on the injected clock."""
        now = self._clock()
        with self._lock:
            overdue = [call_id for call_id, call in self._pending.items() if call.deadline <= now]
        return sum(1 for call_id in overdue if self._expire(call_id))
