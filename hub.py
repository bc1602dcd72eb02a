"""Fan-out of observatory snapshots to connected Socket.IO observers."""

from __future__ import annotations

import threading

TELEMETRY_EVENT = 'telemetry'


class ObserverHub:
    """Coalescing broadcaster.

    ``publish`` only stores the newest snapshot and wakes the relay task, so the
    mutation path never waits on socket I/O. Intermediate snapshots published
    faster than the relay drains them are skipped; each one is a full state.
    """

    def __init__(self, socketio, event=TELEMETRY_EVENT):
        self.socketio = socketio
        self.event = event
        self._latest = None
        self._lock = threading.Lock()
        self._wakeup = threading.Event()

    def publish(self, snapshot):
        with self._lock:
            self._latest = snapshot
        self._wakeup.set()

    def _take(self):
        with self._lock:
            snapshot, self._latest = self._latest, None
        return snapshot

    def flush(self) -> bool:
        """Emit the pending snapshot, if any, to every observer."""
        snapshot = self._take()
        if snapshot is None:
            return False
        try:
            self.socketio.emit(self.event, snapshot)
        except Exception as e:
            print(f'[HUB] Broadcast failed: {e}')
        return True

    def send_to(self, sid, snapshot):
        try:
            self.socketio.emit(self.event, snapshot, to=sid)
        except Exception as e:
            print(f'[HUB] Send to {sid} failed: {e}')

    def run(self):  # pragma: no cover
        """Relay loop, started with ``socketio.start_background_task``."""
        print('[HUB] Relay started')
        while True:
            self._wakeup.wait(1.0)
            self._wakeup.clear()
            self.flush()
