"""Incremental tailing of the date-rotated OpenClaw log file.

The tailer polls instead of holding the file open: every tick it re-resolves the
path for the current UTC date, stats it and reads only the byte range it has not
seen. Complete lines go to ``on_line``; a trailing fragment without a newline is
kept in memory and only counted as consumed once its terminator arrives.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

PRIME_CHUNK = 64 * 1024


@dataclass
class LogCursor:
    path: str
    offset: int = 0
    last_size: int = 0
    partial: bytes = b''

    @property
    def read_position(self) -> int:
        return self.offset + len(self.partial)


def utc_date():
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')


def decode_line(data):
    return data.decode('utf-8', errors='replace').rstrip('\r')


class LogTailer:
    def __init__(
        self,
        directory: str,
        prefix: str,
        on_line: Callable[[str], None],
        today: Callable[[], str] = utc_date,
        from_end: bool = False,
    ):
        self.directory = directory
        self.prefix = prefix
        self.on_line = on_line
        self.today = today
        self.cursor: Optional[LogCursor] = None
        # only the first adopted file may be entered at its end
        self._prime_pending = from_end

    def resolve_path(self):
        return os.path.join(self.directory, f'{self.prefix}-{self.today()}.log')

    def _emit(self, line):
        try:
            self.on_line(line)
        except Exception as e:
            print(f'[TAIL] Line handler failed: {e}')

    def _read_new(self, cursor, size):
        """Read ``[read_position, size)`` and emit the complete lines it finishes."""
        start = cursor.read_position
        if size <= start:
            return 0
        try:
            with open(cursor.path, 'rb') as f:
                f.seek(start)
                data = f.read(size - start)
        except OSError as e:
            print(f'[TAIL] Failed to read {cursor.path}: {e}')
            return 0

        buffer = cursor.partial + data
        *lines, fragment = buffer.split(b'\n')
        cursor.offset += len(buffer) - len(fragment)
        cursor.partial = fragment
        for raw in lines:
            self._emit(decode_line(raw))
        return len(lines)

    def _rotate(self, path):
        emitted = 0
        previous = self.cursor
        if previous is not None:
            print(f'[TAIL] Rotating {previous.path} -> {path}')
            try:
                size = os.path.getsize(previous.path)
            except OSError:
                size = previous.read_position
            if size >= previous.read_position:
                emitted += self._read_new(previous, size)
            if previous.partial:
                self._emit(decode_line(previous.partial))
                emitted += 1
        self.cursor = LogCursor(path=path)
        return emitted

    def _prime(self, cursor, size):
        """Start at the last complete line of an existing file, like ``tail -f``."""
        start = max(0, size - PRIME_CHUNK)
        with open(cursor.path, 'rb') as f:
            f.seek(start)
            chunk = f.read(size - start)
        cut = chunk.rfind(b'\n')
        if cut < 0:
            # no newline in the window: read a small file whole, skip past a huge fragment
            cursor.offset = 0 if start == 0 else size
            return
        cursor.offset = start + cut + 1
        cursor.partial = chunk[cut + 1:]

    def poll(self) -> int:
        """Read newly appended bytes and emit the complete lines. Returns the number emitted."""
        emitted = 0
        path = self.resolve_path()
        if self.cursor is None or self.cursor.path != path:
            emitted += self._rotate(path)
        cursor = self.cursor

        try:
            size = os.path.getsize(path)
        except FileNotFoundError:
            # a file that appears later is entirely new
            self._prime_pending = False
            return emitted
        except OSError as e:
            print(f'[TAIL] Failed to stat {path}: {e}')
            return emitted

        if self._prime_pending:
            try:
                self._prime(cursor, size)
            except OSError as e:
                print(f'[TAIL] Failed to prime {path}: {e}')
                return emitted
            self._prime_pending = False
            cursor.last_size = size
            return emitted

        if size < cursor.read_position:
            print(f'[TAIL] {path} shrank from {cursor.last_size} to {size} bytes, restarting at 0')
            cursor.offset = 0
            cursor.partial = b''
        cursor.last_size = size
        return emitted + self._read_new(cursor, size)

    def run(self, stop_event, interval=0.5):  # pragma: no cover
        """Blocking poll loop for the background worker thread."""
        print(f'[TAIL] Watching {self.resolve_path()} every {interval}s')
        while not stop_event.is_set():
            try:
                self.poll()
            except Exception as e:
                print(f'[TAIL] Poll error: {e}')
            stop_event.wait(interval)
