#!/usr/bin/env python3
"""
Standalone log reader for mission control.
Tails today's OpenClaw log and prints the domain event each line maps to.
Note: the webapp runs its own in-process tailer; this script is a debug aid.
"""
import os
import sys
import threading

from extractor import EventExtractor
from tailer import LogTailer

LOG_DIR = os.environ.get('OPENCLAW_LOG_DIR', '/tmp/openclaw')
LOG_PREFIX = os.environ.get('OPENCLAW_LOG_PREFIX', 'openclaw')

extractor = EventExtractor()


def describe_line(line):
    """Render the rule and event a raw line resolves to, or None when nothing matches."""
    rule, event = extractor.match(line)
    if event is None:
        return None
    return f'{rule:<18} {event!r}'


def print_line(line):
    description = describe_line(line)
    if description:
        print(f'[READER] {description}')


if __name__ == '__main__':
    tailer = LogTailer(LOG_DIR, LOG_PREFIX, print_line)
    print(f'[READER] Starting standalone reader on {tailer.resolve_path()} (pid={os.getpid()})')
    try:
        tailer.run(threading.Event(), interval=0.5)
    except KeyboardInterrupt:
        print('[READER] Interrupted, exiting')
    except Exception as e:
        print(f'[READER] Exception: {e}', file=sys.stderr)
        raise
