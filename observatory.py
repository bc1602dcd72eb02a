"""Single-writer container for the live mission-control state.

Every mutation (log lines, gateway events, dwell timers, observer commands and
vitals/usage refreshes) goes through ``Observatory`` under one lock. The
snapshot and its hand-off to ``on_change`` happen inside that same critical
section, so listeners always receive snapshots in mutation order. ``on_change``
must not block; ``ObserverHub.publish`` only swaps a slot.
"""

from __future__ import annotations

import threading
import time

from approvals import ApprovalLedger
from extractor import EventExtractor, event_from_gateway
from pipeline import PipelineProjector, thread_timer


class Observatory:
    def __init__(self, on_change=None, scheduler=None, extractor=None, **dwell_overrides):
        self.lock = threading.RLock()
        self.on_change = on_change
        self._scheduler = scheduler or thread_timer
        self.extractor = extractor or EventExtractor()
        self.ledger = ApprovalLedger()
        self.pipeline = PipelineProjector(self.ledger, defer=self._defer, **dwell_overrides)
        self.vitals = {'load': 0}
        self.usage = {'total_tokens': 0, 'corruption_level': 0.0, 'updated_at': None}

    def _defer(self, delay, fire):
        def run():
            with self.lock:
                if fire():
                    self._notify()
        return self._scheduler(delay, run)

    def _notify(self):
        """Publish the current snapshot. Callers hold ``self.lock``."""
        if self.on_change is None:
            return
        snapshot = self.snapshot()
        try:
            self.on_change(snapshot)
        except Exception as e:
            print(f'[PIPELINE] Change listener failed: {e}')

    def dispatch(self, event) -> bool:
        if event is None:
            return False
        with self.lock:
            changed = self.pipeline.apply(event)
            if changed:
                self._notify()
        return changed

    def ingest_line(self, line):
        """Tailer sink: extract and dispatch one raw log line."""
        return self.dispatch(self.extractor.extract(line))

    def ingest_gateway_event(self, name, data):
        """Gateway sink for unsolicited ``{event, data}`` envelopes."""
        return self.dispatch(event_from_gateway(name, data))

    def submit_mission(self, agent_id, command):
        with self.lock:
            self.pipeline.submit_mission(agent_id, command)
            self._notify()

    def update_vitals(self, load):
        with self.lock:
            self.vitals['load'] = load
            self._notify()

    def update_usage(self, total_tokens):
        with self.lock:
            self.usage['total_tokens'] = total_tokens
            self.usage['corruption_level'] = min(100.0, (total_tokens / 1000000) * 100)
            self.usage['updated_at'] = time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())
            self._notify()

    def approvals(self):
        with self.lock:
            pending = self.ledger.snapshot()
        return {'pending': pending, 'most_recent': pending[0] if pending else None}

    def snapshot(self):
        with self.lock:
            state = self.pipeline.snapshot()
            pending = self.ledger.snapshot()
            state.update({
                'usage': dict(self.usage),
                'vitals': dict(self.vitals),
                'approvals': pending,
                'approval_pending': pending[0] if pending else None,
                'generated_at': time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime()),
            })
        return state
