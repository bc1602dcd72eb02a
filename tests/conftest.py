import pytest


class FakeTimer:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Deterministic stand-in for threading.Timer driven by advance()."""

    def __init__(self, honour_cancel=True):
        self.now = 0.0
        self.timers = []
        self.honour_cancel = honour_cancel

    def __call__(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def _due(self):
        return [
            t for t in self.timers
            if not t.fired and t.due <= self.now and not (t.cancelled and self.honour_cancel)
        ]

    def advance(self, seconds):
        self.now += seconds
        while True:
            due = sorted(self._due(), key=lambda t: t.due)
            if not due:
                return
            timer = due[0]
            timer.fired = True
            timer.callback()


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeSocket:
    def __init__(self, on_send=None, fail=False):
        self.sent = []
        self.closed = False
        self.on_send = on_send
        self.fail = fail

    def send(self, payload):
        if self.fail:
            raise OSError('broken pipe')
        self.sent.append(payload)
        if self.on_send is not None:
            self.on_send(payload)

    def close(self):
        self.closed = True


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return FakeClock()
