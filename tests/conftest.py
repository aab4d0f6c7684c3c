import pytest

from cliptrail.backends import ClipboardSource
from cliptrail.storage import StorageManager
from cliptrail.threat_memory import ThreatMemory


@pytest.fixture
def storage():
    mgr = StorageManager(db_path=":memory:")
    yield mgr
    mgr.close()


@pytest.fixture
def threat_memory():
    memory = ThreatMemory(db_path=":memory:")
    yield memory
    memory.close()


class ManualTimer:
    """Stand-in for threading.Timer that only fires when the test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function()


class TimerRecorder:
    """Timer factory that keeps every timer it hands out."""

    def __init__(self):
        self.timers: list[ManualTimer] = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def latest(self) -> ManualTimer:
        return self.timers[-1]

    def fire_latest(self):
        self.latest.fire()


@pytest.fixture
def timers():
    return TimerRecorder()


class FakeSource(ClipboardSource):
    """Source whose poll results are scripted by the test."""

    name = "fake"
    interval = 0.0

    def __init__(self, readings=None):
        self.readings = list(readings or [])
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def push(self, text=None, image=None):
        self.readings.append((text, image))

    def poll(self):
        if not self.readings:
            return None, None
        return self.readings.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture
def source():
    return FakeSource()
