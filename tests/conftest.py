"""
Shared pytest fixtures for the entity sync test suite.

Provides:
    - qapp: a QCoreApplication for the signal machinery (session-wide)
    - resolver / npc_context / org_context: the built-in panel contexts
    - clock / timers: a hand-driven monotonic clock and timer factory so
      debounce behaviour is deterministic
    - sample_panel_data: NPC panel data with prefixed and global keys
"""

import sys
from pathlib import Path

import pytest
from PySide6.QtCore import QCoreApplication

# ---------------------------------------------------------------------------
# Ensure entity_sync/ is importable regardless of where pytest is invoked
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).resolve().parent.parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from entity_sync.field_resolver import FieldNameResolver  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes for time-driven code
# ---------------------------------------------------------------------------

class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTimer:
    """Stand-in for threading.Timer that fires only when the test says so."""

    def __init__(self, delay, fn, args=()):
        self.delay = delay
        self.fn = fn
        self.args = tuple(args or ())
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.fn(*self.args)


class FakeTimerFactory:
    """Records every timer created through it."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, fn, args=(), kwargs=None):
        timer = FakeTimer(delay, fn, args)
        self.timers.append(timer)
        return timer

    @property
    def active(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    def fire_pending(self):
        """Fire every live timer; return how many fired."""
        pending = self.active
        for timer in pending:
            timer.fire()
        return len(pending)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session", autouse=True)
def qapp():
    """Make sure a QCoreApplication exists for signal/slot machinery."""
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app


@pytest.fixture
def resolver():
    return FieldNameResolver()


@pytest.fixture
def npc_context(resolver):
    return resolver.context("interaction")


@pytest.fixture
def org_context(resolver):
    return resolver.context("organization")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def sample_panel_data():
    """NPC panel data mixing labels, keys, positional columns and globals."""
    return {
        "npc0.姓名": "Aria",
        "npc0.关系类型": "ally",
        "npc0.mood": "calm",
        "npc1.name": "Borin",
        "npc1.col_6": "grumpy",
        "npc1.appearance": ["tall", "", "bearded"],
        "当前状态": "travelling",
        "index": 3,
        "_meta": "ignored",
    }
