"""
Pytest configuration and fixtures for arena tests.
"""
import os
import sys
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from arena.app import create_app
from arena.models import db
from arena.connection_registry import InMemoryConnectionRegistry
from arena.match_orchestrator import MatchOrchestrator
from arena.pairing import PairingEngine
from arena.queue_store import QueueStore
from arena.rating_engine import RatingEngine
from shared.pubsub import LocalNotifier


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ManualTimer:
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
        """Run the callback the way a real timer would: never after cancel."""
        if self.cancelled:
            return None
        return self.function()


class ManualTimerFactory:
    """Drop-in for threading.Timer that records timers instead of running them."""

    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    def active(self, interval=None):
        return [
            t for t in self.timers
            if t.started and not t.cancelled and (interval is None or t.interval == interval)
        ]


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        app.orchestrator.shutdown()
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing."""
    with app.app_context():
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def notifier():
    return LocalNotifier()


@pytest.fixture
def connections(clock):
    return InMemoryConnectionRegistry(ttl=300, clock=clock)


@pytest.fixture
def queue_store(connections, clock):
    return QueueStore(connections, clock=clock)


@pytest.fixture
def pairing_engine(clock):
    return PairingEngine(clock=clock)


@pytest.fixture
def mock_ledger(mocker):
    """Ledger double: every participant starts at 1000."""
    ledger = mocker.MagicMock()
    ledger.get_ratings.side_effect = lambda pids, defaults=None: {pid: 1000 for pid in pids}
    ledger.apply_session_ratings.return_value = True
    return ledger


@pytest.fixture
def mock_result_stream(mocker):
    return mocker.MagicMock()


@pytest.fixture
def rating_engine(mock_ledger, mock_result_stream):
    return RatingEngine(ledger=mock_ledger, retry_attempts=3, retry_wait=0, result_stream=mock_result_stream)


@pytest.fixture
def orchestrator(queue_store, pairing_engine, rating_engine, mock_ledger, notifier, connections,
                 mock_result_stream, clock, timers):
    return MatchOrchestrator(
        queue_store,
        pairing_engine,
        rating_engine,
        mock_ledger,
        notifier,
        connections,
        result_stream=mock_result_stream,
        move_timeout=60,
        duration_limit=None,
        grace_period=30,
        retention=45,
        clock=clock,
        timer_factory=timers,
    )
