"""Shared test fixtures."""
import pytest
from unittest.mock import patch
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadcrm.database import Base
from leadcrm.services.phantombuster import ContainerStatus
from leadcrm.services.result_parser import LeadRecord


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import leadcrm.models.lead
    import leadcrm.models.lead_status_change
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Session for seeding and assertions. Seed data must be committed."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_engine):
    """
    Route get_session() calls to sessions bound to the in-memory engine.

    lead_store does `from leadcrm.database import get_session`, so both the
    module-level binding and the original are patched. Each call gets its
    own session, so close() in production code is harmless.
    """
    TestSession = sessionmaker(bind=db_engine)
    with patch('leadcrm.database.get_session', side_effect=lambda: TestSession()), \
         patch('leadcrm.services.lead_store.get_session', side_effect=lambda: TestSession()):
        yield TestSession


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class FakeRedis:
    """Minimal in-memory Redis fake for circuit breaker tests."""

    def __init__(self):
        self.get_store = {}
        self.hash_store = {}

    def get(self, key):
        return self.get_store.get(key)

    def set(self, key, value):
        self.get_store[key] = str(value)

    def incr(self, key):
        val = int(self.get_store.get(key, 0)) + 1
        self.get_store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.get_store.pop(k, None)
            self.hash_store.pop(k, None)

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that replays queued commands on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args):
            self._ops.append((name, args))
            return self
        return queue

    def execute(self):
        for name, args in self._ops:
            getattr(self._redis, name)(*args)
        self._ops = []


@pytest.fixture
def fake_redis():
    """In-memory Redis fake with dict-backed storage."""
    return FakeRedis()


# ---------------------------------------------------------------------------
# Poller plumbing: fake clock, manual scheduler, scripted PhantomBuster
# ---------------------------------------------------------------------------

class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ManualHandle:
    def __init__(self, due, fn, args):
        self.due = due
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """
    Deterministic stand-in for ThreadingScheduler.

    run_next() fires the earliest pending callback (ties in scheduling order)
    and moves the clock forward to its due time.
    """

    def __init__(self, clock):
        self.clock = clock
        self._handles = []

    def call_later(self, delay, fn, *args):
        handle = ManualHandle(self.clock() + delay, fn, args)
        self._handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self._handles if not h.cancelled]

    def run_next(self):
        live = self.pending
        if not live:
            return False
        handle = min(live, key=lambda h: h.due)
        self._handles.remove(handle)
        if handle.due > self.clock.now:
            self.clock.now = handle.due
        handle.fn(*handle.args)
        return True

    def run_until_idle(self, max_steps=500):
        steps = 0
        while self.run_next():
            steps += 1
            if steps >= max_steps:
                raise AssertionError("scheduler did not go idle")
        return steps


class FakePhantomBusterClient:
    """
    Scripted PhantomBuster client.

    statuses: ContainerStatus / exception instances returned by successive
    fetch_status() calls (the last one repeats). downloads: url → payload or
    exception instance.
    """

    def __init__(self, statuses=None, downloads=None, container_id='c-123', launch_error=None):
        self.statuses = list(statuses or [])
        self.downloads = dict(downloads or {})
        self.container_id = container_id
        self.launch_error = launch_error
        self.launch_calls = []
        self.fetch_calls = 0
        self.download_calls = []

    def launch(self, automation_id, parameters=None):
        self.launch_calls.append((automation_id, parameters))
        if self.launch_error is not None:
            raise self.launch_error
        return self.container_id

    def fetch_status(self, container_id):
        self.fetch_calls += 1
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def download_result(self, url, fmt=None):
        self.download_calls.append((url, fmt))
        payload = self.downloads[url]
        if isinstance(payload, Exception):
            raise payload
        return payload


def running():
    return ContainerStatus(status='running')


def finished(output='', result_object=None, exit_code=0):
    return ContainerStatus(status='finished', exit_code=exit_code,
                           output=output, result_object=result_object)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def make_record():
    """Factory fixture — builds a LeadRecord with sensible defaults."""
    def _make(**overrides):
        defaults = dict(
            linkedin_url='https://www.linkedin.com/in/jane-doe',
            first_name='Jane',
            last_name='Doe',
            full_name='Jane Doe',
            title='VP Sales',
            company='Acme',
            location='Berlin',
            source='connections_export',
        )
        defaults.update(overrides)
        return LeadRecord(**defaults)
    return _make


# ---------------------------------------------------------------------------
# Flask
# ---------------------------------------------------------------------------

@pytest.fixture
def pb_client():
    """Scripted client used by the app fixture's ImportManager."""
    return FakePhantomBusterClient(statuses=[running()])


@pytest.fixture
def app(fake_redis, scheduler, clock, pb_client):
    """Flask test app wired to fakes: Redis, scheduler, PhantomBuster."""
    from leadcrm import create_app
    from leadcrm.jobs.manager import ImportManager
    from leadcrm.jobs.poller import PollerSettings
    from leadcrm.jobs.tracker import JobTracker

    with patch('leadcrm.extensions.redis_client', fake_redis):
        app = create_app({'TESTING': True, 'AUTO_CREATE_SCHEMA': False, 'DASHBOARD_PASSWORD': None})

    app.extensions['import_manager'] = ImportManager(
        tracker=JobTracker(clock=clock),
        client_factory=lambda: pb_client,
        scheduler=scheduler,
        settings=PollerSettings(interval=3, timeout=600, max_transient_retries=3, expected_duration=120),
        sources={'connections_export': 'agent-connections', 'search_export': None},
        clock=clock,
    )
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
