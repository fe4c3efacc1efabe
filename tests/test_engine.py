"""Tests for the alert decision engine."""

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from uptimewatch.engine import AlertEngine, _KeyedLocks
from uptimewatch.metrics import MetricsEngine
from uptimewatch.models import CheckResult, Notification, NotificationKind, Status, ValidationError
from uptimewatch.notifier import Notifier, Sink
from uptimewatch.ratelimit import TokenBucketRateLimiter
from uptimewatch.store import STATUS_NAMESPACE, JsonFileBackend, PersistenceError, StatusStore

URL = "https://example.com"
BASE_TIME = datetime(2026, 1, 17, 10, 0, 0, tzinfo=UTC)


class RecordingSink(Sink):
    """Collects every notification it receives."""

    def __init__(self) -> None:
        self.received: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.received.append(notification)

    @property
    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.received]


def make_result(status: Status, minute: int = 0, url: str = URL) -> CheckResult:
    return CheckResult(
        url=url,
        status=status,
        code=200 if status is Status.UP else 503,
        response_time_ms=120,
        checked_at=BASE_TIME + timedelta(minutes=minute),
    )


@pytest.fixture
def backend(tmp_path: Path) -> JsonFileBackend:
    return JsonFileBackend(str(tmp_path))


@pytest.fixture
def store(backend: JsonFileBackend) -> StatusStore:
    return StatusStore(backend)


@pytest.fixture
def metrics(backend: JsonFileBackend) -> MetricsEngine:
    return MetricsEngine(backend)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


def build_engine(
    store: StatusStore,
    metrics: MetricsEngine,
    sink: RecordingSink,
    burst: int = 3,
    limiter: TokenBucketRateLimiter | None = None,
) -> AlertEngine:
    limiter = limiter or TokenBucketRateLimiter(burst=burst, window_sec=300, clock=lambda: 0.0)
    return AlertEngine(store, metrics, limiter, Notifier([sink]))


class TestStateMachine:
    """Tests for each transition of the per-site state machine."""

    def test_first_observation_is_initial(self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink) -> None:
        """The first result for a site emits initial and persists."""
        engine = build_engine(store, metrics, sink)

        notification = engine.process(make_result(Status.DOWN))

        assert notification is not None
        assert notification.kind is NotificationKind.INITIAL
        assert notification.previous_status is None
        assert store.get_last(URL).status is Status.DOWN
        assert len(store.query_history(URL, 10)) == 1
        assert metrics.get(URL).total_checks == 1

    def test_first_observation_skips_rate_limiter(
        self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink
    ) -> None:
        """The limiter is never consulted for an unknown site."""
        limiter = MagicMock(spec=TokenBucketRateLimiter)
        engine = build_engine(store, metrics, sink, limiter=limiter)

        engine.process(make_result(Status.UP))

        limiter.consume.assert_not_called()
        limiter.time_until_next_token_ms.assert_not_called()
        assert store.get_last(URL) is not None

    def test_same_status_is_routine(self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink) -> None:
        """A repeated status emits routine and persists."""
        engine = build_engine(store, metrics, sink)
        engine.process(make_result(Status.UP, 0))

        notification = engine.process(make_result(Status.UP, 1))

        assert notification.kind is NotificationKind.ROUTINE
        assert notification.previous_status is Status.UP
        assert store.get_last(URL).checked_at == BASE_TIME + timedelta(minutes=1)
        assert metrics.get(URL).total_checks == 2

    def test_routine_does_not_consume_tokens(
        self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink
    ) -> None:
        """Routine checks never touch the limiter."""
        limiter = TokenBucketRateLimiter(burst=1, window_sec=300, clock=lambda: 0.0)
        engine = build_engine(store, metrics, sink, limiter=limiter)

        for minute in range(5):
            engine.process(make_result(Status.UP, minute))

        assert limiter.token_count(URL) == 1

    def test_status_change_alerts_and_persists(
        self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink
    ) -> None:
        """A transition with a token available alerts, then stores the new status."""
        engine = build_engine(store, metrics, sink)
        engine.process(make_result(Status.UP, 0))

        notification = engine.process(make_result(Status.DOWN, 1))

        assert notification.kind is NotificationKind.STATUS_CHANGE
        assert notification.previous_status is Status.UP
        assert store.get_last(URL).status is Status.DOWN
        assert metrics.get(URL).consecutive_failures == 1

    def test_suppressed_transition_not_persisted(
        self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink
    ) -> None:
        """A rate-limited transition leaves status, history and metrics untouched."""
        limiter = TokenBucketRateLimiter(burst=1, window_sec=300, clock=lambda: 0.0)
        engine = build_engine(store, metrics, sink, limiter=limiter)
        engine.process(make_result(Status.UP, 0))
        engine.process(make_result(Status.DOWN, 1))  # uses the only token

        notification = engine.process(make_result(Status.UP, 2))

        assert notification.kind is NotificationKind.SUPPRESSED
        assert notification.previous_status is Status.DOWN
        assert notification.retry_after_ms == 300000
        assert store.get_last(URL).status is Status.DOWN
        assert len(store.query_history(URL, 10)) == 2
        assert metrics.get(URL).total_checks == 2

    def test_flapping_with_burst_two(self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink) -> None:
        """Only burst transitions alert; the rest are suppressed against the old status."""
        engine = build_engine(store, metrics, sink, burst=2)
        statuses = [Status.UP, Status.DOWN, Status.UP, Status.DOWN, Status.UP, Status.DOWN]

        for minute, status in enumerate(statuses):
            engine.process(make_result(status, minute))

        assert sink.kinds == [
            NotificationKind.INITIAL,
            NotificationKind.STATUS_CHANGE,
            NotificationKind.STATUS_CHANGE,
            # stored status is stuck at UP, so DOWN results keep being transitions
            NotificationKind.SUPPRESSED,
            NotificationKind.ROUTINE,
            NotificationKind.SUPPRESSED,
        ]
        assert store.get_last(URL).status is Status.UP
        assert store.get_last(URL).checked_at == BASE_TIME + timedelta(minutes=4)

    def test_sites_are_independent(self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink) -> None:
        """Each URL has its own state and its own bucket."""
        engine = build_engine(store, metrics, sink, burst=1)
        other = "https://other.example.com"
        engine.process(make_result(Status.UP, 0))
        engine.process(make_result(Status.DOWN, 1))

        engine.process(make_result(Status.UP, 0, url=other))
        notification = engine.process(make_result(Status.DOWN, 1, url=other))

        assert notification.kind is NotificationKind.STATUS_CHANGE

    def test_round_trip_without_suppression(
        self, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink
    ) -> None:
        """With enough tokens, the stored record is always the last result submitted."""
        engine = build_engine(store, metrics, sink, burst=100)
        results = [make_result(s, m) for m, s in enumerate([Status.UP, Status.DOWN, Status.DOWN, Status.UP])]

        for result in results:
            engine.process(result)
            assert store.get_last(URL) == result


class TestFailureHandling:
    """Tests for storage failures during processing."""

    def test_read_failure_treated_as_unknown(self, metrics: MetricsEngine, sink: RecordingSink) -> None:
        """A storage read error fails open to a first observation."""
        store = MagicMock(spec=StatusStore)
        store.get_last.side_effect = PersistenceError("disk unavailable")
        engine = build_engine(store, metrics, sink)

        notification = engine.process(make_result(Status.DOWN))

        assert notification.kind is NotificationKind.INITIAL
        store.set_last.assert_called_once()
        store.append.assert_called_once()

    def test_corrupt_record_aborts_check(
        self, backend: JsonFileBackend, store: StatusStore, metrics: MetricsEngine, sink: RecordingSink
    ) -> None:
        """An undecodable stored record skips this check without side effects."""
        backend.put(STATUS_NAMESPACE, URL, {"url": URL, "status": "SIDEWAYS"})
        engine = build_engine(store, metrics, sink)

        assert engine.process(make_result(Status.UP)) is None
        assert sink.received == []
        assert metrics.get(URL) is None
        with pytest.raises(ValidationError):
            store.get_last(URL)

    def test_write_failures_are_best_effort(self, metrics: MetricsEngine, sink: RecordingSink) -> None:
        """A failing status write does not stop history, metrics or the notification."""
        store = MagicMock(spec=StatusStore)
        store.get_last.return_value = None
        store.set_last.side_effect = PersistenceError("read-only filesystem")
        engine = build_engine(store, metrics, sink)

        notification = engine.process(make_result(Status.UP))

        assert notification.kind is NotificationKind.INITIAL
        store.append.assert_called_once()
        assert metrics.get(URL).total_checks == 1
        assert sink.kinds == [NotificationKind.INITIAL]

    def test_failing_sink_does_not_break_processing(self, store: StatusStore, metrics: MetricsEngine) -> None:
        """A sink exception is contained by the notifier."""
        broken = MagicMock(spec=Sink)
        broken.send.side_effect = RuntimeError("boom")
        limiter = TokenBucketRateLimiter(burst=3, window_sec=300)
        engine = AlertEngine(store, metrics, limiter, Notifier([broken]))

        notification = engine.process(make_result(Status.UP))

        assert notification.kind is NotificationKind.INITIAL
        assert store.get_last(URL) is not None


class TestConcurrency:
    """Tests for per-URL serialization."""

    def test_concurrent_checks_for_one_url(self, store: StatusStore, metrics: MetricsEngine) -> None:
        """Concurrent submissions for the same URL never lose a metrics update."""
        sink = RecordingSink()
        engine = build_engine(store, metrics, sink, burst=100)
        results = [make_result(Status.UP, minute) for minute in range(20)]

        threads = [threading.Thread(target=engine.process, args=(r,)) for r in results]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.get(URL).total_checks == 20
        assert sink.kinds.count(NotificationKind.INITIAL) == 1

    def test_locks_released_after_processing(self, store: StatusStore, metrics: MetricsEngine) -> None:
        """No per-URL lock is kept once every check has been processed."""
        engine = build_engine(store, metrics, RecordingSink(), burst=100)
        results = [make_result(Status.UP, minute, url=f"https://{minute}.example.com") for minute in range(20)]

        threads = [threading.Thread(target=engine.process, args=(r,)) for r in results]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(engine._locks) == 0


class TestKeyedLocks:
    """Tests for the per-key lock map."""

    def test_lock_kept_while_waiting(self) -> None:
        """A key stays mapped while another thread waits on it."""
        locks = _KeyedLocks()
        entered = threading.Event()
        release = threading.Event()

        def waiter() -> None:
            with locks.hold(URL):
                entered.set()

        with locks.hold(URL):
            thread = threading.Thread(target=waiter)
            thread.start()
            release.wait(0.05)
            assert len(locks) == 1
            assert not entered.is_set()

        thread.join(timeout=5)
        assert entered.is_set()
        assert len(locks) == 0

    def test_lock_dropped_after_exception(self) -> None:
        """An exception inside hold() still releases and drops the lock."""
        locks = _KeyedLocks()

        with pytest.raises(RuntimeError):
            with locks.hold(URL):
                raise RuntimeError("boom")

        assert len(locks) == 0
