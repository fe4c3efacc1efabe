"""Tests for the metrics engine."""

import math
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from uptimewatch.metrics import MetricsEngine, build_system_metrics
from uptimewatch.models import CheckResult, Status
from uptimewatch.store import JsonFileBackend

BASE_TIME = datetime(2026, 1, 17, 10, 0, 0, tzinfo=UTC)


def make_result(url: str, status: Status, response_time_ms: float = 100, minute: int = 0) -> CheckResult:
    return CheckResult(
        url=url,
        status=status,
        code=200 if status is Status.UP else None,
        response_time_ms=response_time_ms,
        checked_at=BASE_TIME + timedelta(minutes=minute),
        error=None if status is Status.UP else "Connection refused",
    )


@pytest.fixture
def engine(tmp_path: Path) -> MetricsEngine:
    return MetricsEngine(JsonFileBackend(str(tmp_path)))


class TestRecordCheck:
    """Tests for incremental per-site metrics."""

    def test_first_check(self, engine: MetricsEngine) -> None:
        """The first check initializes every counter."""
        metrics = engine.record_check(make_result("https://a.example.com", Status.UP, 250))

        assert metrics.total_checks == 1
        assert metrics.successful_checks == 1
        assert metrics.consecutive_failures == 0
        assert metrics.average_response_time_ms == 250
        assert metrics.min_response_time_ms == 250
        assert metrics.max_response_time_ms == 250
        assert metrics.uptime_percentage == 100.0
        assert metrics.last_up_time == BASE_TIME
        assert metrics.last_down_time is None

    def test_uptime_exact(self, engine: MetricsEngine) -> None:
        """Seven UP and three DOWN checks give exactly 70 percent."""
        for i in range(7):
            engine.record_check(make_result("https://a.example.com", Status.UP, minute=i))
        for i in range(3):
            engine.record_check(make_result("https://a.example.com", Status.DOWN, minute=7 + i))

        metrics = engine.get("https://a.example.com")
        assert metrics is not None
        assert metrics.total_checks == 10
        assert metrics.successful_checks == 7
        assert metrics.uptime_percentage == 70.0

    def test_consecutive_failures_reset_on_up(self, engine: MetricsEngine) -> None:
        """An UP check resets the failure streak."""
        url = "https://a.example.com"
        engine.record_check(make_result(url, Status.DOWN, minute=0))
        metrics = engine.record_check(make_result(url, Status.DOWN, minute=1))
        assert metrics.consecutive_failures == 2
        assert metrics.last_down_time == BASE_TIME + timedelta(minutes=1)

        metrics = engine.record_check(make_result(url, Status.UP, minute=2))
        assert metrics.consecutive_failures == 0

    def test_previous_does_not_change_counters(self, engine: MetricsEngine, tmp_path: Path) -> None:
        """Passing the replaced record gives the same result as omitting it."""
        url = "https://a.example.com"
        previous = make_result(url, Status.UP, minute=0)
        other = MetricsEngine(JsonFileBackend(str(tmp_path / "other")))

        with_previous = engine.record_check(make_result(url, Status.DOWN, 400, minute=1), previous)
        without_previous = other.record_check(make_result(url, Status.DOWN, 400, minute=1))

        assert with_previous == without_previous

    def test_response_time_statistics(self, engine: MetricsEngine) -> None:
        """Mean, min and max track every response time."""
        url = "https://a.example.com"
        for i, rt in enumerate([100, 300, 200]):
            metrics = engine.record_check(make_result(url, Status.UP, rt, minute=i))

        assert metrics.average_response_time_ms == pytest.approx(200.0)
        assert metrics.min_response_time_ms == 100
        assert metrics.max_response_time_ms == 300

    def test_replay_counts_twice(self, engine: MetricsEngine) -> None:
        """Submitting the same result twice is counted twice."""
        result = make_result("https://a.example.com", Status.UP)
        engine.record_check(result)
        metrics = engine.record_check(result)

        assert metrics.total_checks == 2
        assert metrics.successful_checks == 2

    def test_metrics_persisted(self, tmp_path: Path) -> None:
        """A new engine on the same storage sees earlier metrics."""
        MetricsEngine(JsonFileBackend(str(tmp_path))).record_check(make_result("https://a.example.com", Status.UP))

        metrics = MetricsEngine(JsonFileBackend(str(tmp_path))).get("https://a.example.com")

        assert metrics is not None
        assert metrics.total_checks == 1

    def test_unknown_site(self, engine: MetricsEngine) -> None:
        """A site without checks has no metrics."""
        assert engine.get("https://nowhere.example.com") is None


class TestSystemSnapshot:
    """Tests for the system-wide aggregates."""

    @pytest.fixture
    def records(self, engine: MetricsEngine) -> dict[str, CheckResult]:
        """One busy healthy site and one rarely checked failing site."""
        busy = "https://busy.example.com"
        quiet = "https://quiet.example.com"
        for i in range(9):
            engine.record_check(make_result(busy, Status.UP, 100, minute=i))
        last_quiet = make_result(quiet, Status.DOWN, 400, minute=9)
        engine.record_check(last_quiet)

        return {
            busy: make_result(busy, Status.UP, 100, minute=8),
            quiet: last_quiet,
        }

    def test_unweighted_mean(self, engine: MetricsEngine, records: dict[str, CheckResult]) -> None:
        """Every site weighs the same in the plain snapshot."""
        system = engine.system_snapshot(records)

        assert system.total_sites == 2
        assert system.up_sites == 1
        assert system.down_sites == 1
        assert system.overall_uptime_percentage == 50.0
        assert system.average_response_time_ms == 250.0
        assert system.last_update == BASE_TIME + timedelta(minutes=9)

    def test_traffic_weighted_mean(self, engine: MetricsEngine, records: dict[str, CheckResult]) -> None:
        """The weighted snapshot follows each site's check count."""
        system = engine.traffic_weighted_snapshot(records)

        assert system.overall_uptime_percentage == 90.0
        assert system.average_response_time_ms == pytest.approx(130.0)

    def test_empty(self, engine: MetricsEngine) -> None:
        """With no sites the snapshot reports full uptime and zero latency."""
        before = datetime.now(UTC)
        system = engine.system_snapshot({})

        assert system.total_sites == 0
        assert system.overall_uptime_percentage == 100.0
        assert system.average_response_time_ms == 0.0
        assert system.last_update >= before

    def test_build_system_metrics_counts(self) -> None:
        """Up and down counts come from the status records."""
        records = {
            "https://a.example.com": make_result("https://a.example.com", Status.DOWN),
            "https://b.example.com": make_result("https://b.example.com", Status.DOWN, minute=3),
        }
        system = build_system_metrics(records, 0.0, 10.0)

        assert system.up_sites == 0
        assert system.down_sites == 2
        assert system.last_update == BASE_TIME + timedelta(minutes=3)
        assert not math.isnan(system.average_response_time_ms)
