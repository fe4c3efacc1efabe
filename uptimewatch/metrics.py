"""Streaming per-site statistics and system-wide aggregates."""

from collections.abc import Mapping
from datetime import UTC, datetime

from .models import CheckResult, SiteMetrics, Status, SystemMetrics
from .store import METRICS_NAMESPACE, StorageBackend


class MetricsEngine:
    """Maintains SiteMetrics incrementally from each accepted check result.

    Each record_check() is a read-modify-write of one site's metrics, so
    callers must serialize updates for the same URL.
    """

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    def record_check(self, result: CheckResult, previous: CheckResult | None = None) -> SiteMetrics:
        """Fold one check result into the site's metrics and persist them.

        Args:
            result: The accepted check result.
            previous: The record it replaced, if any. Accepted so every
                persist step takes the same arguments; the counters are
                derived from result alone.

        Returns:
            The updated metrics.

        Raises:
            PersistenceError: If the metrics cannot be read or written.
        """
        metrics = self.get(result.url) or SiteMetrics(url=result.url)

        metrics.total_checks += 1
        if result.status is Status.UP:
            metrics.successful_checks += 1
            metrics.consecutive_failures = 0
            metrics.last_up_time = result.checked_at
        else:
            metrics.consecutive_failures += 1
            metrics.last_down_time = result.checked_at

        rt = result.response_time_ms
        metrics.average_response_time_ms = (
            metrics.average_response_time_ms * (metrics.total_checks - 1) + rt
        ) / metrics.total_checks
        metrics.max_response_time_ms = max(metrics.max_response_time_ms, rt)
        metrics.min_response_time_ms = min(metrics.min_response_time_ms, rt)

        metrics.uptime_percentage = metrics.successful_checks * 100.0 / metrics.total_checks

        self._backend.put(METRICS_NAMESPACE, result.url, metrics.to_dict())
        return metrics

    def get(self, url: str) -> SiteMetrics | None:
        data = self._backend.get(METRICS_NAMESPACE, url)
        return SiteMetrics.from_dict(data) if data is not None else None

    def get_all(self) -> dict[str, SiteMetrics]:
        return {url: SiteMetrics.from_dict(data) for url, data in self._backend.scan(METRICS_NAMESPACE).items()}

    def system_snapshot(self, records: Mapping[str, CheckResult]) -> SystemMetrics:
        """Aggregate across sites with an unweighted mean per site.

        Every site counts equally regardless of how many checks it has, so
        a rarely checked site weighs as much as a busy one. Use
        traffic_weighted_snapshot() for check-weighted means.

        Args:
            records: Current status snapshot, used for up/down counts and last update.
        """
        all_metrics = list(self.get_all().values())
        if all_metrics:
            uptime = sum(m.uptime_percentage for m in all_metrics) / len(all_metrics)
            response_time = sum(m.average_response_time_ms for m in all_metrics) / len(all_metrics)
        else:
            uptime, response_time = 100.0, 0.0
        return build_system_metrics(records, uptime, response_time)

    def traffic_weighted_snapshot(self, records: Mapping[str, CheckResult]) -> SystemMetrics:
        """Aggregate across sites with means weighted by each site's check count."""
        all_metrics = [m for m in self.get_all().values() if m.total_checks > 0]
        total = sum(m.total_checks for m in all_metrics)
        if total:
            uptime = sum(m.successful_checks for m in all_metrics) * 100.0 / total
            response_time = sum(m.average_response_time_ms * m.total_checks for m in all_metrics) / total
        else:
            uptime, response_time = 100.0, 0.0
        return build_system_metrics(records, uptime, response_time)


def build_system_metrics(
    records: Mapping[str, CheckResult],
    uptime: float,
    response_time: float,
) -> SystemMetrics:
    sites = list(records.values())
    up_sites = sum(1 for r in sites if r.status is Status.UP)
    last_update = max((r.checked_at for r in sites), default=None) or datetime.now(UTC)
    return SystemMetrics(
        total_sites=len(sites),
        up_sites=up_sites,
        down_sites=len(sites) - up_sites,
        overall_uptime_percentage=uptime,
        average_response_time_ms=response_time,
        last_update=last_update,
    )
