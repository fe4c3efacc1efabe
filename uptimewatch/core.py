"""Monitor core: the single entry point for check results and status queries."""

import logging
from collections.abc import Mapping
from typing import Any, TextIO

from .config import Config
from .engine import AlertEngine
from .metrics import MetricsEngine, build_system_metrics
from .models import CheckResult, Notification, SiteMetrics, SystemMetrics, ValidationError, coerce_check_result
from .notifier import Notifier
from .ratelimit import TokenBucketRateLimiter
from .store import MAX_HISTORY_LIMIT, PersistenceError, StatusStore, StorageBackend, open_backend

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100

# Extra rate limiter buckets beyond the configured site list, for sites
# that are submitted without being configured.
RATE_LIMITER_KEY_SLACK = 64


class MonitorCore:
    """Owns the backend, store, metrics, rate limiter and alert engine.

    Build it once at startup (from_config), share it between the scheduler
    and the API, and close() it at shutdown.

    Queries never raise on storage failures: they log and return empty data.
    """

    def __init__(
        self,
        backend: StorageBackend,
        store: StatusStore,
        metrics: MetricsEngine,
        rate_limiter: TokenBucketRateLimiter,
        notifier: Notifier,
    ) -> None:
        self._backend = backend
        self._store = store
        self._metrics = metrics
        self._rate_limiter = rate_limiter
        self._engine = AlertEngine(store, metrics, rate_limiter, notifier)

    @classmethod
    def from_config(cls, config: Config, stream: TextIO | None = None) -> "MonitorCore":
        """Compose the core from configuration.

        Raises:
            ConfigError: If rate limiter or storage parameters are invalid.
            PersistenceError: If the storage backend cannot be opened.
        """
        storage = config.storage
        backend = open_backend(storage.backend, storage.path, timeout=storage.timeout)
        rate_limiter = TokenBucketRateLimiter(
            burst=config.alerts.burst,
            window_sec=config.alerts.window_sec,
            max_keys=len(config.sites) + RATE_LIMITER_KEY_SLACK,
        )
        return cls(
            backend=backend,
            store=StatusStore(backend, history_cap=storage.history_cap),
            metrics=MetricsEngine(backend),
            rate_limiter=rate_limiter,
            notifier=Notifier.from_config(config.alerts, stream=stream),
        )

    @property
    def rate_limiter(self) -> TokenBucketRateLimiter:
        return self._rate_limiter

    def submit_check(self, result: CheckResult | Mapping[str, Any]) -> Notification | None:
        """Validate a check result and run it through the alert engine.

        Raises:
            ValidationError: If the result is malformed. Nothing is mutated.
        """
        return self._engine.process(coerce_check_result(result))

    def get_snapshot(self) -> dict[str, CheckResult]:
        try:
            return self._store.snapshot_all()
        except PersistenceError as e:
            logger.error("Failed to read status snapshot: %s", e)
            return {}

    def get_previous(self, url: str) -> CheckResult | None:
        try:
            return self._store.get_last(url)
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to read status for %s: %s", url, e)
            return None

    def get_site_metrics(self, url: str) -> SiteMetrics | None:
        try:
            return self._metrics.get(url)
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to read metrics for %s: %s", url, e)
            return None

    def get_all_metrics(self) -> dict[str, SiteMetrics]:
        try:
            return self._metrics.get_all()
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to read metrics: %s", e)
            return {}

    def get_system_metrics(self) -> SystemMetrics:
        """System metrics with an unweighted per-site mean."""
        records = self.get_snapshot()
        try:
            return self._metrics.system_snapshot(records)
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to compute system metrics: %s", e)
            return build_system_metrics(records, 100.0, 0.0)

    def get_traffic_weighted_metrics(self) -> SystemMetrics:
        """System metrics with means weighted by each site's check count."""
        records = self.get_snapshot()
        try:
            return self._metrics.traffic_weighted_snapshot(records)
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to compute weighted system metrics: %s", e)
            return build_system_metrics(records, 100.0, 0.0)

    def get_history(self, url: str | None, limit: int = DEFAULT_HISTORY_LIMIT) -> list[CheckResult]:
        """Return recent results for url (or every site if None), newest first.

        Args:
            url: Site to filter by, or None for the global log.
            limit: Maximum entries, capped at MAX_HISTORY_LIMIT.

        Raises:
            ValidationError: If limit is less than 1.
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"History limit must be a positive integer, got {limit!r}")
        try:
            return self._store.query_history(url, min(limit, MAX_HISTORY_LIMIT))
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to read history for %s: %s", url, e)
            return []

    def clear_all(self) -> bool:
        """Reset all stored status, metrics and history.

        Rate limiter buckets are process state and are left as they are.

        Returns:
            True if the stores were cleared.
        """
        try:
            self._store.clear_all()
        except PersistenceError as e:
            logger.error("Failed to clear stores: %s", e)
            return False
        return True

    def close(self) -> None:
        self._backend.close()
