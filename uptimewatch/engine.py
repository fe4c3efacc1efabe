"""Alert decision engine: transition detection with rate-limited notifications."""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .metrics import MetricsEngine
from .models import CheckResult, Notification, NotificationKind, ValidationError
from .notifier import Notifier
from .ratelimit import TokenBucketRateLimiter
from .store import PersistenceError, StatusStore

logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One lock per key, so checks for the same URL never interleave.

    A key's lock is dropped once no thread holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class AlertEngine:
    """Decides, per check result, whether to persist it and what to notify.

    Per-site state is the stored StatusRecord: no record means Unknown,
    otherwise Known(last status). Transitions:

    - Unknown: persist, notify "initial". The rate limiter is not consulted.
    - Known(s), same status: persist, notify "routine". No rate limit.
    - Known(s), different status and a token is granted: notify
      "status_change", then persist.
    - Known(s), different status and no token: notify "suppressed" and do
      not persist, so the stored status stays at s and the next check is
      still compared against it.
    """

    def __init__(
        self,
        store: StatusStore,
        metrics: MetricsEngine,
        rate_limiter: TokenBucketRateLimiter,
        notifier: Notifier,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self._rate_limiter = rate_limiter
        self._notifier = notifier
        self._locks = _KeyedLocks()

    def process(self, result: CheckResult) -> Notification | None:
        """Run one validated check result through the state machine.

        Args:
            result: A validated check result.

        Returns:
            The notification that was emitted, or None if processing was
            aborted because the stored record could not be decoded.
        """
        with self._locks.hold(result.url):
            try:
                previous = self._store.get_last(result.url)
            except PersistenceError as e:
                logger.warning("Could not read previous status for %s, treating as unknown: %s", result.url, e)
                previous = None
            except ValidationError as e:
                logger.error("Stored status for %s is corrupt, skipping this check: %s", result.url, e)
                return None

            if previous is None:
                self._persist(result, None)
                return self._emit(Notification(NotificationKind.INITIAL, result))

            if previous.status is result.status:
                self._persist(result, previous)
                return self._emit(Notification(NotificationKind.ROUTINE, result, previous.status))

            logger.debug("Status change detected for %s: %s -> %s", result.url, previous.status.value, result.status.value)

            if not self._rate_limiter.consume(result.url):
                notification = Notification(
                    NotificationKind.SUPPRESSED,
                    result,
                    previous.status,
                    retry_after_ms=self._rate_limiter.time_until_next_token_ms(result.url),
                )
                return self._emit(notification)

            notification = self._emit(Notification(NotificationKind.STATUS_CHANGE, result, previous.status))
            # Persist after alerting so the next check compares against the new status
            self._persist(result, previous)
            return notification

    def _emit(self, notification: Notification) -> Notification:
        self._notifier.notify(notification)
        return notification

    def _persist(self, result: CheckResult, previous: CheckResult | None) -> None:
        """Write the result to status, history and metrics, each best-effort."""
        try:
            self._store.set_last(result.url, result)
        except PersistenceError as e:
            logger.error("Failed to store status for %s: %s", result.url, e)

        try:
            self._store.append(result)
        except PersistenceError as e:
            logger.error("Failed to append history for %s: %s", result.url, e)

        try:
            self._metrics.record_check(result, previous)
        except (PersistenceError, ValidationError) as e:
            logger.error("Failed to update metrics for %s: %s", result.url, e)
