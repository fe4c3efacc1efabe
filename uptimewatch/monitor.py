"""HTTP probe and the periodic check loop."""

import logging
import socket
import ssl
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from threading import Event, Thread
from urllib.parse import urlparse

from .config import Config, SiteConfig
from .core import MonitorCore
from .models import CheckResult, Status, ValidationError

logger = logging.getLogger(__name__)


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Report redirects as-is instead of following them, to keep the real status code."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


_opener = urllib.request.build_opener(_NoRedirectHandler())


def _is_up(status_code: int) -> bool:
    """2xx and 3xx count as UP."""
    return 200 <= status_code < 400


def classify_error(error: BaseException, timeout: int) -> str:
    """Turn a request failure into a short operator-facing message."""
    reason = error.reason if isinstance(error, urllib.error.URLError) else error

    if isinstance(reason, (TimeoutError, socket.timeout)):
        return f"Request timeout ({timeout}s)"
    if isinstance(reason, socket.gaierror):
        return "DNS resolution failed"
    if isinstance(reason, ConnectionRefusedError):
        return "Connection refused"
    if isinstance(reason, ConnectionResetError):
        return "Connection reset by peer"
    if isinstance(reason, ssl.SSLCertVerificationError):
        if "expired" in str(reason).lower():
            return "SSL certificate expired"
        return "SSL certificate verification failed"
    if isinstance(reason, ssl.SSLError):
        return f"SSL error: {reason}"
    return str(reason) or type(reason).__name__


def _probe_once(url: str, timeout: int, user_agent: str) -> CheckResult:
    start = time.monotonic()
    checked_at = datetime.now(UTC)

    def elapsed_ms() -> int:
        return int(round((time.monotonic() - start) * 1000))

    try:
        request = urllib.request.Request(
            url,
            method="GET",
            headers={
                "User-Agent": user_agent,
                "Accept": "*/*",
                "Cache-Control": "no-cache",
            },
        )
        with _opener.open(request, timeout=timeout) as response:
            status_code = response.status
            return CheckResult(
                url=url,
                status=Status.UP if _is_up(status_code) else Status.DOWN,
                code=status_code,
                response_time_ms=elapsed_ms(),
                checked_at=checked_at,
                error=None,
            )

    except urllib.error.HTTPError as e:
        # Redirects land here too since they are not followed
        return CheckResult(
            url=url,
            status=Status.UP if _is_up(e.code) else Status.DOWN,
            code=e.code,
            response_time_ms=elapsed_ms(),
            checked_at=checked_at,
            error=None,
        )

    except (urllib.error.URLError, OSError, ValueError) as e:
        return CheckResult(
            url=url,
            status=Status.DOWN,
            code=None,
            response_time_ms=elapsed_ms(),
            checked_at=checked_at,
            error=classify_error(e, timeout),
        )


def check_site(
    url: str,
    timeout: int = 10,
    retry_attempts: int = 0,
    user_agent: str = "uptimewatch/0.1",
) -> CheckResult:
    """Perform an HTTP GET health check on a URL.

    A DOWN result is retried up to retry_attempts more times; the first UP
    result or the last DOWN result is returned.

    Args:
        url: The http(s) URL to check.
        timeout: Request timeout in seconds.
        retry_attempts: Extra attempts before reporting DOWN.
        user_agent: User-Agent header value.

    Returns:
        CheckResult with status, response time, and any error details.
    """
    if urlparse(url).scheme not in ("http", "https"):
        return CheckResult(
            url=url,
            status=Status.DOWN,
            code=None,
            response_time_ms=0,
            checked_at=datetime.now(UTC),
            error="Only HTTP and HTTPS protocols are supported",
        )

    result = _probe_once(url, timeout, user_agent)
    attempt = 0
    while result.status is Status.DOWN and attempt < retry_attempts:
        attempt += 1
        logger.debug("%s DOWN (%s), retrying (%d/%d)", url, result.error or result.code, attempt, retry_attempts)
        result = _probe_once(url, timeout, user_agent)
    return result


class Monitor:
    """Threaded scheduler that checks every configured site each interval.

    Checks within a cycle run concurrently on a thread pool; a cycle
    finishes before the next one starts, so one site is never checked twice
    at the same time.

    Example:
        monitor = Monitor(config, core)
        monitor.start()
        # ... later ...
        monitor.stop()
    """

    def __init__(self, config: Config, core: MonitorCore) -> None:
        """Initialize the monitor.

        Args:
            config: Application configuration with the sites to monitor.
            core: Monitor core that receives every check result.
        """
        self._config = config
        self._core = core
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._cycle_count = 0

    def start(self) -> None:
        """Start the monitor loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Monitor already running")
            return

        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, daemon=True, name="monitor-loop")
        self._thread.start()
        logger.info(
            "Monitor started with %d sites at %ds interval",
            len(self._config.sites),
            self._config.monitor.interval,
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the monitor loop gracefully.

        Args:
            timeout: Maximum seconds to wait for the loop to stop.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        logger.info("Stopping monitor...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Monitor thread did not stop within timeout")
        else:
            logger.info("Monitor stopped")

    def is_running(self) -> bool:
        """Check if the monitor loop is currently running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def _run_loop(self) -> None:
        """Main monitor loop - runs in background thread."""
        logger.debug("Monitor loop started")

        while not self._stop_event.is_set():
            started = time.monotonic()
            self.run_cycle()
            remaining = self._config.monitor.interval - (time.monotonic() - started)
            # wait() so stop() interrupts the sleep
            self._stop_event.wait(timeout=max(remaining, 0))

        logger.debug("Monitor loop exited")

    def run_cycle(self) -> int:
        """Check every configured site once and submit the results.

        Returns:
            Number of results accepted by the core.
        """
        sites = self._config.sites
        monitor = self._config.monitor
        logger.info("Starting uptime checks for %d sites", len(sites))

        submitted = 0
        with ThreadPoolExecutor(max_workers=min(monitor.max_workers, len(sites))) as executor:
            futures = {executor.submit(self._check, site): site for site in sites}

            for future in as_completed(futures):
                site = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error("Failed to check %s: %s", site.url, e)
                    continue

                if self._submit(result):
                    submitted += 1

        self._cycle_count += 1
        return submitted

    def _check(self, site: SiteConfig) -> CheckResult:
        monitor = self._config.monitor
        return check_site(
            site.url,
            timeout=site.timeout or monitor.timeout,
            retry_attempts=monitor.retry_attempts,
            user_agent=monitor.user_agent,
        )

    def _submit(self, result: CheckResult) -> bool:
        try:
            self._core.submit_check(result)
        except ValidationError as e:
            logger.error("Rejected check result for %s: %s", result.url, e)
            return False
        except Exception as e:
            logger.error("Failed to process check result for %s: %s", result.url, e)
            return False
        return True
