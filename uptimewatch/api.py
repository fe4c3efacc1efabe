"""HTTP API server for site status, metrics and history."""

import json
import logging
import math
import threading
import time
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

from . import __version__
from .config import ApiConfig
from .core import DEFAULT_HISTORY_LIMIT, MonitorCore
from .models import CheckResult, Status, is_well_formed_url
from .ratelimit import TokenBucketRateLimiter
from .store import MAX_HISTORY_LIMIT

logger = logging.getLogger(__name__)

# Per-client request limiting: 60 requests that refill over a minute,
# enough for dashboards polling every few seconds.
RATE_LIMIT_BURST = 60
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_CLIENTS = 1024


class ApiError(Exception):
    """Raised when an API operation fails."""
    pass


def parse_history_limit(raw: str | None) -> int:
    """Parse the ?limit= query value; invalid or missing values give the default."""
    if raw is None:
        return DEFAULT_HISTORY_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        return DEFAULT_HISTORY_LIMIT
    if limit < 1:
        return DEFAULT_HISTORY_LIMIT
    return min(limit, MAX_HISTORY_LIMIT)


def health_status(records: dict[str, CheckResult]) -> str:
    """Overall health: "down" if at least half the known sites are DOWN, "degraded" if any is."""
    down = sum(1 for r in records.values() if r.status is Status.DOWN)
    if down == 0:
        return "ok"
    if down >= len(records) / 2:
        return "down"
    return "degraded"


def _build_status_response(records: dict[str, CheckResult]) -> dict[str, Any]:
    """Build the full status response with summary."""
    sites = [records[url].to_dict() for url in sorted(records)]
    up_count = sum(1 for r in records.values() if r.status is Status.UP)

    return {
        "sites": sites,
        "summary": {
            "total": len(records),
            "up": up_count,
            "down": len(records) - up_count,
        },
    }


class StatusHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the JSON API endpoints."""

    # Class-level references set by factory
    core: MonitorCore | None = None
    rate_limiter: TokenBucketRateLimiter | None = None
    sites_configured: int = 0
    started_at: float = 0.0

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _check_rate_limit(self) -> bool:
        """Check if the request should be rate limited.

        Returns:
            True if request is allowed, False if rate limited.
            Sends 429 response automatically if rate limited.
        """
        if self.rate_limiter is None:
            return True

        client_ip = self.client_address[0]
        if not self.rate_limiter.consume(client_ip):
            retry_after_ms = self.rate_limiter.time_until_next_token_ms(client_ip)
            logger.warning("Rate limit exceeded for %s", client_ip)
            self._send_json(
                429,
                {"error": "Rate limit exceeded. Try again later.", "retryAfterMs": retry_after_ms},
                headers={"Retry-After": str(max(1, math.ceil(retry_after_ms / 1000)))},
            )
            return False
        return True

    def _send_json(self, code: int, data: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def do_GET(self) -> None:
        """Handle GET requests."""
        if not self._check_rate_limit():
            return

        if self.core is None:
            self._send_error_json(503, "Monitor not available")
            return

        parts = urlsplit(self.path)
        path = parts.path
        try:
            if path == "/healthz":
                self._handle_health()
            elif path == "/status":
                self._handle_status()
            elif path == "/metrics":
                self._handle_metrics()
            elif path.startswith("/history/"):
                encoded = path[len("/history/"):]
                if encoded:
                    self._handle_history(unquote(encoded), parse_qs(parts.query))
                else:
                    self._send_error_json(400, "URL is required")
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        if not self._check_rate_limit():
            return

        if self.core is None:
            self._send_error_json(503, "Monitor not available")
            return

        try:
            if urlsplit(self.path).path == "/reset":
                self._handle_reset()
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling DELETE request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _handle_health(self) -> None:
        """Handle GET /healthz endpoint."""
        records = self.core.get_snapshot()
        system = self.core.get_system_metrics()
        active_alerts = sum(1 for m in self.core.get_all_metrics().values() if m.consecutive_failures > 0)

        self._send_json(
            200,
            {
                "status": health_status(records),
                "sitesConfigured": self.sites_configured,
                "lastKnown": {url: r.to_dict() for url, r in records.items()},
                "now": datetime.now(UTC).isoformat(),
                "metrics": {
                    "totalUptime": system.overall_uptime_percentage,
                    "averageResponseTime": system.average_response_time_ms,
                    "activeAlerts": active_alerts,
                },
                "version": __version__,
                "uptime": round(time.monotonic() - self.started_at, 3),
            },
        )

    def _handle_status(self) -> None:
        """Handle GET /status endpoint."""
        self._send_json(200, _build_status_response(self.core.get_snapshot()))

    def _handle_metrics(self) -> None:
        """Handle GET /metrics endpoint."""
        sites = self.core.get_all_metrics()
        self._send_json(
            200,
            {
                "system": self.core.get_system_metrics().to_dict(),
                "weighted": self.core.get_traffic_weighted_metrics().to_dict(),
                "sites": {url: m.to_dict() for url, m in sites.items()},
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )

    def _handle_history(self, url: str, query: dict[str, list[str]]) -> None:
        """Handle GET /history/<url> endpoint."""
        if not is_well_formed_url(url):
            self._send_error_json(400, f"Invalid URL '{url}'")
            return

        raw_limit = query.get("limit", [None])[0]
        limit = parse_history_limit(raw_limit)
        history = self.core.get_history(url, limit)

        if not history:
            self._send_error_json(404, f"No history found for '{url}'")
            return

        self._send_json(
            200,
            {
                "url": url,
                "history": [r.to_dict() for r in history],
                "count": len(history),
                "limit": limit,
            },
        )

    def _handle_reset(self) -> None:
        """Handle DELETE /reset endpoint - clear status, metrics and history."""
        if not self.core.clear_all():
            self._send_error_json(500, "Storage error")
            return
        logger.info("Reset requested by %s", self.address_string())
        self._send_json(200, {"success": True})


def _create_handler_class(
    core: MonitorCore,
    rate_limiter: TokenBucketRateLimiter | None = None,
    sites_configured: int = 0,
) -> type:
    """Create a handler class with the core and limiter bound."""

    class BoundStatusHandler(StatusHandler):
        pass

    BoundStatusHandler.core = core
    BoundStatusHandler.rate_limiter = rate_limiter
    BoundStatusHandler.sites_configured = sites_configured
    BoundStatusHandler.started_at = time.monotonic()
    return BoundStatusHandler


class ApiServer:
    """Threaded HTTP API server for the monitor core."""

    def __init__(
        self,
        config: ApiConfig,
        core: MonitorCore,
        sites_configured: int = 0,
        rate_limiter: TokenBucketRateLimiter | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            core: Monitor core to query.
            sites_configured: Number of configured sites, reported by /healthz.
            rate_limiter: Per-client limiter; a default one is built if omitted.
        """
        self.config = config
        self.core = core
        self.sites_configured = sites_configured
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()
        self._rate_limiter = rate_limiter or TokenBucketRateLimiter(
            burst=RATE_LIMIT_BURST,
            window_sec=RATE_LIMIT_WINDOW_SECONDS,
            max_keys=RATE_LIMIT_MAX_CLIENTS,
        )

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(
                self.core,
                self._rate_limiter,
                self.sites_configured,
            )
            self._server = HTTPServer(("", self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.config.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or uptimewatch is already running."
                )
            elif e.errno == 13:  # EACCES
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
