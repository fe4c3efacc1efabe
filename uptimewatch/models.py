"""Data models for check results, metrics and notifications."""

import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse


class ValidationError(Exception):
    """Raised when a check result is malformed."""

    pass


class Status(str, Enum):
    """Reachability of a site as classified by the probe."""

    UP = "UP"
    DOWN = "DOWN"


class NotificationKind(str, Enum):
    INITIAL = "initial"
    ROUTINE = "routine"
    STATUS_CHANGE = "status_change"
    SUPPRESSED = "suppressed"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class CheckResult:
    """Result of a single site check.

    Attributes:
        url: Full URL that was checked.
        status: UP or DOWN.
        code: HTTP status code, or None if the request failed.
        response_time_ms: Response time in milliseconds.
        checked_at: Timezone-aware timestamp when the check was performed.
        error: Error description if the check failed, None otherwise.
    """

    url: str
    status: Status
    code: int | None
    response_time_ms: float
    checked_at: datetime
    error: str | None = None

    @property
    def is_up(self) -> bool:
        return self.status is Status.UP

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted/wire layout."""
        return {
            "url": self.url,
            "status": self.status.value,
            "code": self.code,
            "responseTime": self.response_time_ms,
            "checkedAt": self.checked_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CheckResult":
        """Build a validated CheckResult from its serialized layout.

        Both camelCase wire keys and snake_case field names are accepted.

        Raises:
            ValidationError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Check result must be a mapping")

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        result = cls(
            url=pick("url"),
            status=_parse_status(pick("status")),
            code=pick("code"),
            response_time_ms=pick("responseTime", "responseTimeMs", "response_time_ms"),
            checked_at=_parse_timestamp(pick("checkedAt", "checked_at")),
            error=pick("error"),
        )
        return validate_check_result(result)


def _parse_status(value: Any) -> Status:
    if isinstance(value, Status):
        return value
    try:
        return Status(value)
    except ValueError:
        raise ValidationError(f"Status must be UP or DOWN, got {value!r}")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        raise ValidationError(f"checkedAt must be an ISO-8601 timestamp, got {value!r}")
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"checkedAt is not a parseable timestamp: {value!r}")


def is_well_formed_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_check_result(result: CheckResult) -> CheckResult:
    """Validate a check result and normalize its timestamp to UTC.

    Args:
        result: The check result to validate.

    Returns:
        The result, with a naive checked_at interpreted as UTC.

    Raises:
        ValidationError: If any field is missing or invalid.
    """
    if not isinstance(result.url, str) or not result.url:
        raise ValidationError("Check result must have a URL string")
    if not is_well_formed_url(result.url):
        raise ValidationError(f"Check result URL is not a valid http(s) URL: {result.url!r}")
    if not isinstance(result.status, Status):
        raise ValidationError(f"Status must be UP or DOWN, got {result.status!r}")
    if result.code is not None and (isinstance(result.code, bool) or not isinstance(result.code, int)):
        raise ValidationError(f"Status code must be an integer or None, got {result.code!r}")

    rt = result.response_time_ms
    if isinstance(rt, bool) or not isinstance(rt, (int, float)) or not math.isfinite(rt) or rt < 0:
        raise ValidationError(f"Response time must be a non-negative number, got {rt!r}")

    if not isinstance(result.checked_at, datetime):
        raise ValidationError(f"checkedAt must be a datetime, got {result.checked_at!r}")
    if result.error is not None and not isinstance(result.error, str):
        raise ValidationError(f"Error must be a string or None, got {result.error!r}")

    if result.checked_at.tzinfo is None:
        return replace(result, checked_at=result.checked_at.replace(tzinfo=UTC))
    return result


def coerce_check_result(value: CheckResult | Mapping[str, Any]) -> CheckResult:
    """Accept either a CheckResult or its serialized mapping and validate it."""
    if isinstance(value, CheckResult):
        return validate_check_result(value)
    return CheckResult.from_dict(value)


def _optional_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_optional_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class SiteMetrics:
    """Streaming aggregate statistics for one site.

    Invariant: uptime_percentage == successful_checks / total_checks * 100,
    or 100 while no checks have been recorded.
    """

    url: str
    total_checks: int = 0
    successful_checks: int = 0
    consecutive_failures: int = 0
    average_response_time_ms: float = 0.0
    min_response_time_ms: float = math.inf
    max_response_time_ms: float = 0.0
    uptime_percentage: float = 100.0
    last_up_time: datetime | None = None
    last_down_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "totalChecks": self.total_checks,
            "successfulChecks": self.successful_checks,
            "consecutiveFailures": self.consecutive_failures,
            "averageResponseTime": self.average_response_time_ms,
            # JSON has no infinity; an empty minimum is stored as null
            "minResponseTime": None if math.isinf(self.min_response_time_ms) else self.min_response_time_ms,
            "maxResponseTime": self.max_response_time_ms,
            "uptimePercentage": self.uptime_percentage,
            "lastUpTime": _optional_time(self.last_up_time),
            "lastDownTime": _optional_time(self.last_down_time),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SiteMetrics":
        try:
            min_rt = data.get("minResponseTime")
            return cls(
                url=data["url"],
                total_checks=int(data.get("totalChecks", 0)),
                successful_checks=int(data.get("successfulChecks", 0)),
                consecutive_failures=int(data.get("consecutiveFailures", 0)),
                average_response_time_ms=float(data.get("averageResponseTime", 0.0)),
                min_response_time_ms=math.inf if min_rt is None else float(min_rt),
                max_response_time_ms=float(data.get("maxResponseTime", 0.0)),
                uptime_percentage=float(data.get("uptimePercentage", 100.0)),
                last_up_time=_load_optional_time(data.get("lastUpTime")),
                last_down_time=_load_optional_time(data.get("lastDownTime")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid stored metrics: {e}")


@dataclass(frozen=True)
class SystemMetrics:
    """System-wide aggregate across all monitored sites."""

    total_sites: int
    up_sites: int
    down_sites: int
    overall_uptime_percentage: float
    average_response_time_ms: float
    last_update: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSites": self.total_sites,
            "upSites": self.up_sites,
            "downSites": self.down_sites,
            "overallUptimePercentage": self.overall_uptime_percentage,
            "averageResponseTime": self.average_response_time_ms,
            "lastUpdate": self.last_update.isoformat(),
        }


NOTIFICATION_PRIORITY = {
    NotificationKind.INITIAL: Priority.NORMAL,
    NotificationKind.ROUTINE: Priority.LOW,
    NotificationKind.STATUS_CHANGE: Priority.HIGH,
    NotificationKind.SUPPRESSED: Priority.NORMAL,
}


@dataclass(frozen=True)
class Notification:
    """Outcome of one alert decision, handed to the notification sinks.

    Attributes:
        kind: Which branch of the state machine produced it.
        result: The check result that was decided on.
        previous_status: Stored status before this check, None on first observation.
        retry_after_ms: For suppressed alerts, milliseconds until the next token.
    """

    kind: NotificationKind
    result: CheckResult
    previous_status: Status | None = None
    retry_after_ms: int | None = None

    @property
    def priority(self) -> Priority:
        return NOTIFICATION_PRIORITY[self.kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind.value,
            "priority": self.priority.value,
            "url": self.result.url,
            "previousStatus": self.previous_status.value if self.previous_status else None,
            "newStatus": self.result.status.value,
            "code": self.result.code,
            "responseTime": self.result.response_time_ms,
            "error": self.result.error,
            "checkedAt": self.result.checked_at.isoformat(),
            "retryAfterMs": self.retry_after_ms,
        }
