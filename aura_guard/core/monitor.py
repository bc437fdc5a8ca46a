"""
Usage monitoring and security incident tracking.

Turns rate limiter and cache counters into threshold alerts, and tracks
security incidents per user to recommend auto-blocking repeat offenders.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from aura_guard.config.loader import MonitorConfig
from .cache import ResponseCache
from .rate_limiter import RateLimiter

log = logging.getLogger(__name__)


class Severity(Enum):
    """Incident severity."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertLevel(Enum):
    """Usage alert level."""
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


# Incident tracking is swept on access at most this often.
CLEANUP_INTERVAL_SECONDS = 3600

SEVERITY_BY_KIND = {
    "blocked_query": Severity.MEDIUM,
    "rate_limit_exceeded": Severity.LOW,
    "injection_attempt": Severity.HIGH,
    "api_key_extraction": Severity.CRITICAL,
    "manipulation_attempt": Severity.MEDIUM,
}


@dataclass(frozen=True)
class SecurityIncident:
    """A recorded security incident."""
    timestamp: datetime
    user_key: str
    kind: str
    severity: Severity
    details: str = ""


@dataclass(frozen=True)
class IncidentOutcome:
    """Result of recording an incident.

    ``blocked`` is a recommendation; enforcing it is up to the caller.
    """
    blocked: bool
    incidents: int
    severity: Severity


@dataclass(frozen=True)
class UsageAlert:
    """Global usage crossing a configured percentage of its daily limit."""
    level: AlertLevel
    api_type: str
    percent: float
    message: str
    action: str


def incident_severity(kind: str) -> Severity:
    return SEVERITY_BY_KIND.get(kind, Severity.MEDIUM)


def user_key(user_id: str, platform: str) -> str:
    return f"{platform}:{user_id}"


class UsageMonitor:
    """Aggregates governance counters into alerts and incident tracking.

    Incident counts decay: only incidents inside the rolling
    ``incident_window_seconds`` count toward the auto-block recommendation.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        cache: Optional[ResponseCache] = None,
        config: Optional[MonitorConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        incident_log_size: int = 500
    ):
        self.limiter = limiter
        self.cache = cache
        self.config = config or MonitorConfig()
        self.clock = clock
        self.incidents: Deque[SecurityIncident] = deque(maxlen=incident_log_size)
        self._by_user: Dict[str, Deque[datetime]] = defaultdict(deque)
        self._last_cleanup = clock()
        self.replies_today = 0
        self._replies_date = clock().date()

    # -- incidents --------------------------------------------------------

    def _window_start(self) -> datetime:
        return self.clock() - timedelta(seconds=self.config.incident_window_seconds)

    def _prune_user(self, key: str) -> Deque[datetime]:
        stamps = self._by_user[key]
        cutoff = self._window_start()
        while stamps and stamps[0] < cutoff:
            stamps.popleft()
        return stamps

    def record_incident(
        self,
        user_id: str,
        platform: str,
        kind: str,
        details: str = ""
    ) -> IncidentOutcome:
        """Log an incident and tell whether the user should be blocked.

        Args:
            user_id: Platform user identifier
            platform: Platform name
            kind: Incident kind (see SEVERITY_BY_KIND)
            details: Short description; never shown to end users

        Returns:
            IncidentOutcome; ``blocked`` once the user already had ``user_abuse``
            incidents inside the window
        """
        now = self.clock()
        key = user_key(user_id, platform)
        severity = incident_severity(kind)

        self._cleanup_if_due(now, key)
        self.incidents.append(SecurityIncident(now, key, kind, severity, details[:200]))
        stamps = self._prune_user(key)
        previous = len(stamps)
        stamps.append(now)

        log.warning("Security incident: user=%s kind=%s severity=%s details=%s",
                    key, kind, severity.value, details[:200])

        if previous >= self.config.user_abuse:
            log.warning("Auto-block recommended for %s (%d incidents)", key, previous + 1)
            return IncidentOutcome(True, previous + 1, severity)
        return IncidentOutcome(False, previous + 1, severity)

    def incident_count(self, key: str) -> int:
        """Incidents of ``platform:user`` inside the rolling window."""
        if key not in self._by_user:
            return 0
        return len(self._prune_user(key))

    def is_blocked(self, key: str) -> bool:
        return self.incident_count(key) > self.config.user_abuse

    def blocked_users(self) -> List[str]:
        return [key for key in list(self._by_user) if self.is_blocked(key)]

    @property
    def tracked_users(self) -> int:
        return len(self._by_user)

    def _cleanup_if_due(self, now: datetime, key: str) -> None:
        # A new user never pushes the map past max_tracked_users.
        full = key not in self._by_user and len(self._by_user) >= self.config.max_tracked_users
        due = now - self._last_cleanup >= timedelta(seconds=CLEANUP_INTERVAL_SECONDS)
        if full:
            self._cleanup(self.config.max_tracked_users - 1)
        elif due:
            self._cleanup(self.config.max_tracked_users)

    def cleanup(self) -> int:
        """Drop decayed incidents; clear everything past ``max_tracked_users``.

        Runs on its own from ``record_incident`` once an hour or when a new
        user would not fit.

        Returns:
            Number of users no longer tracked
        """
        return self._cleanup(self.config.max_tracked_users)

    def _cleanup(self, capacity: int) -> int:
        before = len(self._by_user)
        for key in list(self._by_user):
            if not self._prune_user(key):
                del self._by_user[key]
        if len(self._by_user) > capacity:
            self._by_user.clear()
            log.info("Cleared incident tracking (over %d users)", capacity)
        self._last_cleanup = self.clock()
        return before - len(self._by_user)

    # -- usage ------------------------------------------------------------

    def record_reply(self) -> None:
        today = self.clock().date()
        if today != self._replies_date:
            self.replies_today = 0
            self._replies_date = today
        self.replies_today += 1

    async def alerts(self) -> List[UsageAlert]:
        """Threshold alerts for every api type with a global limit."""
        usage = await self.limiter.daily_usage()
        alerts = []
        for api_type, threshold in self.config.thresholds.items():
            limit = self.limiter.global_limits.get(api_type)
            if not limit:
                continue
            percent = (usage.get(api_type, 0) / limit) * 100
            if percent >= threshold.critical:
                alerts.append(UsageAlert(
                    level=AlertLevel.CRITICAL,
                    api_type=api_type,
                    percent=percent,
                    message=f"{api_type} usage at {round(percent)}% of daily limit",
                    action="Requests will be blocked soon; consider a higher plan or stricter limits",
                ))
            elif percent >= threshold.warning:
                alerts.append(UsageAlert(
                    level=AlertLevel.WARNING,
                    api_type=api_type,
                    percent=percent,
                    message=f"{api_type} usage at {round(percent)}% of daily limit",
                    action="Monitor usage closely",
                ))
        return alerts

    async def detailed_stats(self) -> Dict[str, object]:
        stats = await self.limiter.usage_stats()
        stats["alerts"] = await self.alerts()
        stats["cache_size"] = await self.cache.size() if self.cache else 0
        stats["cache_hit_rate"] = round(self.cache.hit_rate) if self.cache else 0
        stats["replies_today"] = self.replies_today
        stats["tracked_users"] = self.tracked_users
        stats["blocked_users"] = len(self.blocked_users())
        stats["incidents"] = len(self.incidents)
        return stats

    def recommendations(self, stats: Dict[str, object]) -> List[str]:
        recommendations = []
        daily = stats["daily"]
        limits = stats["limits"]

        if self.cache and (self.cache.hits + self.cache.misses) >= 10 and stats["cache_hit_rate"] < 20:
            recommendations.append("Consider increasing cache duration for better efficiency")
        for api_type, limit in limits.items():
            if daily.get(api_type, 0) > limit * 0.8:
                recommendations.append(f"{api_type} usage high - consider upgrading the provider plan")
        if stats["cache_size"] > 100:
            recommendations.append("Large cache detected - consider a max_entries bound")
        if stats["blocked_users"]:
            recommendations.append("Review users flagged for auto-block")

        if not recommendations:
            recommendations.append("System operating efficiently - no issues detected")
        return recommendations

    async def generate_report(self) -> str:
        """Plain-text operator report."""
        stats = await self.detailed_stats()
        daily = stats["daily"]
        limits = stats["limits"]

        lines = [
            "API PROTECTION REPORT",
            f"Generated: {self.clock().isoformat()}",
            "",
            "DAILY USAGE:",
        ]
        for api_type in sorted(daily):
            limit = limits.get(api_type)
            if limit:
                lines.append(f"   {api_type}: {daily[api_type]}/{limit} ({round(daily[api_type] / limit * 100)}%)")
            else:
                lines.append(f"   {api_type}: {daily[api_type]} (unlimited)")
        lines.append(f"   replies: {stats['replies_today']}")

        lines += [
            "",
            "CACHE:",
            f"   Entries: {stats['cache_size']}",
            f"   Hit rate: {stats['cache_hit_rate']}%",
            "",
            "ALERTS: " + (", ".join(f"{a.level.value}: {a.message}" for a in stats["alerts"]) or "None"),
            "",
            "SECURITY:",
            f"   Incidents logged: {stats['incidents']}",
            f"   Users flagged for auto-block: {stats['blocked_users']}",
            f"   Rate limit entries: {stats['rate_limit_entries']}",
            "",
            "RECOMMENDATIONS:",
        ]
        lines += [f"   - {r}" for r in self.recommendations(stats)]
        return "\n".join(lines)
