"""
Usage alert decisions.

Turns the latest usage snapshot into notifications for the weekly (long
window), hourly (short window) and daily alert kinds.

Evaluation per kind:
1. The kind must be enabled
2. The window percentage (and, for session-scoped kinds, its reset time)
   must be known
3. The threshold must be reached
4. No notification may have been sent for the same session or date yet

The only state is the dedup store passed in by the caller; it is updated
for a kind as soon as that kind fires.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from ai_usage_guard.storage.db import to_utc
from ai_usage_guard.storage.models import UsageSnapshot

APP_IDENTIFIER = "ai-usage-guard"
APP_TITLE = "AI Usage Guard"

LONG_WINDOW_DAYS = 7


class AlertKind(Enum):
    """Independent notification kinds."""
    WEEKLY = "weekly"
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def identifier(self) -> str:
        """Stable notification identifier for this kind."""
        return f"{APP_IDENTIFIER}-{self.value}"

    @property
    def title(self) -> str:
        return f"{APP_TITLE}: {self.value.capitalize()} Alert"


class DailyAlertDefinition(Enum):
    """What a "day" means for the daily alert."""
    CALENDAR = "calendar"  # local calendar day
    SESSION = "session"    # current long-window session


@dataclass(frozen=True)
class AlertSettings:
    """User alert preferences.

    Weekly and hourly thresholds are remaining percentages (notify when
    remaining <= threshold). The daily threshold is a usage percentage
    (notify when usage so far >= threshold).
    """
    weekly_enabled: bool = False
    weekly_threshold: int = 20
    hourly_enabled: bool = False
    hourly_threshold: int = 20
    daily_enabled: bool = False
    daily_threshold: int = 15
    daily_definition: DailyAlertDefinition = DailyAlertDefinition.CALENDAR

    def __post_init__(self):
        """Validate thresholds are percentages."""
        for name in ("weekly_threshold", "hourly_threshold", "daily_threshold"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 100:
                raise ValueError(f"{name} must be an integer between 1 and 100")


@dataclass(frozen=True)
class Notification:
    """A notification the caller should deliver."""
    identifier: str
    title: str
    body: str
    kind: AlertKind


class DedupStore(Protocol):
    """Key-value store of the last notified session/date per alert kind."""

    def get(self, kind: AlertKind) -> Optional[str]:
        ...

    def set(self, kind: AlertKind, key: str) -> None:
        ...


@dataclass
class AlertDedupState:
    """In-memory dedup store."""
    last_keys: Dict[AlertKind, str] = field(default_factory=dict)

    def get(self, kind: AlertKind) -> Optional[str]:
        return self.last_keys.get(kind)

    def set(self, kind: AlertKind, key: str) -> None:
        self.last_keys[kind] = key


DailyUsageProvider = Callable[[datetime], Optional[float]]


def normalize_resets_at(resets_at: datetime) -> int:
    """Round a reset instant to the nearest hour, as epoch seconds.

    Reported reset times jitter by seconds between polls; rounding maps
    every poll of one session to the same key.
    """
    epoch = int(to_utc(resets_at).timestamp())
    return ((epoch + 1800) // 3600) * 3600


def check_alerts(
    latest: UsageSnapshot,
    settings: AlertSettings,
    state: DedupStore,
    daily_usage: Optional[DailyUsageProvider] = None,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[Notification]:
    """Decide which notifications the latest usage warrants.

    The three kinds are evaluated independently and may all fire in one
    call. The dedup store is updated for each kind that fires.

    Args:
        latest: Most recent usage snapshot
        settings: Alert preferences
        state: Dedup store, read and updated
        daily_usage: Returns usage consumed since a given instant; required
            for the daily kind to ever fire
        now: Current time (defaults to the system clock)
        tz: Timezone defining the calendar day (defaults to local time)

    Returns:
        Notifications to deliver, in weekly/hourly/daily order
    """
    notifications = []
    for notification in (
        _check_session_alert(
            AlertKind.WEEKLY,
            settings.weekly_enabled,
            settings.weekly_threshold,
            latest.long_window_percent,
            latest.long_window_resets_at,
            state,
        ),
        _check_session_alert(
            AlertKind.HOURLY,
            settings.hourly_enabled,
            settings.hourly_threshold,
            latest.short_window_percent,
            latest.short_window_resets_at,
            state,
        ),
        _check_daily_alert(latest, settings, state, daily_usage, now, tz),
    ):
        if notification is not None:
            notifications.append(notification)
    return notifications


def _check_session_alert(
    kind: AlertKind,
    enabled: bool,
    threshold: int,
    percent: Optional[float],
    resets_at: Optional[datetime],
    state: DedupStore,
) -> Optional[Notification]:
    if not enabled:
        return None
    if percent is None or resets_at is None:
        return None

    remaining = 100.0 - percent
    if remaining > threshold:
        return None

    key = str(normalize_resets_at(resets_at))
    if state.get(kind) == key:
        return None
    state.set(kind, key)

    return Notification(
        identifier=kind.identifier,
        title=kind.title,
        body=f"{kind.value.capitalize()} usage at {percent:.0f}% — {remaining:.0f}% remaining",
        kind=kind,
    )


def _check_daily_alert(
    latest: UsageSnapshot,
    settings: AlertSettings,
    state: DedupStore,
    daily_usage: Optional[DailyUsageProvider],
    now: Optional[datetime],
    tz: Optional[tzinfo],
) -> Optional[Notification]:
    if not settings.daily_enabled:
        return None
    if latest.long_window_percent is None:
        return None

    if settings.daily_definition is DailyAlertDefinition.CALENDAR:
        local_now = (to_utc(now) if now is not None else datetime.now(timezone.utc)).astimezone(tz)
        start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        key = start_of_day.strftime("%Y-%m-%d")
        since = to_utc(start_of_day)
        period = "today"
    else:
        if latest.long_window_resets_at is None:
            return None
        normalized = normalize_resets_at(latest.long_window_resets_at)
        key = str(normalized)
        since = datetime.fromtimestamp(normalized, timezone.utc) - timedelta(days=LONG_WINDOW_DAYS)
        period = "this session period"

    if state.get(AlertKind.DAILY) == key:
        return None
    if daily_usage is None:
        return None
    usage = daily_usage(since)
    if usage is None or usage < settings.daily_threshold:
        return None
    state.set(AlertKind.DAILY, key)

    return Notification(
        identifier=AlertKind.DAILY.identifier,
        title=AlertKind.DAILY.title,
        body=f"Used {usage:.0f}% {period} (threshold: {settings.daily_threshold}%)",
        kind=AlertKind.DAILY,
    )
