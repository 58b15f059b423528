"""
Delta and efficiency analytics.

Correlates spend with usage-window consumption. The unit of correlation is
the interval between two adjacent usage snapshots: the percentage points
the window moved versus the cost of the calls made in between.

Derived views:
- Interval deltas and their efficiency ratio (percent points per USD)
- Gaussian kernel density estimate of the ratio
- Day-of-week x hour-of-day heatmap
- Time-of-day bands for grouping scatter plots
- Chart series with synthetic zero points at window resets
"""

import bisect
import math
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ai_usage_guard.storage.db import to_utc
from ai_usage_guard.storage.models import UsageSnapshot, Window
from .pricing import CostPoint

# Intervals cheaper than this are polling noise
MIN_INTERVAL_COST = 0.001

KDE_POINTS = 200
KDE_TAIL_BANDWIDTHS = 3.0

DAYS_PER_WEEK = 7
HOURS_PER_DAY = 24
DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


@dataclass(frozen=True)
class IntervalDelta:
    """Usage movement and spend between two adjacent snapshots."""
    timestamp: datetime
    interval_cost_usd: float
    percent_delta: float
    hour_of_day: int
    day_of_week: int  # 0 = Sunday

    @property
    def efficiency_ratio(self) -> float:
        """Window percentage points consumed per USD."""
        return self.percent_delta / self.interval_cost_usd


@dataclass(frozen=True)
class KDEResult:
    """Density evaluated on an evenly spaced grid."""
    xs: List[float] = field(default_factory=list)
    ys: List[float] = field(default_factory=list)
    bandwidth: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return not self.xs

    @property
    def peak(self) -> Optional[float]:
        """Grid position with the highest density."""
        if not self.xs:
            return None
        return self.xs[max(range(len(self.ys)), key=self.ys.__getitem__)]


@dataclass
class HeatmapCell:
    """Aggregate of all intervals ending in one (day, hour) slot."""
    day_of_week: int
    hour_of_day: int
    total_percent_delta: float = 0.0
    total_cost: float = 0.0
    count: int = 0

    @property
    def ratio(self) -> Optional[float]:
        """Percent points per USD, or None when the cell has no real cost."""
        if self.total_cost <= MIN_INTERVAL_COST:
            return None
        return self.total_percent_delta / self.total_cost


class TimeSlot(Enum):
    """Four bands covering the day, keyed by their first hour."""
    NIGHT = 0
    MORNING = 6
    AFTERNOON = 12
    EVENING = 18

    @property
    def label(self) -> str:
        end = self.value + 6
        return f"{self.name.capitalize()} ({self.value}-{end}h)"


@dataclass(frozen=True)
class ChartPoint:
    """One point of a percent series; synthetic points mark resets."""
    timestamp: datetime
    percent: Optional[float]
    synthetic: bool = False


def compute_deltas(
    history: Iterable[UsageSnapshot],
    costs: Iterable[CostPoint],
    window: Window = Window.SHORT,
    tz: Optional[tzinfo] = None,
) -> List[IntervalDelta]:
    """Compute one delta per adjacent snapshot pair.

    A pair is skipped when either snapshot lacks a percentage for the
    window, or when the calls made in [prev.timestamp, curr.timestamp) cost
    no more than MIN_INTERVAL_COST. A call exactly on a boundary belongs to
    the later interval. Negative deltas (the rolling window shrank) are kept.

    Args:
        history: Usage snapshots in any order
        costs: Costed calls in any order
        window: Window whose percentage is analyzed
        tz: Timezone for hour/day bucketing (defaults to local time)

    Returns:
        Deltas ordered by interval end
    """
    snapshots = sorted(history, key=lambda s: to_utc(s.timestamp))
    points = sorted(costs, key=lambda p: to_utc(p.timestamp))
    times = [to_utc(p.timestamp) for p in points]

    deltas = []
    for prev, curr in zip(snapshots, snapshots[1:]):
        prev_percent = window.percent_of(prev)
        curr_percent = window.percent_of(curr)
        if prev_percent is None or curr_percent is None:
            continue

        start = bisect.bisect_left(times, to_utc(prev.timestamp))
        end = bisect.bisect_left(times, to_utc(curr.timestamp))
        interval_cost = math.fsum(p.cost_usd for p in points[start:end]) if end > start else 0.0
        if interval_cost <= MIN_INTERVAL_COST:
            continue

        local = to_utc(curr.timestamp).astimezone(tz)
        deltas.append(IntervalDelta(
            timestamp=to_utc(curr.timestamp),
            interval_cost_usd=interval_cost,
            percent_delta=curr_percent - prev_percent,
            hour_of_day=local.hour,
            day_of_week=_day_of_week(local),
        ))
    return deltas


def efficiency_ratios(deltas: Iterable[IntervalDelta]) -> List[float]:
    """Efficiency ratio of every delta with a meaningful cost."""
    return [d.efficiency_ratio for d in deltas if d.interval_cost_usd > MIN_INTERVAL_COST]


def compute_kde(values: Sequence[float], points: int = KDE_POINTS) -> KDEResult:
    """Gaussian kernel density estimate.

    Bandwidth follows Silverman's rule of thumb, h = 1.06 * std * n^-0.2,
    with the standard deviation floored to 1 for constant input. The density
    is evaluated on points + 1 evenly spaced positions from min - 3h to
    max + 3h, so it integrates to about 1 over the grid.

    Args:
        values: Sample values; non-finite values are ignored
        points: Number of grid intervals

    Returns:
        KDEResult, empty for fewer than two usable values
    """
    if points < 1:
        raise ValueError("points must be >= 1")
    samples = [float(v) for v in values if math.isfinite(v)]
    n = len(samples)
    if n < 2:
        return KDEResult()

    # Moments are taken on values scaled into [-1, 1] so squares cannot overflow
    scale = max(abs(v) for v in samples) or 1.0
    scaled = [v / scale for v in samples]
    mean = math.fsum(scaled) / n
    variance = math.fsum((v - mean) ** 2 for v in scaled) / n
    std = math.sqrt(variance) * scale or 1.0
    bandwidth = 1.06 * std * n ** -0.2
    if not math.isfinite(bandwidth) or bandwidth <= 0:
        return KDEResult()

    lo = min(samples) - KDE_TAIL_BANDWIDTHS * bandwidth
    hi = max(samples) + KDE_TAIL_BANDWIDTHS * bandwidth
    step = (hi - lo) / points
    if not (math.isfinite(lo) and math.isfinite(hi) and math.isfinite(step)):
        return KDEResult()
    coeff = 1.0 / (n * bandwidth * math.sqrt(2.0 * math.pi))
    if not math.isfinite(coeff):
        return KDEResult()

    xs = []
    ys = []
    for i in range(points + 1):
        x = lo + i * step
        density = math.fsum(math.exp(-0.5 * ((x - v) / bandwidth) ** 2) for v in samples)
        xs.append(x)
        ys.append(density * coeff)
    return KDEResult(xs=xs, ys=ys, bandwidth=bandwidth)


def trapezoid_area(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Area under a sampled curve by the trapezoidal rule."""
    return math.fsum(
        (xs[i + 1] - xs[i]) * (ys[i] + ys[i + 1]) / 2.0 for i in range(len(xs) - 1)
    )


def build_heatmap(deltas: Iterable[IntervalDelta]) -> Dict[Tuple[int, int], HeatmapCell]:
    """Bucket deltas by (day_of_week, hour_of_day).

    Percent deltas and costs are summed independently per cell; the cell
    ratio is the quotient of the sums, not a mean of per-interval ratios.
    """
    cells: Dict[Tuple[int, int], HeatmapCell] = {}
    for delta in deltas:
        key = (delta.day_of_week, delta.hour_of_day)
        cell = cells.get(key)
        if cell is None:
            cell = cells[key] = HeatmapCell(day_of_week=key[0], hour_of_day=key[1])
        cell.total_percent_delta += delta.percent_delta
        cell.total_cost += delta.interval_cost_usd
        cell.count += 1
    return cells


def heatmap_grid(deltas: Iterable[IntervalDelta]) -> List[List[Optional[float]]]:
    """7 x 24 grid of cell ratios (rows start on Sunday); None where undefined."""
    cells = build_heatmap(deltas)
    grid: List[List[Optional[float]]] = []
    for day in range(DAYS_PER_WEEK):
        row = []
        for hour in range(HOURS_PER_DAY):
            cell = cells.get((day, hour))
            row.append(cell.ratio if cell is not None else None)
        grid.append(row)
    return grid


def classify_hour(hour: int) -> TimeSlot:
    """Map an hour of day to its time slot.

    Raises:
        ValueError: If hour is outside 0-23
    """
    if not 0 <= hour < HOURS_PER_DAY:
        raise ValueError(f"hour must be between 0 and 23, got {hour}")
    if hour < TimeSlot.MORNING.value:
        return TimeSlot.NIGHT
    if hour < TimeSlot.AFTERNOON.value:
        return TimeSlot.MORNING
    if hour < TimeSlot.EVENING.value:
        return TimeSlot.AFTERNOON
    return TimeSlot.EVENING


def group_by_time_slot(deltas: Iterable[IntervalDelta]) -> Dict[TimeSlot, List[IntervalDelta]]:
    """Group deltas by the time slot of their interval end."""
    groups: Dict[TimeSlot, List[IntervalDelta]] = {slot: [] for slot in TimeSlot}
    for delta in deltas:
        groups[classify_hour(delta.hour_of_day)].append(delta)
    return groups


def insert_reset_points(history: Iterable[UsageSnapshot], window: Window) -> List[ChartPoint]:
    """Percent series with a zero point wherever the window reset.

    When the previous sample's reset instant falls strictly between the two
    sample timestamps, a synthetic 0% point is placed at the reset instant
    so the chart drops to zero instead of drawing a diagonal.
    """
    snapshots = sorted(history, key=lambda s: to_utc(s.timestamp))
    series = []
    for i, curr in enumerate(snapshots):
        if i > 0:
            prev = snapshots[i - 1]
            resets_at = window.resets_at_of(prev)
            if resets_at is not None:
                reset = to_utc(resets_at)
                if to_utc(prev.timestamp) < reset < to_utc(curr.timestamp):
                    series.append(ChartPoint(timestamp=reset, percent=0.0, synthetic=True))
        series.append(ChartPoint(timestamp=to_utc(curr.timestamp), percent=window.percent_of(curr)))
    return series


def filter_deltas_by_date(
    deltas: Iterable[IntervalDelta],
    start: date,
    end: date,
    tz: Optional[tzinfo] = None,
) -> List[IntervalDelta]:
    """Keep deltas whose local date lies in [start, end] (both inclusive)."""
    if start > end:
        raise ValueError("start date must not be after end date")
    return [d for d in deltas if start <= to_utc(d.timestamp).astimezone(tz).date() <= end]


def _day_of_week(local: datetime) -> int:
    # datetime.weekday() starts on Monday
    return (local.weekday() + 1) % DAYS_PER_WEEK
