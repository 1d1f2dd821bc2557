"""
Baseline Engine

Maintains each user's rolling statistical baseline per metric and decides
whether that baseline is ready to normalize today's signals against.

Statistics:
    - HRV is summarized in log space (ln RMSSD / ln SDNN). HRV is right-skewed,
      so z-scores against ln-mean/ln-stddev behave far better than raw ms.
    - RHR and respiratory rate use plain mean / sample stddev (n-1).
    - Sleep target is the user's own 75th percentile of sleep minutes, so a
      "good night" is judged against what this person actually achieves.
      Incremental updates keep only mean and stddev, so there the target is
      the normal approximation of that percentile.
    - Temperature is tracked as a deviation already, so only its baseline
      reference is kept.

Readiness:
    A baseline is "ready" once the primary metric has MIN_BASELINE_SAMPLES
    days of history. SDNN-based HRV (Apple Watch) gets a relaxed minimum:
    it is a single, noisier metric and waiting two full weeks starves
    new users of any score.

A not-ready baseline is a typed result (BaselineNotReady) carrying the
current count and the minimum, never a fabricated score.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Sequence
import logging
import math
import statistics

from services.signal_normalizer import DailySignalSet, HrvMethod, SignalSource

logger = logging.getLogger(__name__)


# Rolling window used when (re)building from history
BASELINE_WINDOW_DAYS = 30

# Readiness minimums
MIN_BASELINE_SAMPLES = 14
MIN_SDNN_BASELINE_SAMPLES = 7

# Confidence tiers by sample count
HIGH_CONFIDENCE_SAMPLES = 14
MEDIUM_CONFIDENCE_SAMPLES = 7

# Defaults when a user has no history for a metric
DEFAULT_SLEEP_TARGET_MINUTES = 420
DEFAULT_TEMPERATURE_BASELINE_C = 36.5
SLEEP_TARGET_PERCENTILE = 75
SLEEP_TARGET_Z = statistics.NormalDist().inv_cdf(SLEEP_TARGET_PERCENTILE / 100)

# Metric keys
METRIC_HRV_LN = "hrv_ln"
METRIC_RESTING_HR = "resting_hr"
METRIC_RESPIRATORY_RATE = "respiratory_rate"
METRIC_SLEEP_MINUTES = "sleep_minutes"


class BaselineConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class MetricBaseline:
    """Rolling mean / sample stddev for one metric (Welford accumulator)."""
    metric: str
    mean: float
    std_dev: float
    sample_count: int
    last_updated: datetime
    m2: float = 0.0  # sum of squared deviations, for incremental updates

    def z_score(self, value: float) -> Optional[float]:
        if self.std_dev <= 0:
            return None
        return (value - self.mean) / self.std_dev


@dataclass(frozen=True)
class UserBaseline:
    """Per-user baseline across all metrics."""
    user_id: str
    metrics: Dict[str, MetricBaseline] = field(default_factory=dict)
    hrv_method: Optional[HrvMethod] = None
    sleep_target_minutes: float = DEFAULT_SLEEP_TARGET_MINUTES
    temperature_baseline_c: float = DEFAULT_TEMPERATURE_BASELINE_C
    menstrual_cycle_tracking: bool = False
    cycle_day: Optional[int] = None
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def metric(self, name: str) -> Optional[MetricBaseline]:
        return self.metrics.get(name)

    @property
    def primary_sample_count(self) -> int:
        """Sample count of the metric that gates readiness (HRV, else RHR)."""
        for name in (METRIC_HRV_LN, METRIC_RESTING_HR):
            if name in self.metrics:
                return self.metrics[name].sample_count
        return 0

    @property
    def minimum_samples(self) -> int:
        if self.hrv_method == HrvMethod.SDNN:
            return MIN_SDNN_BASELINE_SAMPLES
        return MIN_BASELINE_SAMPLES

    @property
    def is_ready(self) -> bool:
        return self.primary_sample_count >= self.minimum_samples

    @property
    def confidence_level(self) -> BaselineConfidence:
        return confidence_level_for(self.primary_sample_count)


@dataclass(frozen=True)
class BaselineNotReady:
    """Typed "not enough history" outcome. Distinct from a low score."""
    user_id: str
    sample_count: int
    minimum_required: int

    @property
    def days_remaining(self) -> int:
        return max(0, self.minimum_required - self.sample_count)

    @property
    def message(self) -> str:
        return (
            f"Building your baseline: {self.sample_count} of "
            f"{self.minimum_required} days collected"
        )


def confidence_level_for(sample_count: int) -> BaselineConfidence:
    if sample_count >= HIGH_CONFIDENCE_SAMPLES:
        return BaselineConfidence.HIGH
    if sample_count >= MEDIUM_CONFIDENCE_SAMPLES:
        return BaselineConfidence.MEDIUM
    return BaselineConfidence.LOW


def check_baseline_ready(user_id: str, baseline: Optional[UserBaseline]) -> Optional[BaselineNotReady]:
    """Return BaselineNotReady when the baseline can't be used yet, else None."""
    if baseline is None:
        return BaselineNotReady(user_id=user_id, sample_count=0, minimum_required=MIN_BASELINE_SAMPLES)
    if not baseline.is_ready:
        return BaselineNotReady(
            user_id=user_id,
            sample_count=baseline.primary_sample_count,
            minimum_required=baseline.minimum_samples,
        )
    return None


# =============================================================================
# BUILD FROM HISTORY
# =============================================================================

def _metric_from_values(name: str, values: Sequence[float], now: datetime) -> Optional[MetricBaseline]:
    if not values:
        return None
    mean = statistics.mean(values)
    std_dev = statistics.stdev(values) if len(values) >= 2 else 0.0
    m2 = sum((v - mean) ** 2 for v in values)
    return MetricBaseline(
        metric=name,
        mean=mean,
        std_dev=std_dev,
        sample_count=len(values),
        last_updated=now,
        m2=m2,
    )


def _percentile(values: Sequence[float], pct: int) -> float:
    if len(values) == 1:
        return values[0]
    cut_points = statistics.quantiles(values, n=100, method="inclusive")
    return cut_points[pct - 1]


def compute_baseline(
    user_id: str,
    history: Sequence[DailySignalSet],
    now: Optional[datetime] = None,
    menstrual_cycle_tracking: bool = False,
    cycle_day: Optional[int] = None,
) -> UserBaseline:
    """
    Build a baseline from the most recent BASELINE_WINDOW_DAYS of wearable signals.

    Manual check-in rows are ignored: they carry no biometrics.
    When a day appears more than once the last row wins.

    Args:
        user_id: Owner of the history
        history: DailySignalSet rows, any order
        now: Timestamp recorded as last_updated (defaults to utcnow)
        menstrual_cycle_tracking: Whether the user opted in to cycle tracking
        cycle_day: Current cycle day if tracking

    Returns:
        UserBaseline (possibly not ready; check is_ready)
    """
    now = now or datetime.now(timezone.utc)

    by_date: Dict = {}
    for row in history:
        if row.user_id != user_id or row.source != SignalSource.WEARABLE:
            continue
        by_date[row.signal_date] = row
    window = [by_date[d] for d in sorted(by_date)][-BASELINE_WINDOW_DAYS:]

    # HRV: keep a single method, the most recent one reported
    hrv_rows = [r for r in window if r.hrv_ms is not None and r.hrv_method is not None]
    hrv_method = hrv_rows[-1].hrv_method if hrv_rows else None
    hrv_ln = [math.log(r.hrv_ms) for r in hrv_rows if r.hrv_method == hrv_method]

    rhr = [r.resting_hr for r in window if r.resting_hr is not None]
    rr = [r.respiratory_rate for r in window if r.respiratory_rate is not None]
    sleep_minutes = [r.sleep_hours * 60 for r in window if r.sleep_hours is not None and r.sleep_hours > 0]

    metrics: Dict[str, MetricBaseline] = {}
    for name, values in (
        (METRIC_HRV_LN, hrv_ln),
        (METRIC_RESTING_HR, rhr),
        (METRIC_RESPIRATORY_RATE, rr),
        (METRIC_SLEEP_MINUTES, sleep_minutes),
    ):
        metric = _metric_from_values(name, values, now)
        if metric is not None:
            metrics[name] = metric

    sleep_target = (
        _percentile(sleep_minutes, SLEEP_TARGET_PERCENTILE)
        if sleep_minutes else DEFAULT_SLEEP_TARGET_MINUTES
    )

    baseline = UserBaseline(
        user_id=user_id,
        metrics=metrics,
        hrv_method=hrv_method,
        sleep_target_minutes=round(sleep_target),
        temperature_baseline_c=DEFAULT_TEMPERATURE_BASELINE_C,
        menstrual_cycle_tracking=menstrual_cycle_tracking,
        cycle_day=cycle_day,
        created_at=now,
        last_updated=now,
    )
    logger.info(
        f"Computed baseline for user {user_id}: {len(window)} days, "
        f"primary samples={baseline.primary_sample_count}, ready={baseline.is_ready}"
    )
    return baseline


# =============================================================================
# INCREMENTAL UPDATE
# =============================================================================

def update_metric(existing: Optional[MetricBaseline], name: str, value: float, now: datetime) -> MetricBaseline:
    """Fold one observation into a metric baseline (Welford's algorithm)."""
    if existing is None:
        return MetricBaseline(metric=name, mean=value, std_dev=0.0, sample_count=1, last_updated=now, m2=0.0)

    count = existing.sample_count + 1
    delta = value - existing.mean
    mean = existing.mean + delta / count
    m2 = existing.m2 + delta * (value - mean)
    std_dev = math.sqrt(m2 / (count - 1)) if count >= 2 else 0.0
    return MetricBaseline(metric=name, mean=mean, std_dev=std_dev, sample_count=count, last_updated=now, m2=m2)


def sleep_target_from_metric(metric: Optional[MetricBaseline]) -> float:
    if metric is None:
        return DEFAULT_SLEEP_TARGET_MINUTES
    return round(metric.mean + SLEEP_TARGET_Z * metric.std_dev)


def update_baseline(
    baseline: Optional[UserBaseline],
    signals: DailySignalSet,
    now: Optional[datetime] = None,
) -> UserBaseline:
    """
    Fold one day's wearable signals into the user's baseline.

    Creates the baseline on the first qualifying signal. Manual rows and rows
    whose HRV method differs from the baseline's are not folded into HRV.
    A new sleep observation also moves the sleep target.
    """
    now = now or datetime.now(timezone.utc)
    if baseline is None:
        baseline = UserBaseline(user_id=signals.user_id, created_at=now)
    if signals.source != SignalSource.WEARABLE:
        return baseline

    metrics = dict(baseline.metrics)
    hrv_method = baseline.hrv_method
    sleep_target = baseline.sleep_target_minutes

    if signals.hrv_ms is not None and signals.hrv_method is not None:
        if hrv_method is None or hrv_method == signals.hrv_method:
            hrv_method = signals.hrv_method
            metrics[METRIC_HRV_LN] = update_metric(
                metrics.get(METRIC_HRV_LN), METRIC_HRV_LN, math.log(signals.hrv_ms), now
            )
        else:
            logger.warning(
                f"HRV method changed for user {signals.user_id} "
                f"({hrv_method.value} -> {signals.hrv_method.value}); rebuild required"
            )

    if signals.resting_hr is not None:
        metrics[METRIC_RESTING_HR] = update_metric(
            metrics.get(METRIC_RESTING_HR), METRIC_RESTING_HR, signals.resting_hr, now
        )
    if signals.respiratory_rate is not None:
        metrics[METRIC_RESPIRATORY_RATE] = update_metric(
            metrics.get(METRIC_RESPIRATORY_RATE), METRIC_RESPIRATORY_RATE, signals.respiratory_rate, now
        )
    if signals.sleep_hours is not None and signals.sleep_hours > 0:
        metrics[METRIC_SLEEP_MINUTES] = update_metric(
            metrics.get(METRIC_SLEEP_MINUTES), METRIC_SLEEP_MINUTES, signals.sleep_hours * 60, now
        )
        sleep_target = sleep_target_from_metric(metrics[METRIC_SLEEP_MINUTES])

    return replace(
        baseline,
        metrics=metrics,
        hrv_method=hrv_method,
        sleep_target_minutes=sleep_target,
        last_updated=now,
    )
