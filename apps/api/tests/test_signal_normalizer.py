"""
Tests for the signal normalizer.

Contract:
- Vendor key aliases collapse to one DailySignalSet shape
- Non-numeric values are malformed input; NaN and sensor dropouts become absent
- Check-in answers map through the shared sleep-hours buckets
- Merging fills holes only, newer values win
"""

import sys
import os
from datetime import date

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import MalformedInputError
from services.signal_normalizer import (
    DailySignalSet,
    HrvMethod,
    SignalSource,
    merge_signal_sets,
    normalize_check_in,
    normalize_wearable_row,
)


class TestNormalizeWearableRow:
    """Vendor rows become canonical signals."""

    def test_vendor_aliases_resolved(self):
        """hrv_avg / rhr_avg / respiratory_rate_avg map to canonical fields."""
        signals = normalize_wearable_row("u1", {
            "date": "2024-03-12",
            "hrv_avg": 52,
            "rhr_avg": 56,
            "sleep_duration_hours": 7.25,
            "respiratory_rate_avg": 14.2,
        })
        assert signals.source == SignalSource.WEARABLE
        assert signals.signal_date == date(2024, 3, 12)
        assert signals.hrv_ms == 52.0
        assert signals.hrv_method == HrvMethod.RMSSD
        assert signals.resting_hr == 56.0
        assert signals.sleep_hours == 7.25
        assert signals.respiratory_rate == 14.2

    def test_sleep_minutes_converted_to_hours(self):
        """Minutes are accepted when hours are absent."""
        signals = normalize_wearable_row("u1", {"date": "2024-03-12", "sleep_minutes": 450})
        assert signals.sleep_hours == 7.5

    def test_sdnn_method_kept(self):
        """Apple-style SDNN is tagged, not silently treated as RMSSD."""
        signals = normalize_wearable_row("u1", {"date": "2024-03-12", "hrv": 40, "hrv_method": "SDNN"})
        assert signals.hrv_method == HrvMethod.SDNN

    def test_missing_date_is_malformed(self):
        """A row without a date cannot be placed on a day."""
        with pytest.raises(MalformedInputError) as exc:
            normalize_wearable_row("u1", {"hrv_avg": 50})
        assert exc.value.field == "date"

    def test_non_numeric_value_is_malformed(self):
        """Garbage metric values are rejected with the field named."""
        with pytest.raises(MalformedInputError) as exc:
            normalize_wearable_row("u1", {"date": "2024-03-12", "rhr_avg": "sixty"})
        assert exc.value.field == "resting_hr"

    def test_zero_reading_is_dropout(self):
        """Zero HRV is a sensor dropout and becomes absent."""
        signals = normalize_wearable_row("u1", {"date": "2024-03-12", "hrv_avg": 0, "rhr_avg": 60})
        assert signals.hrv_ms is None
        assert signals.hrv_method is None
        assert signals.resting_hr == 60.0

    def test_nan_becomes_absent(self):
        """NaN is treated as missing, not as a number."""
        signals = normalize_wearable_row("u1", {"date": "2024-03-12", "rhr_avg": float("nan")})
        assert signals.resting_hr is None

    def test_sleep_quality_derived_from_stages(self):
        """Stage data yields an ordinal sleep quality when none is given."""
        signals = normalize_wearable_row("u1", {
            "date": "2024-03-12",
            "sleep_efficiency": 92,
            "deep_percentage": 20,
            "rem_percentage": 22,
        })
        assert signals.has_sleep_stages
        assert signals.sleep_quality is not None
        assert 1 <= signals.sleep_quality <= 5

    def test_out_of_range_rating_is_malformed(self):
        """Ratings live on a 1-5 scale."""
        with pytest.raises(MalformedInputError):
            normalize_wearable_row("u1", {"date": "2024-03-12", "energy_level": 9})


class TestNormalizeCheckIn:
    """Manual check-in answers."""

    def test_bucket_mapped_to_hours(self):
        signals = normalize_check_in("u1", date(2024, 3, 12), 4, "7-8", 3)
        assert signals.source == SignalSource.MANUAL
        assert signals.sleep_hours == 7.5
        assert signals.sleep_quality == 4
        assert signals.energy_level == 3
        assert signals.hrv_ms is None

    def test_unknown_bucket_rejected(self):
        with pytest.raises(MalformedInputError) as exc:
            normalize_check_in("u1", date(2024, 3, 12), 4, "9-10", 3)
        assert exc.value.field == "sleep_hours"


class TestMergeSignalSets:
    """Partial re-syncs fill holes without overwriting newer values."""

    def test_fills_only_missing_fields(self):
        newer = DailySignalSet(user_id="u1", signal_date=date(2024, 3, 12), source=SignalSource.WEARABLE, hrv_ms=60.0)
        older = DailySignalSet(
            user_id="u1", signal_date=date(2024, 3, 12), source=SignalSource.WEARABLE,
            hrv_ms=40.0, resting_hr=55.0,
        )
        merged = merge_signal_sets(newer, older)
        assert merged.hrv_ms == 60.0
        assert merged.resting_hr == 55.0

    def test_different_dates_rejected(self):
        a = DailySignalSet(user_id="u1", signal_date=date(2024, 3, 12), source=SignalSource.WEARABLE)
        b = DailySignalSet(user_id="u1", signal_date=date(2024, 3, 11), source=SignalSource.WEARABLE)
        with pytest.raises(MalformedInputError):
            merge_signal_sets(a, b)
