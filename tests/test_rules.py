"""Tests for the built-in rule set."""

from datetime import timedelta

import pytest

from emd.analyzer.rule_engine import RuleEngine
from emd.models.alert_models import Severity
from emd.models.job_models import JobStatus, VerificationData, VerificationStatus

from conftest import START, make_job


def _fired(job, verification=None, now=START):
    engine = RuleEngine()
    return {t.rule_id for t in engine.evaluate([job], verification or {}, now=now)}


def test_fully_assigned_open_job_triggers_nothing() -> None:
    assert _fired(make_job()) == set()


def test_open_job_without_truck_is_missing_assignment() -> None:
    engine = RuleEngine()
    [trigger] = engine.evaluate([make_job("J9", truck_id=None)], now=START)
    assert trigger.rule_id == "missing-assignment"
    assert trigger.severity == Severity.HIGH
    assert trigger.entity_id == "J9"
    assert "J9" in trigger.message


def test_truck_without_driver() -> None:
    assert _fired(make_job(driver_id=None)) == {"truck-without-driver"}


def test_completed_job_without_truck_is_fine() -> None:
    assert _fired(make_job(status=JobStatus.COMPLETED, truck_id=None)) == set()


def test_arrival_without_completion() -> None:
    job = make_job(arrived_at=START - timedelta(minutes=30))
    assert _fired(job) == {"arrival-without-completion"}


def test_long_in_progress_after_threshold() -> None:
    job = make_job(arrived_at=START - timedelta(hours=5))
    assert _fired(job) == {"arrival-without-completion", "long-in-progress"}


def test_completed_arrival_does_not_trigger() -> None:
    job = make_job(
        status=JobStatus.COMPLETED,
        arrived_at=START - timedelta(hours=5),
        completed_at=START - timedelta(hours=1),
    )
    assert _fired(job) == set()


@pytest.mark.parametrize(
    "overrides",
    [{"status": JobStatus.ATTEMPTED}, {"driver_status": "Attempted"}],
)
def test_attempted_status(overrides) -> None:
    assert "attempted-status" in _fired(make_job(**overrides))


def test_rescheduled_status() -> None:
    assert _fired(make_job(status=JobStatus.RESCHEDULED)) == {"rescheduled-status"}


def _verification(status, distance=None, tracked=True):
    return {
        "J1": VerificationData(
            entity_id="J1",
            truck_id="T1",
            status=status,
            distance_miles=distance,
            has_tracking=tracked,
        )
    }


def test_gps_rules_ignore_missing_verification() -> None:
    assert _fired(make_job(), verification={}) == set()


def test_gps_location_mismatch() -> None:
    fired = _fired(make_job(), _verification(VerificationStatus.OFF_SCHEDULE, 12.4))
    assert fired == {"gps-location-mismatch"}


def test_gps_unknown_splits_on_tracking() -> None:
    assert _fired(make_job(), _verification(VerificationStatus.UNKNOWN, tracked=False)) == {
        "gps-no-tracking"
    }
    assert _fired(make_job(), _verification(VerificationStatus.UNKNOWN, tracked=True)) == {
        "gps-data-unavailable"
    }


@pytest.mark.parametrize(
    "distance,expected",
    [(0.0, set()), (1.5, {"gps-proximity"}), (2.0, {"gps-proximity"}), (3.0, set())],
)
def test_gps_proximity_band(distance, expected) -> None:
    assert _fired(make_job(), _verification(VerificationStatus.VERIFIED, distance)) == expected
