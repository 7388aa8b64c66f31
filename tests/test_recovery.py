"""Tests for read validation and failure escalation."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from ms430 import ClimateData
from recovery import (
    FailureTracker,
    HealthState,
    RecoveryAction,
    is_valid_climate,
    restart_process,
)
from units import FixedPoint


@pytest.mark.parametrize(
    "pressure,humidity_int,gas,valid",
    [
        (0, 0, 0, False),
        (101325, 0, 0, True),
        (0, 45, 0, True),
        (0, 0, 50000, True),
        (101325, 45, 50000, True),
    ],
)
def test_validation_gate(pressure, humidity_int, gas, valid):
    climate = ClimateData(pressure_pa=pressure, humidity=FixedPoint(humidity_int, 0, 1), gas_resistance_ohm=gas)
    assert is_valid_climate(climate) is valid


def test_validation_ignores_humidity_fraction():
    """Test that only the humidity integer part takes part in the gate."""
    climate = ClimateData(humidity=FixedPoint(0, 7, 1))
    assert is_valid_climate(climate) is False


def test_tracker_starts_healthy():
    tracker = FailureTracker()
    assert tracker.count == 0
    assert tracker.state == HealthState.HEALTHY


def test_tracker_escalates_at_threshold():
    tracker = FailureTracker(threshold=3)

    actions = [tracker.record_invalid() for _ in range(3)]

    assert actions == [RecoveryAction.SOFT_RESET, RecoveryAction.SOFT_RESET, RecoveryAction.RESTART]
    assert tracker.state == HealthState.ESCALATED
    assert tracker.count == 3


@pytest.mark.parametrize("threshold", [1, 2, 5])
def test_tracker_soft_resets_below_threshold(threshold):
    tracker = FailureTracker(threshold=threshold)
    for _ in range(threshold - 1):
        assert tracker.record_invalid() == RecoveryAction.SOFT_RESET
        assert tracker.state == HealthState.DEGRADED
    assert tracker.record_invalid() == RecoveryAction.RESTART


def test_tracker_valid_read_resets():
    tracker = FailureTracker(threshold=3)
    tracker.record_invalid()
    tracker.record_invalid()

    assert tracker.record_valid() == RecoveryAction.NONE
    assert tracker.count == 0
    assert tracker.state == HealthState.HEALTHY
    assert tracker.record_invalid() == RecoveryAction.SOFT_RESET


def test_tracker_rejects_bad_threshold():
    with pytest.raises(ValueError):
        FailureTracker(threshold=0)


def test_restart_process_exit_mode(log, no_sleep):
    with pytest.raises(SystemExit) as exc:
        restart_process(log, delay_s=2.0, mode="exit")
    assert exc.value.code == 1
    no_sleep.assert_called_once_with(2.0)


def test_restart_process_exec_mode(log):
    # execv never returns in production; the mocked one does and falls through to exit.
    with patch("recovery.os.execv") as execv, patch("recovery.sys.argv", ["metriful2mqtt"]):
        with pytest.raises(SystemExit):
            restart_process(log, delay_s=0.0, mode="exec")

    execv.assert_called_once()
    assert execv.call_args.args[1][1:] == ["metriful2mqtt"]
