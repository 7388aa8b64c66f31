"""
Read validation and failure escalation.

Every invalid climate read counts as a communication fault. Faults below the
threshold are answered with a soft device reset; reaching the threshold
restarts the whole process. A valid read clears the count.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from enum import Enum

from ms430 import ClimateData


DEFAULT_MAX_FAILURES = 3


class HealthState(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ESCALATED = "escalated"


class RecoveryAction(Enum):
    NONE = "none"
    SOFT_RESET = "soft_reset"
    RESTART = "restart"


def is_valid_climate(climate: ClimateData) -> bool:
    # The board never reports all three as zero; that pattern means the bus read failed.
    return not (
        climate.pressure_pa == 0
        and climate.humidity.integer == 0
        and climate.gas_resistance_ohm == 0
    )


class FailureTracker:
    def __init__(self, threshold: int = DEFAULT_MAX_FAILURES) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.count = 0

    @property
    def state(self) -> HealthState:
        if self.count == 0:
            return HealthState.HEALTHY
        if self.count < self.threshold:
            return HealthState.DEGRADED
        return HealthState.ESCALATED

    def record_valid(self) -> RecoveryAction:
        self.count = 0
        return RecoveryAction.NONE

    def record_invalid(self) -> RecoveryAction:
        self.count += 1
        if self.count >= self.threshold:
            return RecoveryAction.RESTART
        return RecoveryAction.SOFT_RESET


def flush_logs() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()
    sys.stdout.flush()
    sys.stderr.flush()


def restart_process(log: logging.Logger, delay_s: float = 2.0, mode: str = "exit") -> None:
    """
    Restart the process without touching the MQTT session.

    mode="exit" raises SystemExit(1) and leaves the restart to the supervisor
    (Home Assistant add-on watchdog, systemd Restart=on-failure, ...).
    mode="exec" replaces the running interpreter with a fresh one.
    """
    log.error("Persistent sensor fault; restarting process (mode=%s)", mode)
    flush_logs()
    time.sleep(delay_s)
    if mode == "exec":
        os.execv(sys.executable, [sys.executable, *sys.argv])
    raise SystemExit(1)
