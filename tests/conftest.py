"""Pytest configuration and fixtures for metriful2mqtt tests."""

from __future__ import annotations

import json
import logging
import time
from typing import Any
from unittest.mock import MagicMock

import pytest

from ms430 import (
    AirQualityData,
    ClimateData,
    LightData,
    ParticleData,
    ReadySignal,
    SoundData,
)
from units import FixedPoint


VALID_CLIMATE = ClimateData(
    temperature=FixedPoint(21, 5, 1),
    pressure_pa=101325,
    humidity=FixedPoint(45, 3, 1),
    gas_resistance_ohm=50000,
)
ZERO_CLIMATE = ClimateData(temperature=FixedPoint(21, 5, 1))


class FakeDevice:
    """Stands in for ms430.MS430 and records every command it receives."""

    def __init__(self, climates=None):
        self.calls: list[Any] = []
        self.climates = list(climates or [])
        self.climate = VALID_CLIMATE
        self.air_quality = AirQualityData(aqi=FixedPoint(52, 4, 1), accuracy=2)
        self.light = LightData(illuminance=FixedPoint(310, 25, 2), white=812)
        self.sound = SoundData(
            spl_dba=FixedPoint(41, 7, 1),
            bands_db=tuple(FixedPoint(30 + i, i, 1) for i in range(6)),
            peak_amplitude_mpa=FixedPoint(12, 34, 2),
            stable=True,
        )
        self.particle = ParticleData(duty_cycle=FixedPoint(1, 50, 2), concentration=FixedPoint(250, 75, 2), valid=True)

    def send_reset(self):
        self.calls.append("reset")

    def set_particle_sensor_mode(self, mode):
        self.calls.append(("particle_sensor", mode))

    def set_cycle_period(self, period):
        self.calls.append(("cycle_period", period))

    def enter_cycle_mode(self):
        self.calls.append("cycle_mode")

    def enter_standby_mode(self):
        self.calls.append("standby")

    def close(self):
        self.calls.append("close")

    def read_climate(self):
        self.calls.append("read_climate")
        if self.climates:
            return self.climates.pop(0)
        return self.climate

    def read_air_quality(self):
        self.calls.append("read_air_quality")
        return self.air_quality

    def read_light(self):
        self.calls.append("read_light")
        return self.light

    def read_sound(self):
        self.calls.append("read_sound")
        return self.sound

    def read_particle(self):
        self.calls.append("read_particle")
        return self.particle


class FakeReadyLine:
    """Asserts READY after `delay` polls, every time it is rearmed."""

    def __init__(self, signal: ReadySignal, delay: int = 0):
        self.signal = signal
        self.delay = delay
        self.polls = 0
        self._pending = delay

    def rearm(self):
        self._pending = self.delay

    def poll(self):
        self.polls += 1
        if self._pending > 0:
            self._pending -= 1
            return False
        self.signal.set()
        self._pending = self.delay
        return True


def published(client: MagicMock) -> list[tuple[str, str, bool]]:
    """Return (topic, payload, retain) for every publish() on a mocked client."""
    out = []
    for c in client.publish.call_args_list:
        topic, payload = c.args[0], c.args[1]
        out.append((topic, payload, c.kwargs.get("retain", False)))
    return out


def published_values(client: MagicMock) -> dict[str, Any]:
    return {
        topic: json.loads(payload)["value"]
        for topic, payload, _ in published(client)
        if not topic.endswith("/config") and not topic.endswith("/status")
    }


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Replace time.sleep so pacing and retry delays do not slow the tests."""
    sleeper = MagicMock()
    monkeypatch.setattr(time, "sleep", sleeper)
    return sleeper


@pytest.fixture
def log() -> logging.Logger:
    return logging.getLogger("metriful2mqtt.tests")


@pytest.fixture
def mqtt_client() -> MagicMock:
    """Mock paho client that is already connected and accepts every publish."""
    client = MagicMock()
    client.is_connected.return_value = True
    client.publish.return_value = MagicMock(rc=0)
    client.loop.return_value = 0
    return client


@pytest.fixture
def options() -> dict[str, Any]:
    return {
        "units": "metric",
        "mqtt": {"host": "broker.local", "topic_base": "home/office", "discovery_pacing_s": 0.1},
        "metriful": {"cycle_period": "3s", "particle_sensor": "off"},
    }


@pytest.fixture
def ready_signal() -> ReadySignal:
    return ReadySignal()


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()
