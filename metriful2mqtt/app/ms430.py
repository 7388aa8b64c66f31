"""
Metriful MS430 transport: I2C register protocol, data decoders and READY line.

Data registers (block reads, little-endian):
- 0x10 climate       (12 bytes)
- 0x11 air quality   (10 bytes)
- 0x12 light         (5 bytes)
- 0x13 sound         (18 bytes)
- 0x14 particle      (6 bytes)

The READY pin is active-low: the board pulls it low when it can accept a
command and when a new measurement cycle has completed.
"""

from __future__ import annotations

import logging
import struct
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple

from smbus2 import SMBus

from units import FixedPoint


# ---------------------------
# Registers / commands
# ---------------------------

I2C_ADDRESS_DEFAULT = 0x71
I2C_ADDRESS_ALT = 0x70

PARTICLE_SENSOR_SELECT_REG = 0x07
CYCLE_TIME_PERIOD_REG = 0x89

RESET_CMD = 0xE2
CYCLE_MODE_CMD = 0xE4
STANDBY_MODE_CMD = 0xE5

AIR_DATA_READ = 0x10
AIR_QUALITY_DATA_READ = 0x11
LIGHT_DATA_READ = 0x12
SOUND_DATA_READ = 0x13
PARTICLE_DATA_READ = 0x14

AIR_DATA_BYTES = 12
AIR_QUALITY_DATA_BYTES = 10
LIGHT_DATA_BYTES = 5
SOUND_DATA_BYTES = 18
PARTICLE_DATA_BYTES = 6

TEMPERATURE_SIGN_MASK = 0x80
TEMPERATURE_VALUE_MASK = 0x7F

SOUND_FREQ_BANDS = 6
SOUND_BAND_MIDS_HZ = (125, 250, 500, 1000, 2000, 4000)

AQI_ACCURACY_LABELS = ("not_yet_valid", "low", "medium", "high")

# Consecutive READY read failures between warnings.
READ_FAIL_WARN_EVERY = 100

_AIR_FMT = "<BBIBBI"
_AIR_QUALITY_FMT = "<HBHBHBB"
_LIGHT_FMT = "<HBH"
_SOUND_FMT = "<BB6B6BHBB"
_PARTICLE_FMT = "<BBHBB"


class CyclePeriod(Enum):
    PERIOD_3_S = 0
    PERIOD_100_S = 1
    PERIOD_300_S = 2


CYCLE_PERIOD_OPTIONS = {
    "3s": CyclePeriod.PERIOD_3_S,
    "100s": CyclePeriod.PERIOD_100_S,
    "300s": CyclePeriod.PERIOD_300_S,
}


class ParticleSensor(Enum):
    OFF = 0
    PPD42 = 1
    SDS011 = 2


PARTICLE_SENSOR_OPTIONS = {
    "off": ParticleSensor.OFF,
    "ppd42": ParticleSensor.PPD42,
    "sds011": ParticleSensor.SDS011,
}


# ---------------------------
# Measurement groups
# ---------------------------

@dataclass
class ClimateData:
    temperature: FixedPoint = FixedPoint(decimals=1)
    pressure_pa: int = 0
    humidity: FixedPoint = FixedPoint(decimals=1)
    gas_resistance_ohm: int = 0


@dataclass
class AirQualityData:
    aqi: FixedPoint = FixedPoint(decimals=1)
    co2e: FixedPoint = FixedPoint(decimals=1)
    bvoc: FixedPoint = FixedPoint(decimals=2)
    accuracy: int = 0


@dataclass
class LightData:
    illuminance: FixedPoint = FixedPoint(decimals=2)
    white: int = 0


@dataclass
class SoundData:
    spl_dba: FixedPoint = FixedPoint(decimals=1)
    bands_db: Tuple[FixedPoint, ...] = field(
        default_factory=lambda: tuple(FixedPoint(decimals=1) for _ in range(SOUND_FREQ_BANDS))
    )
    peak_amplitude_mpa: FixedPoint = FixedPoint(decimals=2)
    stable: bool = False


@dataclass
class ParticleData:
    duty_cycle: FixedPoint = FixedPoint(decimals=2)
    concentration: FixedPoint = FixedPoint(decimals=2)
    valid: bool = False


def accuracy_label(code: int) -> str:
    """Map an AQI accuracy code to its label; unknown codes read as not yet valid."""
    if not 0 <= code < len(AQI_ACCURACY_LABELS):
        return AQI_ACCURACY_LABELS[0]
    return AQI_ACCURACY_LABELS[code]


def decode_climate(raw: Sequence[int]) -> ClimateData:
    t_int, t_fr, p_pa, h_int, h_fr, g_ohm = struct.unpack(_AIR_FMT, bytes(raw))
    return ClimateData(
        temperature=FixedPoint(
            t_int & TEMPERATURE_VALUE_MASK, t_fr, 1, bool(t_int & TEMPERATURE_SIGN_MASK)
        ),
        pressure_pa=p_pa,
        humidity=FixedPoint(h_int, h_fr, 1),
        gas_resistance_ohm=g_ohm,
    )


def decode_air_quality(raw: Sequence[int]) -> AirQualityData:
    aqi_int, aqi_fr, co2_int, co2_fr, voc_int, voc_fr, accuracy = struct.unpack(_AIR_QUALITY_FMT, bytes(raw))
    return AirQualityData(
        aqi=FixedPoint(aqi_int, aqi_fr, 1),
        co2e=FixedPoint(co2_int, co2_fr, 1),
        bvoc=FixedPoint(voc_int, voc_fr, 2),
        accuracy=accuracy,
    )


def decode_light(raw: Sequence[int]) -> LightData:
    lux_int, lux_fr, white = struct.unpack(_LIGHT_FMT, bytes(raw))
    return LightData(illuminance=FixedPoint(lux_int, lux_fr, 2), white=white)


def decode_sound(raw: Sequence[int]) -> SoundData:
    vals = struct.unpack(_SOUND_FMT, bytes(raw))
    spl_int, spl_fr = vals[0], vals[1]
    band_ints = vals[2:2 + SOUND_FREQ_BANDS]
    band_frs = vals[2 + SOUND_FREQ_BANDS:2 + 2 * SOUND_FREQ_BANDS]
    peak_int, peak_fr, stable = vals[2 + 2 * SOUND_FREQ_BANDS:]
    return SoundData(
        spl_dba=FixedPoint(spl_int, spl_fr, 1),
        bands_db=tuple(FixedPoint(i, f, 1) for i, f in zip(band_ints, band_frs)),
        peak_amplitude_mpa=FixedPoint(peak_int, peak_fr, 2),
        stable=bool(stable),
    )


def decode_particle(raw: Sequence[int]) -> ParticleData:
    duty_int, duty_fr, conc_int, conc_fr, valid = struct.unpack(_PARTICLE_FMT, bytes(raw))
    return ParticleData(
        duty_cycle=FixedPoint(duty_int, duty_fr, 2),
        concentration=FixedPoint(conc_int, conc_fr, 2),
        valid=bool(valid),
    )


# ---------------------------
# READY signal
# ---------------------------

class ReadySignal:
    """
    Edge flag set by the READY line watcher and consumed by the acquisition loop.

    Both sides run on the acquisition thread (the line is polled from inside
    the wait loop), so the flag needs no lock. consume() is the only way the
    loop observes it, which keeps test-and-clear a single step.
    """

    def __init__(self) -> None:
        self._asserted = False

    def set(self) -> None:
        self._asserted = True

    def clear(self) -> None:
        self._asserted = False

    def consume(self) -> bool:
        asserted = self._asserted
        self._asserted = False
        return asserted


class GpioReadyLine:
    """
    Samples the READY pin with libgpiod's gpioget and raises the signal on a falling edge.

    Each poll spawns one gpioget process; the loop polls every ready_poll_s.
    """

    def __init__(
        self,
        line_name: str,
        signal: ReadySignal,
        log: logging.Logger,
        command: Sequence[str] = ("gpioget", "--numeric"),
        warn_every: int = READ_FAIL_WARN_EVERY,
    ) -> None:
        self.line_name = line_name
        self.signal = signal
        self.log = log
        self.command = tuple(command)
        self.warn_every = max(1, warn_every)
        self.consecutive_failures = 0
        self._last_level: Optional[int] = None

    def read_level(self) -> tuple[int, bool]:
        try:
            out = subprocess.check_output(
                [*self.command, self.line_name],
                stderr=subprocess.STDOUT,
                text=True,
                timeout=1.0,
            ).strip()
        except (OSError, subprocess.SubprocessError) as e:
            self.consecutive_failures += 1
            if (self.consecutive_failures - 1) % self.warn_every == 0:
                self.log.warning("READY line read failed (%s, %s consecutive): %s",
                                 self.line_name, self.consecutive_failures, e)
            return (1, False)

        if self.consecutive_failures:
            self.log.info("READY line readable again after %s failure(s)", self.consecutive_failures)
            self.consecutive_failures = 0
        return (0 if out == "0" else 1, True)

    def rearm(self) -> None:
        # Forget the last level so the next low sample counts as an edge.
        self._last_level = None

    def poll(self) -> bool:
        level, ok = self.read_level()
        if not ok:
            return False
        edge = level == 0 and self._last_level != 0
        self._last_level = level
        if edge:
            self.signal.set()
        return edge


# ---------------------------
# Device
# ---------------------------

def open_bus(bus_number: int) -> SMBus:
    return SMBus(bus_number)


class MS430:
    def __init__(self, bus: SMBus, address: int = I2C_ADDRESS_DEFAULT) -> None:
        self.bus = bus
        self.address = address

    def _command(self, cmd: int) -> None:
        self.bus.write_byte(self.address, cmd)

    def _write_register(self, reg: int, value: int) -> None:
        self.bus.write_byte_data(self.address, reg, value)

    def _read_block(self, reg: int, length: int) -> bytes:
        return bytes(self.bus.read_i2c_block_data(self.address, reg, length))

    def send_reset(self) -> None:
        self._command(RESET_CMD)

    def set_particle_sensor_mode(self, mode: ParticleSensor) -> None:
        self._write_register(PARTICLE_SENSOR_SELECT_REG, mode.value)

    def set_cycle_period(self, period: CyclePeriod) -> None:
        self._write_register(CYCLE_TIME_PERIOD_REG, period.value)

    def enter_cycle_mode(self) -> None:
        self._command(CYCLE_MODE_CMD)

    def enter_standby_mode(self) -> None:
        self._command(STANDBY_MODE_CMD)

    def read_climate(self) -> ClimateData:
        return decode_climate(self._read_block(AIR_DATA_READ, AIR_DATA_BYTES))

    def read_air_quality(self) -> AirQualityData:
        return decode_air_quality(self._read_block(AIR_QUALITY_DATA_READ, AIR_QUALITY_DATA_BYTES))

    def read_light(self) -> LightData:
        return decode_light(self._read_block(LIGHT_DATA_READ, LIGHT_DATA_BYTES))

    def read_sound(self) -> SoundData:
        return decode_sound(self._read_block(SOUND_DATA_READ, SOUND_DATA_BYTES))

    def read_particle(self) -> ParticleData:
        return decode_particle(self._read_block(PARTICLE_DATA_READ, PARTICLE_DATA_BYTES))

    def close(self) -> None:
        self.bus.close()
