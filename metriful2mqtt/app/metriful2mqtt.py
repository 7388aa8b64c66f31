#!/usr/bin/env python3
"""
metriful2mqtt.py: Metriful MS430 -> MQTT bridge with Home Assistant discovery.

Cycle:
  1) Ensure the MQTT session (last will armed, discovery + "online" on connect)
  2) Wait for the READY falling edge, servicing MQTT while waiting
  3) Read climate, air quality, light, sound (and particle, if configured)
  4) Validate the climate group:
     - valid   -> publish every measurement as {"value": ...}
     - invalid -> soft reset the board; after 3 in a row exit for restart

Topics (base = <topic_base>, default home/office):
- <base>/<category>/<measurement>   (NOT retained)
- <base>/status                     ("online"/"offline"; retained, also the last will)
- <discovery_prefix>/sensor/<device_id>/<identifier>/config   (retained)
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Any, Optional, Union

import paho.mqtt.client as mqtt

from connectivity import MqttConfig, MqttSupervisor, mqtt_make_client
from ha_discovery import DeviceInfo, build_descriptors, build_topic, publish_discovery, wrap_value
from ms430 import (
    CYCLE_PERIOD_OPTIONS,
    I2C_ADDRESS_DEFAULT,
    MS430,
    PARTICLE_SENSOR_OPTIONS,
    SOUND_BAND_MIDS_HZ,
    AirQualityData,
    ClimateData,
    CyclePeriod,
    GpioReadyLine,
    LightData,
    ParticleData,
    ParticleSensor,
    ReadySignal,
    SoundData,
    accuracy_label,
    open_bus,
)
from recovery import (
    DEFAULT_MAX_FAILURES,
    FailureTracker,
    RecoveryAction,
    is_valid_climate,
    restart_process,
)
from units import UnitSystem, temperature_for_display


DEFAULT_OPTIONS_PATH = "/data/options.json"
OPTIONS_ENV = "METRIFUL2MQTT_OPTIONS"

RESTART_MODES = ("exit", "exec")


class ShutdownRequested(Exception):
    """Raised from the signal handler; cleanup runs on the main path, not in the handler."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"signal {signum}")
        self.signum = signum


# ---------------------------
# Config
# ---------------------------

@dataclass
class SensorConfig:
    device_id: str
    device_name: str
    i2c_bus: int
    i2c_address: int
    ready_gpio: str
    ready_poll_s: float
    cycle_period: CyclePeriod
    particle_sensor: ParticleSensor


@dataclass
class RecoveryConfig:
    max_failures: int
    restart_delay_s: float
    restart_mode: str


@dataclass
class BridgeConfig:
    mqtt: MqttConfig
    sensor: SensorConfig
    recovery: RecoveryConfig
    units: UnitSystem
    debug: bool

    @property
    def status_topic(self) -> str:
        return f"{self.mqtt.topic_base}/status"


def load_options(path: Optional[str] = None) -> dict[str, Any]:
    path = path or os.environ.get(OPTIONS_ENV) or DEFAULT_OPTIONS_PATH
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def parse_mqtt_cfg(opts: dict[str, Any]) -> MqttConfig:
    m = opts.get("mqtt", {}) or {}
    return MqttConfig(
        host=m.get("host", "core-mosquitto"),
        port=int(m.get("port", 1883)),
        username=(m.get("username") or None),
        password=(m.get("password") or None),
        topic_base=str(m.get("topic_base", "home/office")).rstrip("/"),
        discovery_prefix=m.get("discovery_prefix", "homeassistant"),
        discovery=bool(m.get("discovery", True)),
        discovery_pacing_s=float(m.get("discovery_pacing_s", 0.1)),
        retry_s=float(m.get("retry_s", 1.0)),
        keepalive=int(m.get("keepalive", 60)),
        qos=int(m.get("qos", 0)),
        connect_timeout_s=float(m.get("connect_timeout_s", 5.0)),
    )


def parse_sensor_cfg(opts: dict[str, Any]) -> SensorConfig:
    s = opts.get("metriful", {}) or {}

    cycle = str(s.get("cycle_period", "100s")).lower()
    if cycle not in CYCLE_PERIOD_OPTIONS:
        cycle = "100s"
    particle = str(s.get("particle_sensor", "off")).lower()
    if particle not in PARTICLE_SENSOR_OPTIONS:
        particle = "off"

    address = s.get("i2c_address", I2C_ADDRESS_DEFAULT)
    if isinstance(address, str):
        address = int(address, 0)

    return SensorConfig(
        device_id=s.get("device_id", "metriful"),
        device_name=s.get("device_name", "Metriful MS430"),
        i2c_bus=int(s.get("i2c_bus", 1)),
        i2c_address=int(address),
        ready_gpio=s.get("ready_gpio", "GPIO17"),
        ready_poll_s=float(s.get("ready_poll_s", 0.1)),
        cycle_period=CYCLE_PERIOD_OPTIONS[cycle],
        particle_sensor=PARTICLE_SENSOR_OPTIONS[particle],
    )


def parse_recovery_cfg(opts: dict[str, Any]) -> RecoveryConfig:
    r = opts.get("recovery", {}) or {}
    max_failures = int(r.get("max_failures", DEFAULT_MAX_FAILURES))
    if max_failures < 1:
        max_failures = DEFAULT_MAX_FAILURES
    mode = r.get("restart_mode", "exit")
    if mode not in RESTART_MODES:
        mode = "exit"
    return RecoveryConfig(
        max_failures=max_failures,
        restart_delay_s=float(r.get("restart_delay_s", 2.0)),
        restart_mode=mode,
    )


def parse_units(opts: dict[str, Any]) -> UnitSystem:
    try:
        return UnitSystem(str(opts.get("units", "metric")).lower())
    except ValueError:
        return UnitSystem.METRIC


def parse_bridge_cfg(opts: dict[str, Any]) -> BridgeConfig:
    return BridgeConfig(
        mqtt=parse_mqtt_cfg(opts),
        sensor=parse_sensor_cfg(opts),
        recovery=parse_recovery_cfg(opts),
        units=parse_units(opts),
        debug=bool(opts.get("debug", False)),
    )


# ---------------------------
# Logging
# ---------------------------

def setup_logging(debug: bool) -> logging.Logger:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    log = logging.getLogger("metriful2mqtt")
    log.setLevel(level)
    return log


# ---------------------------
# Bridge
# ---------------------------

class Bridge:
    """Owns the device, the MQTT session and the latest measurement groups."""

    def __init__(
        self,
        cfg: BridgeConfig,
        device: MS430,
        client: mqtt.Client,
        ready: ReadySignal,
        ready_line: GpioReadyLine,
        log: logging.Logger,
    ) -> None:
        self.cfg = cfg
        self.device = device
        self.client = client
        self.ready = ready
        self.ready_line = ready_line
        self.log = log

        self.device_info = DeviceInfo(cfg.sensor.device_id, cfg.sensor.device_name)
        self.descriptors = build_descriptors(cfg.units, cfg.sensor.particle_sensor)
        self.failures = FailureTracker(cfg.recovery.max_failures)
        self.supervisor = MqttSupervisor(
            client,
            cfg.mqtt,
            log,
            availability_topic=cfg.status_topic,
            on_first_connect=self.publish_discovery,
        )

        self.climate = ClimateData()
        self.air_quality = AirQualityData()
        self.light = LightData()
        self.sound = SoundData()
        self.particle = ParticleData()

    @property
    def particle_enabled(self) -> bool:
        return self.cfg.sensor.particle_sensor != ParticleSensor.OFF

    # --- MQTT ---

    def publish_discovery(self) -> None:
        if not self.cfg.mqtt.discovery:
            return
        publish_discovery(
            self.client,
            self.descriptors,
            self.device_info,
            topic_base=self.cfg.mqtt.topic_base,
            discovery_prefix=self.cfg.mqtt.discovery_prefix,
            availability_topic=self.cfg.status_topic,
            log=self.log,
            pacing_s=self.cfg.mqtt.discovery_pacing_s,
            qos=self.cfg.mqtt.qos,
        )

    def measurement_values(self) -> dict[str, Union[int, float, str]]:
        values: dict[str, Union[int, float, str]] = {
            "temperature": temperature_for_display(self.climate.temperature, self.cfg.units),
            "pressure": self.climate.pressure_pa,
            "humidity": self.climate.humidity.to_float(),
            "gas_resistance": self.climate.gas_resistance_ohm,
            "aqi": self.air_quality.aqi.to_float(),
            "aqi_accuracy": accuracy_label(self.air_quality.accuracy),
            "illuminance": self.light.illuminance.to_float(),
            "white_level": self.light.white,
            "spl": self.sound.spl_dba.to_float(),
            "peak_amplitude": self.sound.peak_amplitude_mpa.to_float(),
        }
        for hz, band in zip(SOUND_BAND_MIDS_HZ, self.sound.bands_db):
            values[f"band_{hz}hz"] = band.to_float()
        if self.particle_enabled:
            values["particle_duty_cycle"] = self.particle.duty_cycle.to_float()
            values["particle_concentration"] = self.particle.concentration.to_float()
        return values

    def publish_measurements(self) -> int:
        values = self.measurement_values()
        published = 0
        for descriptor in self.descriptors:
            topic = build_topic(self.cfg.mqtt.topic_base, descriptor.category, descriptor.measurement)
            if self.supervisor.publish(topic, wrap_value(values[descriptor.identifier])):
                published += 1
        self.log.debug("Published %s/%s measurements", published, len(self.descriptors))
        return published

    # --- Device ---

    def _arm_ready(self) -> None:
        self.ready.clear()
        self.ready_line.rearm()

    def wait_for_ready(self) -> None:
        while True:
            self.supervisor.ensure_connected()
            self.ready_line.poll()
            if self.ready.consume():
                return
            self.supervisor.service(timeout=self.cfg.sensor.ready_poll_s)

    def configure_device(self) -> None:
        self.device.set_particle_sensor_mode(self.cfg.sensor.particle_sensor)
        self.device.set_cycle_period(self.cfg.sensor.cycle_period)
        self._arm_ready()
        self.device.enter_cycle_mode()

    def soft_reset(self) -> bool:
        """Reset and reconfigure the board. Returns False if a bus write failed."""
        self.log.info("Resetting MS430 (particle_sensor=%s cycle_period=%s)",
                      self.cfg.sensor.particle_sensor.name, self.cfg.sensor.cycle_period.name)
        try:
            self._arm_ready()
            self.device.send_reset()
            self.wait_for_ready()
            self.configure_device()
        except OSError as e:
            self.log.warning("MS430 reset failed: %s", e)
            return False
        return True

    def read_all(self) -> bool:
        try:
            self.climate = self.device.read_climate()
            self.air_quality = self.device.read_air_quality()
            self.light = self.device.read_light()
            self.sound = self.device.read_sound()
            if self.particle_enabled:
                self.particle = self.device.read_particle()
        except OSError as e:
            self.log.warning("MS430 read failed: %s", e)
            return False
        return True

    # --- Loop ---

    def handle_invalid_read(self) -> RecoveryAction:
        # A failed reset is one more fault in the same run.
        while True:
            action = self.failures.record_invalid()
            self.log.warning("MS430 fault (%s/%s consecutive, state=%s)",
                             self.failures.count, self.failures.threshold, self.failures.state.value)
            if action == RecoveryAction.RESTART:
                restart_process(self.log, self.cfg.recovery.restart_delay_s, self.cfg.recovery.restart_mode)
                return action
            if self.soft_reset():
                return action

    def start(self) -> None:
        self.supervisor.ensure_connected()
        if not self.soft_reset():
            self.handle_invalid_read()

    def run_cycle(self) -> RecoveryAction:
        self.supervisor.ensure_connected()
        self.wait_for_ready()

        if not self.read_all() or not is_valid_climate(self.climate):
            return self.handle_invalid_read()

        if self.failures.count:
            self.log.info("MS430 reads recovered after %s failure(s)", self.failures.count)
        self.failures.record_valid()
        self.publish_measurements()
        return RecoveryAction.NONE

    def run_forever(self) -> None:
        self.log.info("Publishing topics base=%s (%s measurements)", self.cfg.mqtt.topic_base, len(self.descriptors))
        while True:
            self.run_cycle()

    def serve(self) -> None:
        """Start the device and loop until a shutdown signal arrives."""
        try:
            self.start()
            self.run_forever()
        except ShutdownRequested as e:
            self.log.info("Received signal %s; going offline", e.signum)
            self.shutdown()

    def shutdown(self) -> None:
        self.supervisor.go_offline()
        try:
            self.device.enter_standby_mode()
        except OSError as e:
            self.log.debug("MS430 standby failed: %s", e)
        self.device.close()


# ---------------------------
# Main
# ---------------------------

def request_shutdown(signum, _frame):
    raise ShutdownRequested(signum)


def main() -> None:
    opts = load_options()
    cfg = parse_bridge_cfg(opts)
    log = setup_logging(cfg.debug)

    log.info("Starting metriful2mqtt")
    log.info("Config: units=%s cycle_period=%s particle_sensor=%s debug=%s",
             cfg.units.value, cfg.sensor.cycle_period.name, cfg.sensor.particle_sensor.name, cfg.debug)
    log.info("MQTT: host=%s port=%s topic_base=%s discovery_prefix=%s discovery=%s",
             cfg.mqtt.host, cfg.mqtt.port, cfg.mqtt.topic_base, cfg.mqtt.discovery_prefix, cfg.mqtt.discovery)
    log.info("MS430: i2c_bus=%s i2c_address=0x%02x ready_gpio=%s ready_poll_s=%s",
             cfg.sensor.i2c_bus, cfg.sensor.i2c_address, cfg.sensor.ready_gpio, cfg.sensor.ready_poll_s)
    log.info("Recovery: max_failures=%s restart_delay_s=%s restart_mode=%s",
             cfg.recovery.max_failures, cfg.recovery.restart_delay_s, cfg.recovery.restart_mode)

    device = MS430(open_bus(cfg.sensor.i2c_bus), cfg.sensor.i2c_address)
    ready = ReadySignal()
    ready_line = GpioReadyLine(cfg.sensor.ready_gpio, ready, log)
    client = mqtt_make_client(cfg.mqtt, client_id=f"metriful2mqtt-{cfg.sensor.device_id}")

    bridge = Bridge(cfg, device, client, ready, ready_line, log)

    signal.signal(signal.SIGTERM, request_shutdown)
    signal.signal(signal.SIGINT, request_shutdown)

    bridge.serve()


if __name__ == "__main__":
    main()
