"""
Topic layout, value payloads and Home Assistant MQTT discovery for the MS430.

State topics:      <topic_base>/<category>/<measurement>   payload {"value": ...}
Discovery topics:  <discovery_prefix>/sensor/<device_id>/<identifier>/config  (retained)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple, Union

import paho.mqtt.client as mqtt

from ms430 import AQI_ACCURACY_LABELS, SOUND_BAND_MIDS_HZ, ParticleSensor
from units import UnitSystem, display_temperature_unit


CLIMATE = "climate"
AIR_QUALITY = "airquality"
LIGHT = "light"
SOUND = "sound"
PARTICLES = "particles"

CATEGORY_ORDER = (CLIMATE, AIR_QUALITY, LIGHT, SOUND, PARTICLES)

VALUE_TEMPLATE = "{{ value_json.value }}"
STATE_CLASS = "measurement"
PAYLOAD_ONLINE = "online"
PAYLOAD_OFFLINE = "offline"

# (device_class, unit) of the concentration reading per sensor model
PARTICLE_CONCENTRATION_UNITS = {
    ParticleSensor.PPD42: (None, "ppL"),
    ParticleSensor.SDS011: ("pm25", "µg/m³"),
}


@dataclass(frozen=True)
class Descriptor:
    name: str
    identifier: str
    category: str
    measurement: str
    icon: str
    device_class: Optional[str] = None
    unit: Optional[str] = None
    options: Optional[Tuple[str, ...]] = None

    @property
    def is_enum(self) -> bool:
        return self.options is not None


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str
    name: str
    manufacturer: str = "Metriful"
    model: str = "MS430"

    def block(self) -> dict[str, Any]:
        return {
            "identifiers": [self.device_id],
            "name": self.name,
            "manufacturer": self.manufacturer,
            "model": self.model,
        }


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def build_topic(base: str, category: str, measurement: str) -> str:
    return f"{base}/{category}/{measurement}"


def wrap_value(value: Union[int, float, str]) -> str:
    return json_dumps({"value": value})


def build_descriptors(unit_system: UnitSystem, particle_sensor: ParticleSensor) -> list[Descriptor]:
    """Return the published measurements in discovery order for this configuration."""
    descriptors = [
        Descriptor("Temperature", "temperature", CLIMATE, "temperature", "mdi:thermometer",
                   "temperature", display_temperature_unit(unit_system).value),
        Descriptor("Air pressure", "pressure", CLIMATE, "pressure", "mdi:weather-partly-rainy",
                   "atmospheric_pressure", "Pa"),
        Descriptor("Humidity", "humidity", CLIMATE, "humidity", "mdi:cloud-percent",
                   "humidity", "%"),
        Descriptor("Gas sensor resistance", "gas_resistance", CLIMATE, "gas_resistance", "mdi:scent",
                   None, "Ω"),
        Descriptor("Air quality index", "aqi", AIR_QUALITY, "aqi", "mdi:flower-tulip-outline",
                   "aqi"),
        Descriptor("Air quality accuracy", "aqi_accuracy", AIR_QUALITY, "accuracy", "mdi:magnify",
                   options=AQI_ACCURACY_LABELS),
        Descriptor("Illuminance", "illuminance", LIGHT, "illuminance", "mdi:white-balance-sunny",
                   "illuminance", "lx"),
        Descriptor("White light level", "white_level", LIGHT, "white_level", "mdi:circle-outline"),
        Descriptor("Sound pressure level", "spl", SOUND, "spl", "mdi:microphone",
                   "sound_pressure", "dBA"),
        Descriptor("Peak sound amplitude", "peak_amplitude", SOUND, "peak_amplitude", "mdi:waveform",
                   None, "mPa"),
    ]
    for hz in SOUND_BAND_MIDS_HZ:
        descriptors.append(
            Descriptor(f"SPL at {hz} Hz", f"band_{hz}hz", SOUND, f"band_{hz}hz", "mdi:sine-wave",
                       "sound_pressure", "dB")
        )

    if particle_sensor != ParticleSensor.OFF:
        concentration_class, concentration_unit = PARTICLE_CONCENTRATION_UNITS[particle_sensor]
        descriptors.append(Descriptor("Particle sensor duty cycle", "particle_duty_cycle", PARTICLES,
                                      "duty_cycle", "mdi:percent", None, "%"))
        descriptors.append(Descriptor("Particle concentration", "particle_concentration", PARTICLES,
                                      "concentration", "mdi:chart-bubble",
                                      concentration_class, concentration_unit))

    return descriptors


def discovery_topic(discovery_prefix: str, device_id: str, descriptor: Descriptor) -> str:
    return f"{discovery_prefix}/sensor/{device_id}/{descriptor.identifier}/config"


def discovery_payload(
    descriptor: Descriptor,
    device: DeviceInfo,
    topic_base: str,
    availability_topic: str,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": descriptor.name,
        "unique_id": f"{device.device_id}_{descriptor.identifier}",
        "state_topic": build_topic(topic_base, descriptor.category, descriptor.measurement),
        "value_template": VALUE_TEMPLATE,
    }
    if descriptor.is_enum:
        payload["device_class"] = "enum"
        payload["options"] = list(descriptor.options or ())
    else:
        if descriptor.unit is not None:
            payload["unit_of_measurement"] = descriptor.unit
        if descriptor.device_class is not None:
            payload["device_class"] = descriptor.device_class
        payload["state_class"] = STATE_CLASS
    payload["icon"] = descriptor.icon
    payload["availability_topic"] = availability_topic
    payload["payload_available"] = PAYLOAD_ONLINE
    payload["payload_not_available"] = PAYLOAD_OFFLINE
    payload["device"] = device.block()
    return payload


def publish_discovery(
    client: mqtt.Client,
    descriptors: Sequence[Descriptor],
    device: DeviceInfo,
    topic_base: str,
    discovery_prefix: str,
    availability_topic: str,
    log: logging.Logger,
    pacing_s: float = 0.1,
    qos: int = 0,
) -> int:
    """Publish one retained discovery config per descriptor. Returns the number accepted by the client."""
    published = 0
    for i, descriptor in enumerate(descriptors):
        if i:
            time.sleep(pacing_s)
        topic = discovery_topic(discovery_prefix, device.device_id, descriptor)
        payload = discovery_payload(descriptor, device, topic_base, availability_topic)
        info = client.publish(topic, json_dumps(payload), qos=qos, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log.warning("Discovery publish failed for %s (rc=%s)", descriptor.identifier, info.rc)
            continue
        published += 1

    log.info("Published MQTT Discovery entities (device_id=%s count=%s)", device.device_id, published)
    return published
