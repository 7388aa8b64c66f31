"""
MQTT session maintenance.

The client is driven cooperatively with Client.loop(); there is no network
thread. ensure_connected() blocks until a session exists, servicing the
client while each attempt is in flight and pausing retry_s between attempts.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from ha_discovery import PAYLOAD_OFFLINE, PAYLOAD_ONLINE


@dataclass
class MqttConfig:
    host: str
    port: int
    username: Optional[str]
    password: Optional[str]
    topic_base: str
    discovery_prefix: str
    discovery: bool
    discovery_pacing_s: float = 0.1
    retry_s: float = 1.0
    keepalive: int = 60
    qos: int = 0
    connect_timeout_s: float = 5.0


def mqtt_make_client(cfg: MqttConfig, client_id: str) -> mqtt.Client:
    client = mqtt.Client(client_id=client_id, callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    if cfg.username and cfg.password:
        client.username_pw_set(cfg.username, cfg.password)
    return client


class MqttSupervisor:
    def __init__(
        self,
        client: mqtt.Client,
        cfg: MqttConfig,
        log: logging.Logger,
        availability_topic: str,
        on_first_connect: Optional[Callable[[], None]] = None,
        loop_timeout_s: float = 0.05,
    ) -> None:
        self.client = client
        self.cfg = cfg
        self.log = log
        self.availability_topic = availability_topic
        self.on_first_connect = on_first_connect
        self.loop_timeout_s = loop_timeout_s
        self.state: dict[str, Any] = {
            "connected": False,
            "connects": 0,
            "last_connect_ts": None,
            "last_disconnect_ts": None,
        }

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect

    def _on_connect(self, _client, _userdata, _flags, reason_code, _props=None):
        if getattr(reason_code, "is_failure", False):
            self.log.warning("MQTT connection refused by %s:%s (reason_code=%s)", self.cfg.host, self.cfg.port, reason_code)
            return
        self.state["connected"] = True
        self.state["last_connect_ts"] = int(time.time())
        self.log.info("MQTT connected to %s:%s (reason_code=%s)", self.cfg.host, self.cfg.port, reason_code)

    def _on_disconnect(self, _client, _userdata, _flags, reason_code, _props=None):
        self.state["connected"] = False
        self.state["last_disconnect_ts"] = int(time.time())
        if reason_code == 0:
            self.log.info("MQTT disconnected cleanly")
        else:
            self.log.warning("MQTT disconnected (reason_code=%s)", reason_code)

    def is_connected(self) -> bool:
        return bool(self.client.is_connected())

    def service(self, timeout: Optional[float] = None) -> int:
        """Run one pass of the client's network loop."""
        return self.client.loop(timeout=self.loop_timeout_s if timeout is None else timeout)

    def _attempt(self) -> bool:
        self.client.will_set(self.availability_topic, payload=PAYLOAD_OFFLINE, qos=self.cfg.qos, retain=True)
        try:
            self.client.connect(self.cfg.host, self.cfg.port, keepalive=self.cfg.keepalive)
        except OSError as e:
            self.log.warning("MQTT connect to %s:%s failed: %s", self.cfg.host, self.cfg.port, e)
            return False

        deadline = time.monotonic() + self.cfg.connect_timeout_s
        while True:
            self.service()
            if self.is_connected():
                return True
            if time.monotonic() >= deadline:
                self.log.warning("MQTT connect to %s:%s timed out after %.1fs",
                                 self.cfg.host, self.cfg.port, self.cfg.connect_timeout_s)
                return False

    def ensure_connected(self) -> bool:
        """Block until connected. Returns True if a new session had to be established."""
        if self.is_connected():
            return False

        attempt = 0
        while True:
            attempt += 1
            if attempt == 1:
                self.log.info("Connecting to MQTT broker %s:%s", self.cfg.host, self.cfg.port)
            if self._attempt():
                break
            self.log.debug("MQTT connect attempt %s failed; retrying in %.1fs", attempt, self.cfg.retry_s)
            time.sleep(self.cfg.retry_s)

        self.state["connects"] += 1
        if self.state["connects"] == 1 and self.on_first_connect is not None:
            self.on_first_connect()
        self.publish(self.availability_topic, PAYLOAD_ONLINE, retain=True)
        return True

    def publish(self, topic: str, payload: str, retain: bool = False) -> bool:
        info = self.client.publish(topic, payload, qos=self.cfg.qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.log.warning("MQTT publish to %s failed (rc=%s)", topic, info.rc)
            return False
        return True

    def go_offline(self) -> None:
        """Announce offline and close the session cleanly."""
        if not self.is_connected():
            return
        self.publish(self.availability_topic, PAYLOAD_OFFLINE, retain=True)
        self.service()
        self.client.disconnect()
