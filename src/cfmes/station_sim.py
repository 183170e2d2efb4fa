"""Simulated remote station speaking the MQTT station contract.

Useful to run the whole line locally against a broker:

    cfmes simulate --role assembly
    cfmes simulate --role test
    cfmes simulate --role packaging
    cfmes run

State machine: Execute moves Ready -> WorkInProgress; after a random work
time the station ends in Done, Discarded or Fault. Reset returns it to
Ready from any state.
"""

import json
import logging
import random
import threading
import time
from typing import Any, List, Optional, Tuple

import paho.mqtt.client as mqtt

from .config import MQTTConfig, SimulationConfig
from .station_client import (
    EXECUTE_METHOD_ID,
    METHODS_OBJECT_ID,
    OPEN_PRESSURE_RELEASE_VALVE_METHOD_ID,
    PRODUCT_SERIAL_NUMBER_NODE_ID,
    RESET_METHOD_ID,
    STATUS_BAD_INVALID_STATE,
    STATUS_BAD_METHOD_INVALID,
    STATUS_GOOD,
    STATUS_NODE_ID,
    Endpoint,
)
from .stations import StationRole, StationStatus

logger = logging.getLogger(__name__)


class StationSimulator:
    """One simulated station."""

    def __init__(
        self,
        role: StationRole,
        endpoint: str,
        mqtt_config: Optional[MQTTConfig] = None,
        sim_config: Optional[SimulationConfig] = None,
        mqtt_client: Optional[Any] = None,
    ):
        self.role = StationRole(role)
        self.endpoint = Endpoint.parse(endpoint)
        self.mqtt_config = mqtt_config or MQTTConfig()
        self.sim_config = sim_config or SimulationConfig()
        self._rng = random.Random(self.sim_config.random_seed)

        self.status = StationStatus.READY
        self.product_serial_number = 0
        self.current_shift = 0
        self._state_since = time.monotonic()
        self._work_duration = 0.0

        self._client = mqtt_client
        self._lock = threading.Lock()
        self._running = False
        self._tick_thread: Optional[threading.Thread] = None

        # Stats
        self.products_done = 0
        self.products_discarded = 0
        self.faults = 0

    @property
    def name(self) -> str:
        return f"Simulated{self.role.value.capitalize()}Station"

    def start(self) -> bool:
        """Connect to the broker and start the tick loop."""
        if self._client is None:
            self._client = mqtt.Client(
                client_id=f"{self.mqtt_config.client_id}-sim-{self.role.value}",
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            )
            if self.mqtt_config.username:
                self._client.username_pw_set(self.mqtt_config.username, self.mqtt_config.password)
            try:
                self._client.connect(self.endpoint.host, self.endpoint.port, keepalive=self.mqtt_config.keepalive_s)
            except Exception as e:
                logger.error(f"{self.name}: failed to connect to {self.endpoint}: {e}")
                return False

        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.loop_start()

        self._running = True
        self._tick_thread = threading.Thread(target=self._tick_loop, name=f"sim-{self.role.value}", daemon=True)
        self._tick_thread.start()
        logger.info(f"{self.name} serving {self.endpoint}")
        return True

    def stop(self) -> None:
        self._running = False
        if self._tick_thread:
            self._tick_thread.join(timeout=2)
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
        logger.info(
            f"{self.name} stopped: {self.products_done} done, "
            f"{self.products_discarded} discarded, {self.faults} fault(s)"
        )

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def handle_call(self, method_id: str, args: List[Any]) -> Tuple[int, List[Any]]:
        """Run a station method. Returns (status code, results)."""
        with self._lock:
            if method_id == EXECUTE_METHOD_ID:
                return self._execute(args)
            if method_id == RESET_METHOD_ID:
                self._set_status(StationStatus.READY)
                return STATUS_GOOD, []
            if method_id == OPEN_PRESSURE_RELEASE_VALVE_METHOD_ID:
                logger.info(f"{self.name}: pressure release valve opened")
                return STATUS_GOOD, []
        logger.warning(f"{self.name}: unknown method {method_id}")
        return STATUS_BAD_METHOD_INVALID, []

    def _execute(self, args: List[Any]) -> Tuple[int, List[Any]]:
        if self.status != StationStatus.READY:
            logger.warning(f"{self.name}: Execute rejected, station is {self.status.name}")
            return STATUS_BAD_INVALID_STATE, []
        try:
            shift, serial = int(args[0]), int(args[1])
        except (IndexError, TypeError, ValueError):
            logger.warning(f"{self.name}: Execute called with invalid arguments {args}")
            return STATUS_BAD_INVALID_STATE, []

        self.current_shift = shift
        self.product_serial_number = serial
        low, high = self.sim_config.work_time_range_s
        self._work_duration = self._rng.uniform(low, high)
        self._set_status(StationStatus.WORK_IN_PROGRESS)
        logger.info(f"{self.name}: working on #{serial} (shift {shift}) for {self._work_duration:.1f}s")
        return STATUS_GOOD, []

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _tick_loop(self) -> None:
        interval = self.sim_config.tick_interval_ms / 1000.0
        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"{self.name}: error in tick loop: {e}")
            time.sleep(interval)

    def tick(self, now: Optional[float] = None) -> None:
        """Finish the current work item once its work time has elapsed."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            if self.status != StationStatus.WORK_IN_PROGRESS:
                return
            if now - self._state_since < self._work_duration:
                return

            roll = self._rng.random()
            if roll < self.sim_config.fault_probability:
                self.faults += 1
                logger.info(f"{self.name}: fault while working on #{self.product_serial_number}")
                self._set_status(StationStatus.FAULT, now)
            elif roll < self.sim_config.fault_probability + self.sim_config.discard_probability:
                self.products_discarded += 1
                self._set_status(StationStatus.DISCARDED, now)
            else:
                self.products_done += 1
                self._set_status(StationStatus.DONE, now)

    def _set_status(self, status: StationStatus, now: Optional[float] = None) -> None:
        self.status = status
        self._state_since = time.monotonic() if now is None else now
        self._publish_values()

    def _publish_values(self) -> None:
        if not self._client:
            return
        self._client.publish(
            self.endpoint.topic(PRODUCT_SERIAL_NUMBER_NODE_ID),
            json.dumps({"value": self.product_serial_number}),
            qos=self.mqtt_config.qos,
            retain=True,
        )
        self._client.publish(
            self.endpoint.topic(STATUS_NODE_ID),
            json.dumps({"value": int(self.status)}),
            qos=self.mqtt_config.qos,
            retain=True,
        )

    # ------------------------------------------------------------------
    # MQTT callbacks
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        if rc != 0:
            logger.error(f"{self.name}: connection failed with code {rc}")
            return
        client.subscribe(self.endpoint.topic(METHODS_OBJECT_ID, "+", "request"), qos=self.mqtt_config.qos)
        with self._lock:
            self._publish_values()
        logger.info(f"{self.name}: connected, status {self.status.name}")

    def _on_message(self, client, userdata, msg) -> None:
        parts = msg.topic.split("/")
        if len(parts) < 3 or parts[-1] != "request":
            return
        method_id = parts[-2]
        try:
            request = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"{self.name}: malformed request on {msg.topic}: {e}")
            return

        status_code, results = self.handle_call(method_id, list(request.get("args") or []))
        response = {
            "request_id": request.get("request_id"),
            "status_code": status_code,
            "results": results,
        }
        client.publish(
            self.endpoint.topic(METHODS_OBJECT_ID, method_id, "response"),
            json.dumps(response),
            qos=self.mqtt_config.qos,
        )
