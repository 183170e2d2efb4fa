"""Station transport: the interface a StationProxy talks to, and its MQTT implementation.

Station contract over MQTT, relative to the endpoint's base topic:

- ``<base>/Status`` and ``<base>/ProductSerialNumber`` are retained value
  topics carrying ``{"value": <int>}``.
- ``<base>/Methods/<Method>/request`` receives ``{"request_id", "args"}``,
  the station answers on ``<base>/Methods/<Method>/response`` with
  ``{"request_id", "status_code", "results"}``.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

STATUS_NODE_ID = "Status"
PRODUCT_SERIAL_NUMBER_NODE_ID = "ProductSerialNumber"
METHODS_OBJECT_ID = "Methods"
EXECUTE_METHOD_ID = "Execute"
RESET_METHOD_ID = "Reset"
OPEN_PRESSURE_RELEASE_VALVE_METHOD_ID = "OpenPressureReleaseValve"

VALUE_NODE_IDS = (STATUS_NODE_ID, PRODUCT_SERIAL_NUMBER_NODE_ID)

STATUS_GOOD = 0
STATUS_BAD = 0x80000000
STATUS_BAD_INVALID_STATE = 0x80AF0000
STATUS_BAD_METHOD_INVALID = 0x80750000

DEFAULT_MQTT_PORT = 1883

NotificationHandler = Callable[[Any], None]
SessionCallback = Callable[[Any], None]


@dataclass
class CallResult:
    """Outcome of a remote method call."""

    status_code: int = STATUS_GOOD
    results: List[Any] = field(default_factory=list)

    @property
    def is_bad(self) -> bool:
        return bool(self.status_code & STATUS_BAD)


class StationClient(ABC):
    """Connect/read/call/subscribe against a remote station."""

    @abstractmethod
    def connect(
        self,
        endpoint: str,
        on_keep_alive_failed: Optional[SessionCallback] = None,
        on_reconnected: Optional[SessionCallback] = None,
    ) -> Any:
        """Open a session. Raises TransportError when the station is unreachable."""

    @abstractmethod
    def read_value(self, session: Any, node_id: str) -> Any:
        """Read a value node. Raises TransportError."""

    @abstractmethod
    def call(self, session: Any, object_id: str, method_id: str, args: List[Any]) -> CallResult:
        """Invoke a method. Raises TransportError."""

    @abstractmethod
    def subscribe(self, session: Any, node_id: str, handler: NotificationHandler) -> None:
        """Deliver the current value, then every change, to ``handler``."""

    @abstractmethod
    def close(self, session: Any) -> None:
        """Release the session."""


@dataclass
class Endpoint:
    """Parsed ``mqtt://host[:port]/<base topic>`` station endpoint."""

    host: str
    port: int
    base_topic: str

    @classmethod
    def parse(cls, url: str) -> "Endpoint":
        parsed = urlparse(url)
        if parsed.scheme not in ("mqtt", "tcp") or not parsed.hostname:
            raise ConfigurationError(f"The endpoint URL '{url}' has an invalid format!")
        base_topic = parsed.path.strip("/")
        if not base_topic:
            raise ConfigurationError(f"The endpoint URL '{url}' has no station topic!")
        try:
            port = parsed.port or DEFAULT_MQTT_PORT
        except ValueError as e:
            raise ConfigurationError(f"The endpoint URL '{url}' has an invalid port!") from e
        return cls(host=parsed.hostname, port=port, base_topic=base_topic)

    def topic(self, *parts: str) -> str:
        return "/".join((self.base_topic,) + parts)

    def __str__(self) -> str:
        return f"mqtt://{self.host}:{self.port}/{self.base_topic}"


class _PendingCall:
    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[CallResult] = None


class MqttSession:
    """One broker connection serving one station.

    Notifications are handed to a dispatcher thread so handlers may block
    (on the station control lock, or on a method call) without stalling
    the paho network loop.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        mqtt_config: MQTTConfig,
        on_keep_alive_failed: Optional[SessionCallback] = None,
        on_reconnected: Optional[SessionCallback] = None,
    ):
        self.endpoint = endpoint
        self.mqtt_config = mqtt_config
        self.on_keep_alive_failed = on_keep_alive_failed
        self.on_reconnected = on_reconnected

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._reconnecting = False
        self._closing = False

        self._values: Dict[str, Any] = {}
        self._values_changed = threading.Condition()
        self._handlers: Dict[str, List[NotificationHandler]] = {}

        self._pending: Dict[str, _PendingCall] = {}
        self._pending_lock = threading.Lock()

        self._notifications: "Queue[tuple]" = Queue()
        self._dispatch_thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def reconnecting(self) -> bool:
        return self._reconnecting

    def open(self, connect_timeout: float) -> None:
        client_id = f"{self.mqtt_config.client_id}-{self.endpoint.base_topic.replace('/', '-')}-{uuid.uuid4().hex[:8]}"
        self._client = mqtt.Client(
            client_id=client_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if self.mqtt_config.username:
            self._client.username_pw_set(self.mqtt_config.username, self.mqtt_config.password)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.reconnect_delay_set(min_delay=1, max_delay=self.mqtt_config.reconnect_max_delay_s)

        self._start_dispatch_thread()

        logger.info(f"Create session to endpoint {self.endpoint}.")
        try:
            self._client.connect(self.endpoint.host, self.endpoint.port, keepalive=self.mqtt_config.keepalive_s)
        except Exception as e:
            self._stop_dispatch_thread()
            raise TransportError(f"Failed to create session to endpoint {self.endpoint}: {e}") from e
        self._client.loop_start()

        if not self._connected.wait(timeout=connect_timeout):
            self.close()
            raise TransportError(f"Timed out connecting to endpoint {self.endpoint}")
        logger.info(f"Session to endpoint {self.endpoint} established.")

    def close(self) -> None:
        self._closing = True
        self._stop_dispatch_thread()
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
        self._connected.clear()
        logger.info(f"Session to endpoint {self.endpoint} closed.")

    def read_value(self, node_id: str, timeout: float) -> Any:
        with self._values_changed:
            if not self._values_changed.wait_for(lambda: node_id in self._values, timeout=timeout):
                raise TransportError(f"No value for node '{node_id}' on endpoint {self.endpoint}")
            return self._values[node_id]

    def subscribe(self, node_id: str, handler: NotificationHandler) -> None:
        if node_id not in VALUE_NODE_IDS:
            raise TransportError(f"Unknown node '{node_id}' on endpoint {self.endpoint}")
        with self._values_changed:
            self._handlers.setdefault(node_id, []).append(handler)
            if node_id in self._values:
                self._notifications.put((handler, self._values[node_id]))
        logger.info(f"Now monitoring node '{node_id}' on endpoint {self.endpoint}.")

    def call(self, object_id: str, method_id: str, args: List[Any], timeout: float) -> CallResult:
        if not self.connected:
            raise TransportError(f"Endpoint {self.endpoint} is not connected")

        request_id = uuid.uuid4().hex
        pending = _PendingCall()
        with self._pending_lock:
            self._pending[request_id] = pending
        try:
            topic = self.endpoint.topic(object_id, method_id, "request")
            payload = json.dumps({"request_id": request_id, "args": args})
            result = self._client.publish(topic, payload, qos=self.mqtt_config.qos)
            if result.rc != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(f"Failed to publish {method_id} request to {topic}: {result.rc}")
            if not pending.done.wait(timeout=timeout):
                raise TransportError(f"No response to {method_id} from endpoint {self.endpoint}")
            return pending.result
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

    def _start_dispatch_thread(self) -> None:
        self._running = True
        self._dispatch_thread = threading.Thread(
            target=self._dispatch_loop,
            name=f"notify-{self.endpoint.base_topic}",
            daemon=True,
        )
        self._dispatch_thread.start()

    def _stop_dispatch_thread(self) -> None:
        self._running = False
        if self._dispatch_thread and self._dispatch_thread is not threading.current_thread():
            self._dispatch_thread.join(timeout=2)

    def _dispatch_loop(self) -> None:
        while self._running:
            try:
                handler, value = self._notifications.get(timeout=0.1)
            except Empty:
                continue
            try:
                handler(value)
            except Exception as e:
                logger.error(f"Notification handler failed on endpoint {self.endpoint}: {e}")

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        if rc != 0:
            logger.error(f"Connection to {self.endpoint} failed with code {rc}")
            return

        for node_id in VALUE_NODE_IDS:
            client.subscribe(self.endpoint.topic(node_id), qos=self.mqtt_config.qos)
        client.subscribe(self.endpoint.topic("+", "+", "response"), qos=self.mqtt_config.qos)

        self._connected.set()
        if self._reconnecting:
            self._reconnecting = False
            logger.info(f"--- RECONNECTED to endpoint {self.endpoint} ---")
            if self.on_reconnected:
                self.on_reconnected(self)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        self._connected.clear()
        if self._closing:
            return
        if rc != 0:
            logger.warning(f"Endpoint {self.endpoint}: unexpected disconnection (rc={rc})")
        if not self._reconnecting:
            self._reconnecting = True
            logger.info(f"--- RECONNECTING to endpoint {self.endpoint} ---")
            if self.on_keep_alive_failed:
                self.on_keep_alive_failed(self)

    def _on_message(self, client, userdata, msg) -> None:
        try:
            payload = json.loads(msg.payload.decode()) if msg.payload else None
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Malformed payload on {msg.topic}: {e}")
            return

        for node_id in VALUE_NODE_IDS:
            if msg.topic == self.endpoint.topic(node_id):
                self._update_value(node_id, payload, retained=msg.retain)
                return

        if msg.topic.endswith("/response") and isinstance(payload, dict):
            self._complete_call(payload)

    def _update_value(self, node_id: str, payload: Any, retained: bool = False) -> None:
        if not isinstance(payload, dict) or "value" not in payload:
            logger.error(f"Value update for '{node_id}' on {self.endpoint} has no value: {payload}")
            return
        value = payload["value"]
        with self._values_changed:
            if retained and node_id in self._values and self._values[node_id] == value:
                # broker replays retained values on every re-subscribe
                logger.debug(f"Unchanged retained value for '{node_id}' on {self.endpoint}")
                return
            self._values[node_id] = value
            for handler in self._handlers.get(node_id, []):
                self._notifications.put((handler, value))
            self._values_changed.notify_all()

    def _complete_call(self, payload: Dict[str, Any]) -> None:
        with self._pending_lock:
            pending = self._pending.get(payload.get("request_id"))
        if pending is None:
            logger.debug(f"Ignoring response for unknown request {payload.get('request_id')}")
            return
        pending.result = CallResult(
            status_code=int(payload.get("status_code", STATUS_BAD)),
            results=list(payload.get("results") or []),
        )
        pending.done.set()


class MqttStationClient(StationClient):
    """StationClient over an MQTT broker (paho-mqtt)."""

    def __init__(self, mqtt_config: MQTTConfig, connect_timeout_s: float = 60.0, call_timeout_s: float = 10.0):
        self.mqtt_config = mqtt_config
        self.connect_timeout_s = connect_timeout_s
        self.call_timeout_s = call_timeout_s

    def connect(self, endpoint, on_keep_alive_failed=None, on_reconnected=None) -> MqttSession:
        session = MqttSession(
            Endpoint.parse(endpoint),
            self.mqtt_config,
            on_keep_alive_failed=on_keep_alive_failed,
            on_reconnected=on_reconnected,
        )
        session.open(self.connect_timeout_s)
        return session

    def read_value(self, session: MqttSession, node_id: str) -> Any:
        return session.read_value(node_id, timeout=self.call_timeout_s)

    def call(self, session: MqttSession, object_id: str, method_id: str, args: List[Any]) -> CallResult:
        return session.call(object_id, method_id, args, timeout=self.call_timeout_s)

    def subscribe(self, session: MqttSession, node_id: str, handler: NotificationHandler) -> None:
        session.subscribe(node_id, handler)

    def close(self, session: MqttSession) -> None:
        session.close()
