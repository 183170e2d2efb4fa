"""Tests for the MQTT station transport."""

import json
import time
from unittest.mock import MagicMock, patch

import pytest

from cfmes.config import MQTTConfig
from cfmes.errors import ConfigurationError, TransportError
from cfmes.station_client import (
    STATUS_BAD_INVALID_STATE,
    CallResult,
    Endpoint,
    MqttSession,
    MqttStationClient,
)


def message(topic, payload, retain=False):
    msg = MagicMock()
    msg.topic = topic
    msg.payload = json.dumps(payload).encode() if payload is not None else b""
    msg.retain = retain
    return msg


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class TestEndpoint:
    """Tests for endpoint parsing."""

    def test_parse(self):
        endpoint = Endpoint.parse("mqtt://broker:1884/plant/assembly")

        assert endpoint.host == "broker"
        assert endpoint.port == 1884
        assert endpoint.base_topic == "plant/assembly"

    def test_default_port(self):
        assert Endpoint.parse("mqtt://broker/test").port == 1883

    def test_tcp_scheme(self):
        assert Endpoint.parse("tcp://10.0.0.5:1883/packaging").host == "10.0.0.5"

    @pytest.mark.parametrize(
        "url",
        [
            "opc.tcp://localhost:51210",
            "mqtt://localhost:1883",
            "mqtt:///assembly",
            "localhost:1883/assembly",
            "mqtt://localhost:port/assembly",
        ],
    )
    def test_invalid(self, url):
        with pytest.raises(ConfigurationError):
            Endpoint.parse(url)

    def test_topic(self):
        endpoint = Endpoint.parse("mqtt://broker/plant/test")

        assert endpoint.topic("Status") == "plant/test/Status"
        assert endpoint.topic("Methods", "Reset", "request") == "plant/test/Methods/Reset/request"
        assert str(endpoint) == "mqtt://broker:1883/plant/test"


class TestCallResult:
    def test_good(self):
        assert not CallResult().is_bad

    def test_bad(self):
        assert CallResult(STATUS_BAD_INVALID_STATE).is_bad

    def test_uncertain_is_not_bad(self):
        assert not CallResult(0x40000000).is_bad


class TestMqttSession:
    """Tests for MqttSession."""

    @pytest.fixture
    def session(self):
        session = MqttSession(Endpoint.parse("mqtt://broker/line/test"), MQTTConfig())
        session._client = MagicMock()
        session._client.publish.return_value = MagicMock(rc=0)
        yield session
        session._stop_dispatch_thread()

    def test_value_update(self, session):
        session._on_message(None, None, message("line/test/Status", {"value": 2}))

        assert session.read_value("Status", timeout=0.1) == 2

    def test_read_value_timeout(self, session):
        with pytest.raises(TransportError):
            session.read_value("ProductSerialNumber", timeout=0.01)

    def test_value_without_value_field_ignored(self, session):
        session._on_message(None, None, message("line/test/Status", {"status": 2}))

        with pytest.raises(TransportError):
            session.read_value("Status", timeout=0.01)

    def test_malformed_payload_ignored(self, session):
        msg = MagicMock()
        msg.topic = "line/test/Status"
        msg.payload = b"\xff{not json"

        session._on_message(None, None, msg)
        assert session._values == {}

    def test_subscribe_delivers_current_value_first(self, session):
        received = []
        session._start_dispatch_thread()
        session._on_message(None, None, message("line/test/Status", {"value": 0}))

        session.subscribe("Status", received.append)
        session._on_message(None, None, message("line/test/Status", {"value": 1}))

        assert wait_until(lambda: received == [0, 1])

    def test_subscribe_unknown_node(self, session):
        with pytest.raises(TransportError):
            session.subscribe("Temperature", print)

    def test_failing_handler_does_not_stop_dispatch(self, session):
        received = []

        def failing(value):
            raise RuntimeError("handler failed")

        session._start_dispatch_thread()
        session.subscribe("Status", failing)
        session.subscribe("Status", received.append)
        session._on_message(None, None, message("line/test/Status", {"value": 4}))

        assert wait_until(lambda: received == [4])

    def test_call(self, session):
        session._connected.set()

        def respond(topic, payload, qos):
            request = json.loads(payload)
            assert topic == "line/test/Methods/Execute/request"
            assert request["args"] == [1, 42]
            session._on_message(
                None,
                None,
                message(
                    "line/test/Methods/Execute/response",
                    {"request_id": request["request_id"], "status_code": 0, "results": ["ok"]},
                ),
            )
            return MagicMock(rc=0)

        session._client.publish.side_effect = respond

        result = session.call("Methods", "Execute", [1, 42], timeout=1.0)

        assert result == CallResult(0, ["ok"])
        assert session._pending == {}

    def test_call_bad_status(self, session):
        session._connected.set()

        def respond(topic, payload, qos):
            request_id = json.loads(payload)["request_id"]
            session._complete_call({"request_id": request_id, "status_code": STATUS_BAD_INVALID_STATE})
            return MagicMock(rc=0)

        session._client.publish.side_effect = respond

        assert session.call("Methods", "Reset", [], timeout=1.0).is_bad

    def test_call_timeout(self, session):
        session._connected.set()

        with pytest.raises(TransportError):
            session.call("Methods", "Reset", [], timeout=0.01)
        assert session._pending == {}

    def test_call_not_connected(self, session):
        with pytest.raises(TransportError):
            session.call("Methods", "Reset", [], timeout=0.01)

    def test_call_publish_failure(self, session):
        session._connected.set()
        session._client.publish.return_value = MagicMock(rc=4)

        with pytest.raises(TransportError):
            session.call("Methods", "Reset", [], timeout=0.01)

    def test_unknown_response_ignored(self, session):
        session._on_message(
            None, None, message("line/test/Methods/Reset/response", {"request_id": "nope", "status_code": 0})
        )

    def test_on_connect_subscribes(self, session):
        client = MagicMock()
        session._on_connect(client, None, None, 0)

        topics = [c.args[0] for c in client.subscribe.call_args_list]
        assert topics == ["line/test/Status", "line/test/ProductSerialNumber", "line/test/+/+/response"]
        assert session.connected

    def test_on_connect_failure(self, session):
        session._on_connect(MagicMock(), None, None, 5)
        assert not session.connected

    def test_disconnect_and_reconnect_callbacks(self, session):
        lost = MagicMock()
        restored = MagicMock()
        session.on_keep_alive_failed = lost
        session.on_reconnected = restored
        session._on_connect(MagicMock(), None, None, 0)

        session._on_disconnect(None, None, None, 7)
        session._on_disconnect(None, None, None, 7)
        assert lost.call_count == 1
        assert session.reconnecting
        assert not session.connected

        session._on_connect(MagicMock(), None, None, 0)
        restored.assert_called_once_with(session)
        assert not session.reconnecting

    def test_unchanged_retained_value_after_reconnect_not_dispatched(self, session):
        received = []
        session.subscribe("Status", received.append)
        session._on_connect(MagicMock(), None, None, 0)
        session._on_message(None, None, message("line/test/Status", {"value": 0}, retain=True))
        assert session._notifications.qsize() == 1

        session._on_disconnect(None, None, None, 7)
        session._on_connect(MagicMock(), None, None, 0)
        session._on_message(None, None, message("line/test/Status", {"value": 0}, retain=True))

        assert session._notifications.qsize() == 1
        assert session.read_value("Status", timeout=0.1) == 0

    def test_changed_retained_value_after_reconnect_dispatched(self, session):
        received = []
        session._start_dispatch_thread()
        session.subscribe("Status", received.append)
        session._on_message(None, None, message("line/test/Status", {"value": 1}, retain=True))

        session._on_disconnect(None, None, None, 7)
        session._on_connect(MagicMock(), None, None, 0)
        session._on_message(None, None, message("line/test/Status", {"value": 3}, retain=True))

        assert wait_until(lambda: received == [1, 3])
        assert session.read_value("Status", timeout=0.1) == 3

    def test_repeated_live_value_dispatched(self, session):
        received = []
        session._start_dispatch_thread()
        session.subscribe("ProductSerialNumber", received.append)
        session._on_message(None, None, message("line/test/ProductSerialNumber", {"value": 5}))
        session._on_message(None, None, message("line/test/ProductSerialNumber", {"value": 5}))

        assert wait_until(lambda: received == [5, 5])

    def test_no_callback_when_closing(self, session):
        lost = MagicMock()
        session.on_keep_alive_failed = lost
        session.close()

        session._on_disconnect(None, None, None, 0)
        lost.assert_not_called()

    @patch("cfmes.station_client.mqtt.Client")
    def test_open(self, mock_client_cls):
        mock_client = MagicMock()
        mock_client_cls.return_value = mock_client
        session = MqttSession(Endpoint.parse("mqtt://broker:1884/line/test"), MQTTConfig(username="u", password="p"))
        mock_client.loop_start.side_effect = lambda: session._on_connect(mock_client, None, None, 0)

        session.open(connect_timeout=1.0)

        mock_client.username_pw_set.assert_called_once_with("u", "p")
        mock_client.connect.assert_called_once_with("broker", 1884, keepalive=10)
        assert session.connected
        session.close()

    @patch("cfmes.station_client.mqtt.Client")
    def test_open_refused(self, mock_client_cls):
        mock_client_cls.return_value.connect.side_effect = ConnectionRefusedError()
        session = MqttSession(Endpoint.parse("mqtt://broker/line/test"), MQTTConfig())

        with pytest.raises(TransportError):
            session.open(connect_timeout=1.0)

    @patch("cfmes.station_client.mqtt.Client")
    def test_open_timeout(self, mock_client_cls):
        session = MqttSession(Endpoint.parse("mqtt://broker/line/test"), MQTTConfig())

        with pytest.raises(TransportError):
            session.open(connect_timeout=0.01)
        mock_client_cls.return_value.loop_stop.assert_called_once()


class TestMqttStationClient:
    @patch("cfmes.station_client.MqttSession")
    def test_delegates_to_session(self, mock_session_cls):
        session = mock_session_cls.return_value
        session.read_value.return_value = 3
        client = MqttStationClient(MQTTConfig(), connect_timeout_s=5.0, call_timeout_s=2.0)
        lost = MagicMock()

        assert client.connect("mqtt://broker/line/assembly", on_keep_alive_failed=lost) is session
        session.open.assert_called_once_with(5.0)
        assert mock_session_cls.call_args.kwargs["on_keep_alive_failed"] is lost

        assert client.read_value(session, "Status") == 3
        session.read_value.assert_called_once_with("Status", timeout=2.0)

        client.call(session, "Methods", "Reset", [])
        session.call.assert_called_once_with("Methods", "Reset", [], timeout=2.0)

        client.subscribe(session, "Status", print)
        session.subscribe.assert_called_once_with("Status", print)

        client.close(session)
        session.close.assert_called_once()

    def test_invalid_endpoint(self):
        client = MqttStationClient(MQTTConfig())

        with pytest.raises(ConfigurationError):
            client.connect("opc.tcp://localhost:51210")
