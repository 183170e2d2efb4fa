"""Shared fixtures: an in-memory station transport and fast timings."""

import threading

import pytest

from cfmes.config import TimingConfig
from cfmes.errors import TransportError
from cfmes.station_client import (
    PRODUCT_SERIAL_NUMBER_NODE_ID,
    STATUS_NODE_ID,
    CallResult,
    StationClient,
)


class FakeSession:
    """Stands in for one station connection."""

    def __init__(self, endpoint, values, on_keep_alive_failed, on_reconnected):
        self.endpoint = endpoint
        self.values = values
        self.on_keep_alive_failed = on_keep_alive_failed
        self.on_reconnected = on_reconnected
        self.handlers = []
        self.closed = False

    def deliver_initial(self):
        """Deliver the current status, as a fresh subscription would."""
        for handler in self.handlers:
            handler(self.values[STATUS_NODE_ID])

    def push_status(self, status):
        self.values[STATUS_NODE_ID] = int(status)
        for handler in self.handlers:
            handler(int(status))

    def drop(self):
        self.on_keep_alive_failed(self)

    def restore(self):
        self.on_reconnected(self)


class FakeStationClient(StationClient):
    """Records every call; results can be scripted per call."""

    def __init__(self):
        self.sessions = {}
        self.initial_values = {}
        self.connect_failures = {}
        self.call_results = []
        self.calls = []
        self._lock = threading.Lock()

    def set_station(self, endpoint, status=0, serial=1):
        self.initial_values[endpoint] = {
            STATUS_NODE_ID: int(status),
            PRODUCT_SERIAL_NUMBER_NODE_ID: serial,
        }

    def connect(self, endpoint, on_keep_alive_failed=None, on_reconnected=None):
        if self.connect_failures.get(endpoint, 0) > 0:
            self.connect_failures[endpoint] -= 1
            raise TransportError(f"{endpoint} unreachable")
        values = dict(self.initial_values.get(endpoint) or {STATUS_NODE_ID: 0, PRODUCT_SERIAL_NUMBER_NODE_ID: 1})
        session = FakeSession(endpoint, values, on_keep_alive_failed, on_reconnected)
        self.sessions[endpoint] = session
        return session

    def read_value(self, session, node_id):
        return session.values[node_id]

    def call(self, session, object_id, method_id, args):
        with self._lock:
            self.calls.append((session.endpoint, method_id, list(args)))
            result = self.call_results.pop(0) if self.call_results else None
        if isinstance(result, Exception):
            raise result
        if result is None:
            return CallResult()
        return CallResult(status_code=result)

    def subscribe(self, session, node_id, handler):
        session.handlers.append(handler)

    def close(self, session):
        session.closed = True

    def calls_to(self, endpoint):
        return [(method, args) for ep, method, args in self.calls if ep == endpoint]


@pytest.fixture
def fake_client():
    return FakeStationClient()


@pytest.fixture
def fast_timing():
    return TimingConfig(
        production_slot_s=0.01,
        connect_retry_delay_s=0.01,
        reconnect_period_s=0.01,
        call_retry_delay_s=0.01,
        fault_delay_s=0.05,
        connect_timeout_s=1.0,
        call_timeout_s=1.0,
        shift_poll_max_s=0.01,
    )


@pytest.fixture
def lock():
    return threading.Lock()


@pytest.fixture
def shutdown():
    event = threading.Event()
    yield event
    event.set()
