"""Tests for the station simulator."""

import json
import time
from unittest.mock import MagicMock

import pytest

from cfmes.config import SimulationConfig
from cfmes.station_client import (
    STATUS_BAD_INVALID_STATE,
    STATUS_BAD_METHOD_INVALID,
    STATUS_GOOD,
)
from cfmes.station_sim import StationSimulator
from cfmes.stations import StationRole, StationStatus


def published(mock_client):
    return {c.args[0]: json.loads(c.args[1]) for c in mock_client.publish.call_args_list}


class TestStationSimulator:
    """Tests for StationSimulator."""

    @pytest.fixture
    def mock_mqtt(self):
        return MagicMock()

    @pytest.fixture
    def make_sim(self, mock_mqtt):
        def factory(**sim_kwargs):
            sim_config = SimulationConfig(work_time_range_s=(1.0, 2.0), random_seed=1, **sim_kwargs)
            return StationSimulator(
                StationRole.ASSEMBLY,
                "mqtt://localhost:1883/cfmes/assembly",
                sim_config=sim_config,
                mqtt_client=mock_mqtt,
            )

        return factory

    def test_initial_state(self, make_sim):
        sim = make_sim()

        assert sim.status == StationStatus.READY
        assert sim.name == "SimulatedAssemblyStation"

    def test_execute_starts_work(self, make_sim, mock_mqtt):
        sim = make_sim()

        assert sim.handle_call("Execute", [2, 17]) == (STATUS_GOOD, [])
        assert sim.status == StationStatus.WORK_IN_PROGRESS
        assert sim.product_serial_number == 17
        assert sim.current_shift == 2

        values = published(mock_mqtt)
        assert values["cfmes/assembly/Status"] == {"value": 1}
        assert values["cfmes/assembly/ProductSerialNumber"] == {"value": 17}

    def test_values_are_retained(self, make_sim, mock_mqtt):
        make_sim().handle_call("Reset", [])

        assert all(c.kwargs["retain"] for c in mock_mqtt.publish.call_args_list)

    def test_execute_rejected_when_busy(self, make_sim):
        sim = make_sim()
        sim.handle_call("Execute", [0, 1])

        assert sim.handle_call("Execute", [0, 2]) == (STATUS_BAD_INVALID_STATE, [])
        assert sim.product_serial_number == 1

    def test_execute_rejects_bad_arguments(self, make_sim):
        sim = make_sim()

        assert sim.handle_call("Execute", ["x"])[0] == STATUS_BAD_INVALID_STATE
        assert sim.status == StationStatus.READY

    def test_reset_from_any_state(self, make_sim):
        sim = make_sim()
        sim.handle_call("Execute", [0, 1])

        assert sim.handle_call("Reset", [])[0] == STATUS_GOOD
        assert sim.status == StationStatus.READY

    def test_pressure_release_valve(self, make_sim):
        assert make_sim().handle_call("OpenPressureReleaseValve", [])[0] == STATUS_GOOD

    def test_unknown_method(self, make_sim):
        assert make_sim().handle_call("SelfDestruct", [])[0] == STATUS_BAD_METHOD_INVALID

    def test_tick_before_work_time_elapsed(self, make_sim):
        sim = make_sim(fault_probability=0.0, discard_probability=0.0)
        sim.handle_call("Execute", [0, 1])

        sim.tick(now=time.monotonic())
        assert sim.status == StationStatus.WORK_IN_PROGRESS

    def test_tick_done(self, make_sim):
        sim = make_sim(fault_probability=0.0, discard_probability=0.0)
        sim.handle_call("Execute", [0, 1])

        sim.tick(now=time.monotonic() + 10)
        assert sim.status == StationStatus.DONE
        assert sim.products_done == 1

    def test_tick_discarded(self, make_sim):
        sim = make_sim(fault_probability=0.0, discard_probability=1.0)
        sim.handle_call("Execute", [0, 1])

        sim.tick(now=time.monotonic() + 10)
        assert sim.status == StationStatus.DISCARDED
        assert sim.products_discarded == 1

    def test_tick_fault(self, make_sim):
        sim = make_sim(fault_probability=1.0, discard_probability=0.0)
        sim.handle_call("Execute", [0, 1])

        sim.tick(now=time.monotonic() + 10)
        assert sim.status == StationStatus.FAULT
        assert sim.faults == 1

    def test_tick_idle_station(self, make_sim, mock_mqtt):
        sim = make_sim()
        sim.tick(now=time.monotonic() + 10)

        assert sim.status == StationStatus.READY
        mock_mqtt.publish.assert_not_called()

    def test_on_connect_subscribes_to_requests(self, make_sim, mock_mqtt):
        sim = make_sim()
        sim._on_connect(mock_mqtt, None, None, 0)

        mock_mqtt.subscribe.assert_called_once_with("cfmes/assembly/Methods/+/request", qos=1)
        assert "cfmes/assembly/Status" in published(mock_mqtt)

    def test_on_message_answers_request(self, make_sim, mock_mqtt):
        sim = make_sim()
        msg = MagicMock()
        msg.topic = "cfmes/assembly/Methods/Execute/request"
        msg.payload = json.dumps({"request_id": "r1", "args": [1, 5]}).encode()

        sim._on_message(mock_mqtt, None, msg)

        topic, payload = mock_mqtt.publish.call_args.args
        assert topic == "cfmes/assembly/Methods/Execute/response"
        assert json.loads(payload) == {"request_id": "r1", "status_code": 0, "results": []}
        assert sim.status == StationStatus.WORK_IN_PROGRESS

    def test_on_message_ignores_malformed_request(self, make_sim, mock_mqtt):
        sim = make_sim()
        msg = MagicMock()
        msg.topic = "cfmes/assembly/Methods/Reset/request"
        msg.payload = b"not json"

        sim._on_message(mock_mqtt, None, msg)
        mock_mqtt.publish.assert_not_called()

    def test_start_and_stop_with_injected_client(self, make_sim, mock_mqtt):
        sim = make_sim()

        assert sim.start()
        mock_mqtt.loop_start.assert_called_once()
        sim.stop()
        mock_mqtt.loop_stop.assert_called_once()
        mock_mqtt.disconnect.assert_called_once()
