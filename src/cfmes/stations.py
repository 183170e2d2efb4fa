"""Station proxies.

A StationProxy owns one station's session, mirrors its status and product
serial number, and issues commands that retry until they succeed or the
MES shuts down. The role subclasses react to status notifications.

All reads and writes of a StationState happen while holding the station
control lock shared with the Coordinator. Notification handlers acquire
it themselves; commands assume the caller holds it.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Type

from .config import TimingConfig
from .errors import ProtocolViolation
from .station_client import (
    EXECUTE_METHOD_ID,
    METHODS_OBJECT_ID,
    OPEN_PRESSURE_RELEASE_VALVE_METHOD_ID,
    PRODUCT_SERIAL_NUMBER_NODE_ID,
    RESET_METHOD_ID,
    STATUS_NODE_ID,
    StationClient,
)

logger = logging.getLogger(__name__)


class StationRole(str, Enum):
    """Position of a station on the line."""

    ASSEMBLY = "assembly"
    TEST = "test"
    PACKAGING = "packaging"


class StationStatus(IntEnum):
    """Status reported by a station."""

    READY = 0
    WORK_IN_PROGRESS = 1
    DONE = 2
    DISCARDED = 3
    FAULT = 4


class Connectivity(Enum):
    """Session state of a station proxy."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StationState:
    """Local mirror of a station."""

    endpoint: str
    status: StationStatus = StationStatus.READY
    product_serial_number: int = 1
    current_shift: int = 0
    connectivity: Connectivity = Connectivity.DISCONNECTED
    # set on subscribe and on reconnect, cleared by the next notification
    awaiting_first_notification: bool = False


class StationProxy:
    """Connection, status mirror and retrying commands for one station."""

    role: StationRole

    def __init__(
        self,
        endpoint: str,
        client: StationClient,
        lock: threading.Lock,
        shutdown: threading.Event,
        timing: Optional[TimingConfig] = None,
    ):
        self.state = StationState(endpoint=endpoint)
        self._client = client
        self._lock = lock
        self._shutdown = shutdown
        self._timing = timing or TimingConfig()
        self._session: Any = None
        self._fault_recovery: Optional[threading.Thread] = None
        self._monitoring = False
        logger.info(f"{self.name} URL is: {endpoint}")

    @property
    def name(self) -> str:
        return f"{self.role.value.capitalize()}Station"

    @property
    def endpoint(self) -> str:
        return self.state.endpoint

    @property
    def status(self) -> StationStatus:
        return self.state.status

    @property
    def product_serial_number(self) -> int:
        return self.state.product_serial_number

    @product_serial_number.setter
    def product_serial_number(self, value: int) -> None:
        self.state.product_serial_number = value

    @property
    def is_ready(self) -> bool:
        return self.state.status == StationStatus.READY

    @property
    def is_done(self) -> bool:
        return self.state.status == StationStatus.DONE

    @property
    def is_fault(self) -> bool:
        return self.state.status == StationStatus.FAULT

    @property
    def is_in_progress(self) -> bool:
        return self.state.status == StationStatus.WORK_IN_PROGRESS

    @property
    def is_disconnected(self) -> bool:
        return self.state.connectivity != Connectivity.CONNECTED

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def connect(self, monitor: bool = True) -> bool:
        """Connect and start monitoring the status node.

        Retries forever; returns False only when shutdown was requested.
        With ``monitor=False`` only the current values are read.
        """
        self.state.connectivity = Connectivity.CONNECTING
        delay = self._timing.connect_retry_delay_s

        while not self._shutdown.is_set():
            if self._session is None:
                try:
                    self._session = self._client.connect(
                        self.endpoint,
                        on_keep_alive_failed=self._on_keep_alive_failed,
                        on_reconnected=self._on_reconnected,
                    )
                except Exception as e:
                    logger.critical(
                        f"Failed to create session to endpoint at {self.endpoint}! "
                        f"Wait {delay} seconds and retry... ({e})"
                    )
                    self._shutdown.wait(delay)
                    continue

            try:
                with self._lock:
                    self._read_station_values()
                    if monitor:
                        self.state.awaiting_first_notification = True
                        self._client.subscribe(self._session, STATUS_NODE_ID, self._on_status_notification)
                        self._monitoring = True
            except Exception as e:
                logger.error(
                    f"Failed to monitor station status at {self.endpoint}! "
                    f"Wait {delay} seconds and retry... ({e})"
                )
                self._shutdown.wait(delay)
                continue

            if self.state.connectivity == Connectivity.CONNECTING:
                self.state.connectivity = Connectivity.CONNECTED
            logger.info(
                f"{self.name}: connected, status {self.state.status.name}, "
                f"product #{self.state.product_serial_number}"
            )
            return True

        return False

    def disconnect(self) -> None:
        if self._fault_recovery is not None:
            self._fault_recovery.join(timeout=1)
        if self._session is not None:
            try:
                self._client.close(self._session)
            except Exception as e:
                logger.warning(f"{self.name}: error closing session: {e}")
            self._session = None
        self.state.connectivity = Connectivity.DISCONNECTED

    def _read_station_values(self) -> None:
        raw_status = self._client.read_value(self._session, STATUS_NODE_ID)
        raw_serial = self._client.read_value(self._session, PRODUCT_SERIAL_NUMBER_NODE_ID)
        self.state.status = self._parse_status(raw_status)
        self.state.product_serial_number = int(raw_serial)

    def _on_keep_alive_failed(self, session: Any) -> None:
        if self.state.connectivity != Connectivity.RECONNECTING:
            logger.warning(f"{self.name}: keep-alive failed on {self.endpoint}, reconnecting")
            self.state.connectivity = Connectivity.RECONNECTING

    def _on_reconnected(self, session: Any) -> None:
        self._session = session
        if self._monitoring:
            # the broker redelivers the retained status after re-subscribing
            self.state.awaiting_first_notification = True
        self.state.connectivity = Connectivity.CONNECTED
        logger.info(f"{self.name}: reconnected to {self.endpoint}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def execute(self, shift: Optional[int] = None, serial_number: Optional[int] = None) -> bool:
        """Start work on a product. Defaults to the mirrored shift and serial."""
        if shift is None:
            shift = self.state.current_shift
        if serial_number is None:
            serial_number = self.state.product_serial_number
        return self._call(EXECUTE_METHOD_ID, [shift, serial_number])

    def reset(self) -> bool:
        """Put the station back to Ready."""
        return self._call(RESET_METHOD_ID, [])

    def open_pressure_release_valve(self) -> bool:
        return self._call(OPEN_PRESSURE_RELEASE_VALVE_METHOD_ID, [])

    def _call(self, method_id: str, args: List[Any]) -> bool:
        """Call a station method until it succeeds. False only on shutdown."""
        attempt = 0
        while not self._shutdown.is_set():
            if self.is_disconnected:
                logger.debug(
                    f"In reconnect. Wait {self._timing.reconnect_period_s} s till retry "
                    f"calling {method_id} method."
                )
                self._shutdown.wait(self._timing.reconnect_period_s)
                continue

            attempt += 1
            if attempt > 1:
                logger.warning(f"Retry {attempt}. time to call {method_id} method on endpoint {self.endpoint}.")

            try:
                result = self._client.call(self._session, METHODS_OBJECT_ID, method_id, args)
            except Exception as e:
                logger.critical(f"Exception when calling {method_id} method on endpoint URL {self.endpoint}. Retry... ({e})")
                self._shutdown.wait(self._timing.call_retry_delay_s)
                continue

            if not result.is_bad:
                return True

            logger.error(
                f"{method_id} call was not successful on endpoint URL {self.endpoint} "
                f"(status: 0x{result.status_code:08X}). Retry..."
            )
            self._shutdown.wait(self._timing.call_retry_delay_s)

        return False

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _parse_status(self, value: Any) -> StationStatus:
        try:
            return StationStatus(int(value))
        except (TypeError, ValueError):
            raise ProtocolViolation(f"{self.name}: invalid station status type received: {value!r}") from None

    def _on_status_notification(self, value: Any) -> None:
        try:
            with self._lock:
                initial = self.state.awaiting_first_notification
                self.state.awaiting_first_notification = False
                status = self._parse_status(value)
                previous = self.state.status
                self.state.status = status

                if initial and status == previous:
                    # reflects the value already mirrored, not a transition
                    logger.debug(f"{self.name}: initial status {status.name}")
                    return

                logger.debug(f"{self.name}: status changed to {status.name}")
                self._handle_status(status)
        except ProtocolViolation as e:
            logger.error(f"Argument error: {e}")
        except Exception:
            logger.critical(f"Error processing status notification in {self.name}", exc_info=True)

    def _handle_status(self, status: StationStatus) -> None:
        """React to a status transition. Called with the lock held."""
        if status == StationStatus.FAULT:
            self._schedule_fault_recovery()

    def _schedule_fault_recovery(self) -> None:
        """Reset the station after the fault delay, simulating manual intervention."""
        if self._fault_recovery is not None and self._fault_recovery.is_alive():
            logger.debug(f"{self.name}: fault recovery already pending")
            return
        logger.info(f"{self.name}: <<Fault detected>>")
        self._fault_recovery = threading.Thread(
            target=self._recover_fault,
            name=f"{self.role.value}-fault-recovery",
            daemon=True,
        )
        self._fault_recovery.start()

    def _recover_fault(self) -> None:
        if self._shutdown.wait(self._timing.fault_delay_s):
            return
        logger.info(f"{self.name}: <<Fix Fault>>")
        try:
            with self._lock:
                self.reset()
        except Exception:
            logger.critical(f"Error resetting {self.name} after fault", exc_info=True)


class AssemblyStation(StationProxy):
    """First station: starts a new product whenever it becomes Ready."""

    role = StationRole.ASSEMBLY

    def _handle_status(self, status: StationStatus) -> None:
        if status == StationStatus.READY:
            # build the next product
            self.state.product_serial_number += 1
            self.execute()
            logger.info(f"{self.name}: now building #{self.state.product_serial_number}")
        elif status == StationStatus.DISCARDED:
            logger.debug(f"{self.name}: #{self.state.product_serial_number} discarded")
            self.reset()
        else:
            super()._handle_status(status)


class TestStation(StationProxy):
    """Second station. The coordinator moves passed products on."""

    role = StationRole.TEST

    # not a test case
    __test__ = False

    def _handle_status(self, status: StationStatus) -> None:
        if status == StationStatus.DONE:
            logger.debug(f"{self.name}: #{self.state.product_serial_number} testing passed")
        elif status == StationStatus.DISCARDED:
            logger.debug(f"{self.name}: #{self.state.product_serial_number} testing failed -> discard")
            self.reset()
        else:
            super()._handle_status(status)


class PackagingStation(StationProxy):
    """Last station: frees itself once a product is packed or discarded."""

    role = StationRole.PACKAGING

    def _handle_status(self, status: StationStatus) -> None:
        if status == StationStatus.DONE:
            logger.info(f"{self.name}: #{self.state.product_serial_number} completed successfully")
            self.reset()
        elif status == StationStatus.DISCARDED:
            logger.info(f"{self.name}: #{self.state.product_serial_number} completed, but not good")
            self.reset()
        else:
            super()._handle_status(status)


STATION_TYPES: Dict[StationRole, Type[StationProxy]] = {
    StationRole.ASSEMBLY: AssemblyStation,
    StationRole.TEST: TestStation,
    StationRole.PACKAGING: PackagingStation,
}


def create_station(
    role: StationRole,
    endpoint: str,
    client: StationClient,
    lock: threading.Lock,
    shutdown: threading.Event,
    timing: Optional[TimingConfig] = None,
) -> StationProxy:
    """Build the proxy class matching ``role``."""
    return STATION_TYPES[StationRole(role)](endpoint, client, lock, shutdown, timing)
