"""Production line coordinator.

Owns the three station proxies, the station control lock and the
production loop. Each loop iteration waits until all stations are stable,
waits for an active shift (when a calendar is configured), sleeps one
production slot and then runs the MES logic that moves products from
Assembly to Test to Packaging.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .config import Config, TimingConfig
from .shifts import ShiftSchedule
from .station_client import StationClient
from .stations import (
    AssemblyStation,
    PackagingStation,
    StationProxy,
    StationRole,
    StationStatus,
    TestStation,
    create_station,
)

logger = logging.getLogger(__name__)


class CoordinatorPhase(Enum):
    """Where the coordinator currently is in its cycle."""

    IDLE = "idle"
    KICKOFF = "kickoff"
    WAIT_STABLE = "wait_stable"
    WAIT_SHIFT = "wait_shift"
    ARMED = "armed"
    TICK = "tick"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ProductionSlot:
    """One armed iteration of the production loop."""

    sequence_number: int
    active_shift: int


class Coordinator:
    """Serializes all station decisions under one lock and drives the line."""

    def __init__(
        self,
        assembly: AssemblyStation,
        test: TestStation,
        packaging: PackagingStation,
        lock: threading.Lock,
        shutdown: threading.Event,
        timing: Optional[TimingConfig] = None,
        schedule: Optional[ShiftSchedule] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.assembly = assembly
        self.test = test
        self.packaging = packaging
        self.lock = lock
        self.shutdown = shutdown
        self.timing = timing or TimingConfig()
        self.schedule = schedule
        self._clock = clock

        self.phase = CoordinatorPhase.IDLE
        self.last_slot: Optional[ProductionSlot] = None
        self._production_slot = 0
        self._active_shift = 0
        self._shift_end: Optional[datetime] = None
        self._loop_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        client: StationClient,
        shutdown: Optional[threading.Event] = None,
    ) -> "Coordinator":
        """Build a coordinator. Raises ConfigurationError on bad shift settings."""
        shift_config = config.shifts.build()
        schedule = ShiftSchedule(shift_config) if shift_config else None
        lock = threading.Lock()
        shutdown = shutdown or threading.Event()

        def station(role: StationRole, endpoint: str) -> StationProxy:
            return create_station(role, endpoint, client, lock, shutdown, config.timing)

        return cls(
            assembly=station(StationRole.ASSEMBLY, config.stations.assembly),
            test=station(StationRole.TEST, config.stations.test),
            packaging=station(StationRole.PACKAGING, config.stations.packaging),
            lock=lock,
            shutdown=shutdown,
            timing=config.timing,
            schedule=schedule,
        )

    @property
    def stations(self) -> List[StationProxy]:
        return [self.assembly, self.test, self.packaging]

    @property
    def production_slot(self) -> int:
        return self._production_slot

    @property
    def active_shift(self) -> int:
        return self._active_shift

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Connect all stations, kick off production and start the loop."""
        logger.info("Connectedfactory Manufacturing Execution System starting up.")
        if self.schedule is None:
            logger.info("No shift calendar configured, producing continuously")

        connections = [
            threading.Thread(target=s.connect, name=f"connect-{s.role.value}", daemon=True)
            for s in self.stations
        ]
        for t in connections:
            t.start()
        for t in connections:
            t.join()

        if self.shutdown.is_set():
            self.phase = CoordinatorPhase.STOPPED
            return False

        self.kickoff()

        self._loop_thread = threading.Thread(target=self.run, name="production-loop", daemon=True)
        self._loop_thread.start()
        return True

    def stop(self) -> None:
        """Raise the shutdown signal and release all sessions."""
        logger.info("MES is exiting...")
        self.shutdown.set()
        if self._loop_thread and self._loop_thread is not threading.current_thread():
            self._loop_thread.join(timeout=5)
        for station in self.stations:
            station.disconnect()
        self.phase = CoordinatorPhase.STOPPED

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested."""
        return self.shutdown.wait(timeout)

    def kickoff(self) -> None:
        """Continue production with the next free product serial number."""
        self.phase = CoordinatorPhase.KICKOFF
        with self.lock:
            last_serial = max(s.product_serial_number for s in self.stations)
            status = self.assembly.status

            if status == StationStatus.READY:
                self.assembly.product_serial_number = last_serial + 1
                logger.info(
                    f"MES: Start production line by assembling product with product serial "
                    f"number #{self.assembly.product_serial_number}"
                )
                self.assembly.execute()
            else:
                # the Ready notification after the reset starts product last_serial + 1
                self.assembly.product_serial_number = last_serial
                logger.info(f"MES: AssemblyStation is {status.name}, reset before starting production")
                self.assembly.reset()

    def run(self) -> None:
        """Production loop. Returns once the shutdown signal is raised."""
        while True:
            slot = self.start_production_slot()
            if slot is None:
                break
            if self.shutdown.wait(self.timing.production_slot_s):
                break
            self.mes_logic()
        self.phase = CoordinatorPhase.STOPPED
        logger.debug("MES: production loop stopped")

    # ------------------------------------------------------------------
    # Production slot
    # ------------------------------------------------------------------

    def start_production_slot(self) -> Optional[ProductionSlot]:
        """Wait for stable stations and an active shift, then arm a slot.

        Returns None when shutdown was requested while waiting.
        """
        if not self._wait_for_stable_stations():
            return None
        if self.shutdown.is_set():
            return None
        if self.schedule is not None and not self._wait_for_shift():
            return None

        with self.lock:
            slot = ProductionSlot(sequence_number=self._production_slot, active_shift=self._active_shift)
            self._production_slot += 1
            self.last_slot = slot
        self.phase = CoordinatorPhase.ARMED
        logger.debug(f"MES: Starting production slot {slot.sequence_number}")
        return slot

    def _stations_unstable(self) -> List[str]:
        with self.lock:
            return [
                f"{s.name} ({'disconnected' if s.is_disconnected else 'fault'})"
                for s in self.stations
                if s.is_disconnected or s.is_fault
            ]

    def _wait_for_stable_stations(self) -> bool:
        self.phase = CoordinatorPhase.WAIT_STABLE
        waited = 0
        while not self.shutdown.is_set():
            unstable = self._stations_unstable()
            if not unstable:
                return True
            if waited % 10 == 0:
                logger.info(f"MES: waiting for stable stations: {', '.join(unstable)}")
            waited += 1
            self.shutdown.wait(self.timing.production_slot_s)
        return False

    def _wait_for_shift(self) -> bool:
        self.phase = CoordinatorPhase.WAIT_SHIFT
        while not self.shutdown.is_set():
            now = self._clock()
            if self._active_shift and self._shift_end is not None and now < self._shift_end:
                return True

            decision = self.schedule.evaluate(now)
            if decision.is_active:
                self._begin_shift(decision.active_shift, decision.shift_end)
                return True

            if self._active_shift:
                logger.info(f"MES: shift {self._active_shift} ended")
                self._set_shift(0, None)
            logger.info(f"MES: no shift active, waiting until {decision.next_boundary:%Y-%m-%d %H:%M}")
            remaining = (decision.next_boundary - now).total_seconds()
            self.shutdown.wait(min(max(remaining, 0.0), self.timing.shift_poll_max_s))
        return False

    def _begin_shift(self, shift: int, shift_end: Optional[datetime]) -> None:
        logger.info(f"MES: shift {shift} started, ends {shift_end:%Y-%m-%d %H:%M}")
        self._set_shift(shift, shift_end)

    def _set_shift(self, shift: int, shift_end: Optional[datetime]) -> None:
        with self.lock:
            self._active_shift = shift
            self._shift_end = shift_end
            for station in self.stations:
                station.state.current_shift = shift

    # ------------------------------------------------------------------
    # MES logic
    # ------------------------------------------------------------------

    def mes_logic(self) -> None:
        """Move finished products one station down the line."""
        self.phase = CoordinatorPhase.TICK
        try:
            with self.lock:
                if self.assembly.is_done and self.test.is_ready:
                    logger.debug(
                        f"MES: moving #{self.assembly.product_serial_number} from AssemblyStation to TestStation"
                    )
                    self.test.product_serial_number = self.assembly.product_serial_number
                    self.test.execute()
                    self.assembly.reset()

                if self.test.is_done and self.packaging.is_ready:
                    logger.debug(
                        f"MES: moving #{self.test.product_serial_number} from TestStation to PackagingStation"
                    )
                    self.packaging.product_serial_number = self.test.product_serial_number
                    self.packaging.execute()
                    self.test.reset()

                if self.packaging.is_done:
                    logger.debug(f"MES: clearing finished #{self.packaging.product_serial_number} at PackagingStation")
                    self.packaging.reset()
        except Exception:
            logger.critical("Error in MES logic!", exc_info=True)

