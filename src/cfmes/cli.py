"""Command-line interface for the Connectedfactory MES."""

import logging
import logging.handlers
import os
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .config import LOG_LEVELS, Config, LoggingConfig
from .coordinator import Coordinator
from .errors import ConfigurationError
from .shifts import ShiftSchedule
from .station_client import Endpoint, MqttStationClient
from .station_sim import StationSimulator
from .stations import StationRole, create_station

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_MAP = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "verbose": logging.DEBUG,
}

ROLE_CHOICE = click.Choice([r.value for r in StationRole], case_sensitive=False)


def setup_logging(log_config: LoggingConfig) -> None:
    """Console logging plus an optional size-rotating log file."""
    handlers = [logging.StreamHandler()]
    if log_config.file:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_config.file,
                maxBytes=log_config.max_bytes,
                backupCount=log_config.backup_count,
            )
        )
    logging.basicConfig(
        level=_LEVEL_MAP.get(log_config.level, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    # paho is chatty at debug level
    if log_config.level != "verbose":
        logging.getLogger("paho").setLevel(logging.WARNING)

    logger.info(f"Current directory is: {os.getcwd()}")
    if log_config.file:
        logger.info(f"Log file is: {os.path.abspath(log_config.file)}")
    logger.info(f"Log level is: {log_config.level}")


def _load_config(config_path: Optional[Path]) -> Config:
    config = Config.from_yaml(config_path) if config_path else Config.default()
    return Config.from_env(config)


def _apply_shift_options(config: Config, days_per_week, shift_count, first_shift_start, shift_length, grace) -> None:
    if days_per_week is not None:
        config.shifts.days_per_week = days_per_week
    if shift_count is not None:
        config.shifts.shift_count = shift_count
    if first_shift_start is not None:
        config.shifts.first_shift_start = first_shift_start
    if shift_length is not None:
        config.shifts.shift_length_minutes = shift_length
    if grace is not None:
        config.shifts.grace_fraction = grace


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def config_option(func):
    return click.option(
        "--config",
        "-c",
        "config_path",
        type=click.Path(path_type=Path),
        default=None,
        help="YAML configuration file",
    )(func)


def shift_options(func):
    options = [
        click.option("--days-per-week", "-d", type=int, default=None,
                     help="Working days per week, starting Monday (1-7)"),
        click.option("--shift-count", "-n", type=int, default=None,
                     help="Shifts per working day (1-288)"),
        click.option("--first-shift-start", "-f", type=int, default=None,
                     help="Start of the first shift in hhmm format (0-2400)"),
        click.option("--shift-length", "-l", type=int, default=None,
                     help="Shift length in minutes (5-1440)"),
        click.option("--grace", "-g", type=float, default=None,
                     help="Fraction of a shift during which it may still be started (0-1, default 0.5)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__)
def main():
    """Connectedfactory MES - drives an Assembly, Test and Packaging line.

    Products move station by station with a monotonically increasing
    serial number. Production can be limited to a weekly shift calendar.
    """
    pass


@main.command()
@config_option
@click.option("--assembly", "-a", default=None, help="Endpoint of the assembly station")
@click.option("--test", "-t", default=None, help="Endpoint of the test station")
@click.option("--packaging", "-p", default=None, help="Endpoint of the packaging station")
@shift_options
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None,
              help="Log level (default: info)")
@click.option("--log-file", default=None, help="Rotating log file")
def run(config_path, assembly, test, packaging, days_per_week, shift_count, first_shift_start,
        shift_length, grace, log_level, log_file):
    """Connect to the stations and run the production line until Ctrl-C."""
    try:
        config = _load_config(config_path)
    except ConfigurationError as e:
        _fail(str(e))

    if assembly:
        config.stations.assembly = assembly
    if test:
        config.stations.test = test
    if packaging:
        config.stations.packaging = packaging
    _apply_shift_options(config, days_per_week, shift_count, first_shift_start, shift_length, grace)
    if log_level:
        config.logging.level = log_level.lower()
    if log_file is not None:
        config.logging.file = log_file

    setup_logging(config.logging)

    try:
        for endpoint in (config.stations.assembly, config.stations.test, config.stations.packaging):
            Endpoint.parse(endpoint)
        client = MqttStationClient(config.mqtt, config.timing.connect_timeout_s, config.timing.call_timeout_s)
        coordinator = Coordinator.from_config(config, client)
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        _fail(str(e))

    def signal_handler(sig, frame):
        logger.info("Shutdown requested")
        coordinator.shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("Press CTRL-C to exit.")
    try:
        if coordinator.start():
            coordinator.wait()
    except Exception:
        logger.critical("MES failed unexpectedly!", exc_info=True)
    finally:
        coordinator.stop()


@main.command()
@config_option
@shift_options
@click.option("--at", "at", type=click.DateTime(), default=None,
              help="Instant to evaluate (default: now)")
def shift(config_path, days_per_week, shift_count, first_shift_start, shift_length, grace, at):
    """Show which shift the calendar admits at a given instant."""
    try:
        config = _load_config(config_path)
        _apply_shift_options(config, days_per_week, shift_count, first_shift_start, shift_length, grace)
        shift_config = config.shifts.build()
    except ConfigurationError as e:
        _fail(str(e))

    if shift_config is None:
        click.echo("No shift calendar configured - production runs continuously")
        return

    now = at or datetime.now()
    decision = ShiftSchedule(shift_config).evaluate(now)
    click.echo(f"At:            {now:%Y-%m-%d %H:%M:%S} ({now:%A})")
    if decision.is_active:
        click.echo(f"Active shift:  {decision.active_shift} of {shift_config.shift_count}")
        click.echo(f"Shift ends:    {decision.shift_end:%Y-%m-%d %H:%M:%S}")
    else:
        click.echo("Active shift:  none")
        click.echo(f"Next boundary: {decision.next_boundary:%Y-%m-%d %H:%M:%S} ({decision.next_boundary:%A})")


@main.command()
@config_option
@click.option("--station", "-s", "role", type=ROLE_CHOICE, required=True, help="Station to call")
@click.option("--endpoint", "-e", default=None, help="Station endpoint (default: from config)")
@click.option("--shift", "shift_number", type=int, default=0, help="Shift number passed to Execute")
@click.option("--serial", type=int, default=None, help="Product serial number passed to Execute")
@click.argument("method", type=click.Choice(["execute", "reset", "open-pressure-release-valve"]))
def call(config_path, role, endpoint, shift_number, serial, method):
    """Invoke one method on one station, retrying until it succeeds."""
    try:
        config = _load_config(config_path)
        endpoint = endpoint or getattr(config.stations, role.lower())
        Endpoint.parse(endpoint)
    except ConfigurationError as e:
        _fail(str(e))
    setup_logging(config.logging)

    lock = threading.Lock()
    shutdown = threading.Event()
    client = MqttStationClient(config.mqtt, config.timing.connect_timeout_s, config.timing.call_timeout_s)
    station = create_station(StationRole(role.lower()), endpoint, client, lock, shutdown, config.timing)

    def signal_handler(sig, frame):
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not station.connect(monitor=False):
        _fail(f"Could not connect to {endpoint}")
    try:
        with lock:
            if method == "execute":
                ok = station.execute(shift=shift_number, serial_number=serial)
            elif method == "reset":
                ok = station.reset()
            else:
                ok = station.open_pressure_release_valve()
    finally:
        station.disconnect()

    if not ok:
        _fail(f"{method} on {station.name} was interrupted")
    click.echo(f"{station.name}: {method} succeeded")


@main.command()
@config_option
@click.option("--role", "-r", type=ROLE_CHOICE, required=True, help="Station role to simulate")
@click.option("--endpoint", "-e", default=None, help="Endpoint to serve (default: from config)")
def simulate(config_path, role, endpoint):
    """Run a simulated station against an MQTT broker."""
    try:
        config = _load_config(config_path)
        endpoint = endpoint or getattr(config.stations, role.lower())
        sim = StationSimulator(StationRole(role.lower()), endpoint, config.mqtt, config.simulation)
    except ConfigurationError as e:
        _fail(str(e))
    setup_logging(config.logging)

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        sim.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not sim.start():
        _fail(f"Could not start {sim.name}")
    while True:
        time.sleep(1)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file."""
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - Station endpoints")
    click.echo("  - Shift calendar (leave empty to produce continuously)")
    click.echo("  - Timing and logging")
    click.echo()
    click.echo(f"Run with: cfmes run --config {config_path}")


if __name__ == "__main__":
    main()
