"""Configuration management for the MES."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .shifts import ShiftConfig

LOG_LEVELS = ("fatal", "error", "warn", "info", "debug", "verbose")


@dataclass
class MQTTConfig:
    """MQTT broker settings shared by all station sessions."""

    username: str = ""
    password: str = ""
    client_id: str = "cfmes"
    qos: int = 1
    keepalive_s: int = 10
    reconnect_max_delay_s: int = 10


@dataclass
class StationsConfig:
    """Station endpoints, one per role."""

    assembly: str = "mqtt://localhost:1883/cfmes/assembly"
    test: str = "mqtt://localhost:1883/cfmes/test"
    packaging: str = "mqtt://localhost:1883/cfmes/packaging"


@dataclass
class ShiftSettings:
    """Raw shift parameters. All None means shift gating is disabled."""

    days_per_week: Optional[int] = None
    shift_count: Optional[int] = None
    first_shift_start: Optional[int] = None
    shift_length_minutes: Optional[int] = None
    grace_fraction: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return any(
            v is not None
            for v in (
                self.days_per_week,
                self.shift_count,
                self.first_shift_start,
                self.shift_length_minutes,
                self.grace_fraction,
            )
        )

    def build(self) -> Optional[ShiftConfig]:
        """Validate into a ShiftConfig, or None when gating is disabled."""
        if not self.enabled:
            return None
        missing = [
            name
            for name in ("days_per_week", "shift_count", "first_shift_start", "shift_length_minutes")
            if getattr(self, name) is None
        ]
        if missing:
            raise ConfigurationError(f"Incomplete shift configuration, missing: {', '.join(missing)}")
        try:
            return ShiftConfig(
                days_per_week=int(self.days_per_week),
                shift_count=int(self.shift_count),
                first_shift_start=int(self.first_shift_start),
                shift_length_minutes=int(self.shift_length_minutes),
                grace_fraction=0.5 if self.grace_fraction is None else float(self.grace_fraction),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid shift configuration: {e}") from e


@dataclass
class TimingConfig:
    """Fixed delays and intervals, in seconds."""

    production_slot_s: float = 1.0
    connect_retry_delay_s: float = 10.0
    reconnect_period_s: float = 10.0
    call_retry_delay_s: float = 10.0
    fault_delay_s: float = 60.0
    connect_timeout_s: float = 60.0
    call_timeout_s: float = 10.0
    shift_poll_max_s: float = 60.0


@dataclass
class LoggingConfig:
    """Log level and optional rotating log file."""

    level: str = "info"
    file: str = ""
    max_bytes: int = 1024 * 1024
    backup_count: int = 2


@dataclass
class SimulationConfig:
    """Station simulator parameters."""

    work_time_range_s: Tuple[float, float] = (3.0, 8.0)
    discard_probability: float = 0.05
    fault_probability: float = 0.01
    tick_interval_ms: int = 500
    random_seed: Optional[int] = None


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    stations: StationsConfig = field(default_factory=StationsConfig)
    shifts: ShiftSettings = field(default_factory=ShiftSettings)
    timing: TimingConfig = field(default_factory=TimingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        return cls._from_dict(data)

    @classmethod
    def from_env(cls, config: Optional["Config"] = None) -> "Config":
        """Apply environment variable overrides on top of ``config``."""
        if config is None:
            config = cls.default()

        config.stations.assembly = os.getenv("CFMES_ASSEMBLY_STATION", config.stations.assembly)
        config.stations.test = os.getenv("CFMES_TEST_STATION", config.stations.test)
        config.stations.packaging = os.getenv("CFMES_PACKAGING_STATION", config.stations.packaging)

        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)

        level = os.getenv("CFMES_LOG_LEVEL")
        if level:
            config.logging.level = level.lower()

        # log file location used by the gateway deployment
        if os.getenv("_GW_LOGP"):
            config.logging.file = os.environ["_GW_LOGP"]

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "mqtt" in data:
            mqtt_data = data["mqtt"] or {}
            config.mqtt = MQTTConfig(
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=mqtt_data.get("qos", config.mqtt.qos),
                keepalive_s=mqtt_data.get("keepalive_s", config.mqtt.keepalive_s),
                reconnect_max_delay_s=mqtt_data.get(
                    "reconnect_max_delay_s", config.mqtt.reconnect_max_delay_s
                ),
            )

        if "stations" in data:
            st_data = data["stations"] or {}
            config.stations = StationsConfig(
                assembly=st_data.get("assembly", config.stations.assembly),
                test=st_data.get("test", config.stations.test),
                packaging=st_data.get("packaging", config.stations.packaging),
            )

        if "shifts" in data:
            shift_data = data["shifts"] or {}
            config.shifts = ShiftSettings(
                days_per_week=shift_data.get("days_per_week"),
                shift_count=shift_data.get("shift_count"),
                first_shift_start=shift_data.get("first_shift_start"),
                shift_length_minutes=shift_data.get("shift_length_minutes"),
                grace_fraction=shift_data.get("grace_fraction"),
            )

        if "timing" in data:
            timing_data = data["timing"] or {}
            defaults = TimingConfig()
            try:
                config.timing = TimingConfig(
                    **{
                        name: float(timing_data.get(name, getattr(defaults, name)))
                        for name in defaults.__dataclass_fields__
                    }
                )
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid timing configuration: {e}") from e

        if "logging" in data:
            log_data = data["logging"] or {}
            config.logging = LoggingConfig(
                level=str(log_data.get("level", config.logging.level)).lower(),
                file=log_data.get("file", config.logging.file) or "",
                max_bytes=log_data.get("max_bytes", config.logging.max_bytes),
                backup_count=log_data.get("backup_count", config.logging.backup_count),
            )
            if config.logging.level not in LOG_LEVELS:
                raise ConfigurationError(f"The log level must be one of: {', '.join(LOG_LEVELS)}")

        if "simulation" in data:
            sim_data = data["simulation"] or {}
            config.simulation = SimulationConfig(
                work_time_range_s=tuple(
                    sim_data.get("work_time_range_s", config.simulation.work_time_range_s)
                ),
                discard_probability=sim_data.get(
                    "discard_probability", config.simulation.discard_probability
                ),
                fault_probability=sim_data.get(
                    "fault_probability", config.simulation.fault_probability
                ),
                tick_interval_ms=sim_data.get(
                    "tick_interval_ms", config.simulation.tick_interval_ms
                ),
                random_seed=sim_data.get("random_seed"),
            )

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "keepalive_s": self.mqtt.keepalive_s,
                "reconnect_max_delay_s": self.mqtt.reconnect_max_delay_s,
            },
            "stations": {
                "assembly": self.stations.assembly,
                "test": self.stations.test,
                "packaging": self.stations.packaging,
            },
            "shifts": {
                "days_per_week": self.shifts.days_per_week,
                "shift_count": self.shifts.shift_count,
                "first_shift_start": self.shifts.first_shift_start,
                "shift_length_minutes": self.shifts.shift_length_minutes,
                "grace_fraction": self.shifts.grace_fraction,
            },
            "timing": {
                name: getattr(self.timing, name) for name in self.timing.__dataclass_fields__
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
                "max_bytes": self.logging.max_bytes,
                "backup_count": self.logging.backup_count,
            },
            "simulation": {
                "work_time_range_s": list(self.simulation.work_time_range_s),
                "discard_probability": self.simulation.discard_probability,
                "fault_probability": self.simulation.fault_probability,
                "tick_interval_ms": self.simulation.tick_interval_ms,
                "random_seed": self.simulation.random_seed,
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
