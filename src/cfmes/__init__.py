"""Connectedfactory MES - coordinates an Assembly, Test and Packaging line."""

__version__ = "0.1.0"

from .config import Config
from .coordinator import Coordinator
from .shifts import ShiftConfig, ShiftSchedule
from .stations import StationRole, StationStatus

__all__ = [
    "Config",
    "Coordinator",
    "ShiftConfig",
    "ShiftSchedule",
    "StationRole",
    "StationStatus",
    "__version__",
]
