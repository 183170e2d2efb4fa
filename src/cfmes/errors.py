"""Error types raised by the MES core."""


class MesError(Exception):
    """Base class for all MES errors."""


class ConfigurationError(MesError):
    """Invalid startup configuration. Fatal, the coordinator does not start."""


class TransportError(MesError):
    """A station could not be reached, read, called or subscribed.

    Always recoverable: callers log it and retry after a fixed delay.
    """


class ProtocolViolation(MesError):
    """A station reported a value outside the station contract."""
