"""Exception hierarchy for wabridge."""


class WabridgeError(Exception):
    """Base class for all wabridge errors."""


class ConfigError(WabridgeError):
    """Configuration could not be loaded or is invalid."""


class PersistenceError(WabridgeError):
    """A credential store read, write or delete failed."""


class TransportError(WabridgeError):
    """The gateway transport failed to connect or to execute a call."""


class TransportTimeout(TransportError):
    """The gateway did not answer a call in time."""
