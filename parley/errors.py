from __future__ import annotations


class ParleyError(Exception):
    """Base class for failures the chat engine reports back to the caller."""


class TransportError(ParleyError):
    """Network failure or a non-success HTTP status from the completion endpoint."""


class ProtocolError(ParleyError):
    """The endpoint answered, but not with a usable chat completion."""


class PersonaError(ParleyError):
    """A character card could not be loaded."""


class ConfigError(ParleyError):
    pass


class Cancelled(Exception):
    """The caller aborted the request. Not a failure, so not a ParleyError."""
