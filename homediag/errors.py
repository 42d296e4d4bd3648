class DiagnosisError(Exception):
    """Base class for errors raised by homediag."""


class StreamError(DiagnosisError):
    """The model stream could not be opened or broke while being read."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class TurnInProgressError(DiagnosisError):
    """A turn is already streaming for this conversation."""


class SessionError(DiagnosisError):
    """The session is not in a state that allows the requested action."""


class LocationUnavailable(DiagnosisError):
    """The geolocation provider refused or failed to produce a position."""
