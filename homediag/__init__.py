from .errors import DiagnosisError, LocationUnavailable, SessionError, StreamError, TurnInProgressError
from .models import Conversation, DiagnosisRecord, Location, Message, Provider
from .session import DiagnosticSession, SessionState
from .turn import StreamTurn, TurnPhase, TurnResult

__all__ = [
    "Conversation",
    "DiagnosisError",
    "DiagnosisRecord",
    "DiagnosticSession",
    "Location",
    "LocationUnavailable",
    "Message",
    "Provider",
    "SessionError",
    "SessionState",
    "StreamError",
    "StreamTurn",
    "TurnInProgressError",
    "TurnPhase",
    "TurnResult",
]
