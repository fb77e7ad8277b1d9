"""Exception types raised by the voicecall bridge."""

from typing import Optional


class VoiceCallError(Exception):
    """Base class for bridge errors."""


class TransportError(VoiceCallError):
    """A REST call to the bridge failed (non-2xx status or network failure).

    ``status`` is None when no HTTP response was received.
    """

    def __init__(self, method: str, path: str, status: Optional[int] = None, body: str = "", reason: str = ""):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        self.reason = reason
        detail = f"{status} {reason}".strip() if status is not None else (reason or "network error")
        message = f"bridge {method} {path} failed: {detail}"
        if body:
            message = f"{message} - {body}"
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class MalformedEventError(VoiceCallError):
    """An event stream frame could not be decoded into an event object."""

    def __init__(self, message: str, frame: str = ""):
        self.frame = frame
        super().__init__(message)


class AgentCallbackFailure(VoiceCallError):
    """The agent's transcription handler raised."""

    def __init__(self, call_id: str, cause: BaseException):
        self.call_id = call_id
        self.cause = cause
        super().__init__(f"agent callback failed for {call_id}: {cause}")
