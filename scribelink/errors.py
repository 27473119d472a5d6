"""Exception types shared across ScribeLink components."""


class ScribeLinkError(Exception):
    """Base class for all ScribeLink errors."""


class WavFormatError(ScribeLinkError):
    """The recording file is not a RIFF/WAVE container."""


class CaptureError(ScribeLinkError):
    """Audio capture could not be started (device missing, permission denied)."""


class SessionError(ScribeLinkError):
    """A recording session could not be created, resumed or closed."""


class BackendError(ScribeLinkError):
    """A call to the remote backend failed. Retryable."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class SessionNotFoundError(BackendError):
    """The backend does not know the session. Not retryable."""


class IntegrityError(ScribeLinkError):
    """A segment file no longer matches its persisted checksum."""
