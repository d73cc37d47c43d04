"""
Defines custom exceptions used throughout the engine.

These exceptions allow for more specific error handling than built-in exceptions.
"""
from typing import List, Optional


class DownlinkError(Exception):
    """Base class for engine errors."""
    pass

class DownloadCancelledError(DownlinkError):
    """Custom exception for cancelled downloads."""
    pass

class URLExtractionError(DownlinkError):
    """Custom exception for URL processing failures."""
    def __init__(self, message: str, exit_code: Optional[int] = None, lines: Optional[List[str]] = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.lines = lines or []

class JobNotFoundError(DownlinkError, KeyError):
    """Raised when a command references a job id the scheduler does not know."""
    def __str__(self) -> str:
        return f"Unknown job: {self.args[0]}"

class InvalidTransitionError(DownlinkError):
    """Raised when a job is asked to move to a status its current status does not allow."""
    pass

class SpawnError(DownlinkError):
    """Raised when a job cannot get a running process. Carries the ClassifiedError for the job."""
    def __init__(self, error):
        super().__init__(error.user_message)
        self.error = error

class ToolUnavailableError(SpawnError):
    """Raised instead of spawning when the engine binary is missing or unhealthy."""
    pass

class InvariantViolation(DownlinkError):
    """An internal consistency check failed. Programming error, never user-facing."""
    pass

class PlaylistExpansionError(DownlinkError):
    """Raised when a playlist cannot be enumerated. Carries the ClassifiedError for the parent."""
    def __init__(self, error):
        super().__init__(error.user_message)
        self.error = error
