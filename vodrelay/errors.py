from typing import Dict, Optional


class RelayError(Exception):
    """Base error; ``status`` is the HTTP status used when headers are not sent yet."""

    status = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class DecodeError(RelayError):
    status = 400
    public_message = "Invalid video id"


class InvalidRequest(RelayError):
    status = 400
    public_message = "Invalid request"


class AuthError(RelayError):
    status = 401
    public_message = "Access token required"


class AccessError(RelayError):
    status = 403
    public_message = "Access denied"


class NotFound(RelayError):
    status = 404
    public_message = "Video not found"


class RangeUnsatisfiable(RelayError):
    status = 416
    public_message = "Range Not Satisfiable"

    def __init__(
        self, total_size: int, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None
    ) -> None:
        super().__init__(message)
        self.total_size = total_size
        self.headers = headers or {}


class ProbeError(RelayError):
    public_message = "Could not analyse file"


class ConversionError(RelayError):
    public_message = "Conversion failed"

    def __init__(self, message: Optional[str] = None, stderr: str = "", exit_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.exit_status = exit_status


class RemoteExecError(RelayError):
    public_message = "Remote server error"


class RemoteTimeout(RemoteExecError):
    public_message = "Remote server timed out"
