"""Error types raised by framecall."""


class FramecallError(Exception):
    """Base class for all framecall errors."""


class InvalidArguments(FramecallError, ValueError):
    """Raised when call arguments do not fit an operation's declared arguments."""


class UnsupportedFeature(FramecallError):
    """A value type the backend cannot accept (logged, the value is dropped)."""


class OperationNotFound(FramecallError, LookupError):
    """Raised when no operation is registered under the requested key."""

    def __init__(self, operation_key: str, operation_type: str | None = None) -> None:
        self.operation_key = operation_key
        self.operation_type = operation_type
        if operation_type:
            message = f"Operation '{operation_key}' of type '{operation_type}' not found"
        else:
            message = f"Operation '{operation_key}' not found"
        super().__init__(message)


class RemoteExecutionError(FramecallError, RuntimeError):
    """Raised when the execution backend reports an exception.

    ``str(exc)`` is the backend's message text, unchanged.
    """

    def __init__(self, message: str, request_id: int | None = None) -> None:
        self.request_id = request_id
        super().__init__(message)


class TransportFault(FramecallError, RuntimeError):
    """Raised for channel-level failures (unmatched ids, dead transports)."""


class RequestTimeout(FramecallError, TimeoutError):
    """Raised when a request's deadline passes without a terminal response."""

    def __init__(self, request_id: int, timeout: float | None = None) -> None:
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id} timed out after {timeout}s")
