"""
Application exceptions mapped to HTTP status codes by the error handlers.
"""


class AppError(Exception):
    """Base exception for errors reported to the HTTP caller."""

    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    """Raised for missing or malformed client input."""

    status_code = 400


class NotFoundError(AppError):
    """Raised when a folder, file, or file on disk does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class ConflictError(AppError):
    """Raised when a folder is loaded twice or a file is not ready yet."""

    status_code = 409

    def __init__(self, message: str = "Conflict"):
        super().__init__(message)


class UpstreamError(AppError):
    """Raised when the remote source fails while serving a request."""

    status_code = 502
