"""Error taxonomy for the compression service.

Each error carries the HTTP status the function app answers with.
"""


class CompressionServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class AuthenticationError(CompressionServiceError):
    """Missing or unknown API key on a protected endpoint."""

    status_code = 401


class ValidationError(CompressionServiceError):
    """Malformed or out-of-range ``url`` / ``size`` parameter."""

    status_code = 400


class UnsupportedFormatError(CompressionServiceError):
    status_code = 400


class QueueFullError(CompressionServiceError):
    """Admission rejected; the caller should retry later."""

    status_code = 429


class FetchError(CompressionServiceError):
    pass


class EncodeProcessError(CompressionServiceError):
    """The external encoder exited abnormally or timed out."""

    def __init__(self, message: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class NonConvergenceError(CompressionServiceError):
    """Video search exhausted its attempts outside the tolerance window."""

    def __init__(self, message: str = "", actual_mb: float = 0.0, target_mb: float = 0.0) -> None:
        super().__init__(message)
        self.actual_mb = actual_mb
        self.target_mb = target_mb


class UploadError(CompressionServiceError):
    pass


class CompressionTimeoutError(CompressionServiceError):
    pass
