from typing import Optional


class BlossomError(Exception):
    """Base exception for blob server and reconciliation errors."""

    def __init__(self, message: str, server_url: Optional[str] = None):
        super().__init__(message)
        self.server_url = server_url


class TransientNetworkError(BlossomError):
    """Timeouts and connection resets; safe to retry."""
    pass


class AuthRejectedError(BlossomError):
    """HTTP 401 after both authorization prefixes were tried."""
    pass


class ServerError(BlossomError):
    """Non-401, non-2xx response."""

    def __init__(self, message: str, server_url: Optional[str] = None, status_code: int = 0):
        super().__init__(message, server_url)
        self.status_code = status_code


class DataIntegrityError(BlossomError):
    """Locally computed hash and server/downloaded hash disagree."""
    pass


class ProtocolMismatchError(BlossomError):
    """Response body had an unexpected shape."""
    pass


class SignatureRequiredError(BlossomError):
    """The signer could not sign without interactive confirmation."""
    pass


class UploadError(BlossomError):
    """Upload failed on every configured server."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])
