"""Client-side error types.

``ApiError`` carries the HTTP status and the server's machine code so callers
can branch on ``code`` rather than on message text.
"""


class ApiError(Exception):
    def __init__(self, message: str, status: int, code: str | None = None, debug_id: str | None = None):
        self.message = message
        self.status = status
        self.code = code
        self.debug_id = debug_id
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class AuthRequired(ApiError):
    """Access session missing or expired: re-authenticate instead of retrying."""

    def __init__(self, message: str = "Authentication required", status: int = 401, code: str = "auth_required"):
        super().__init__(message, status, code)


class RequestTimeout(ApiError):
    def __init__(self, message: str = "Request timeout"):
        super().__init__(message, 408, "TIMEOUT")


class NetworkError(ApiError):
    def __init__(self, message: str):
        super().__init__(message, 0, "NETWORK_ERROR")
