"""
Error taxonomy shared by the transport client, the cache and the mutation
coordinator.

    CourtAPIError
    ├── NetworkError     transport failed (status 0)
    ├── RequestError     non-2xx, or success: false in the envelope
    ├── ParseError       malformed or non-JSON response body
    ├── AuthError        401/403, or credential refresh failed
    └── ValidationError  invalid mutation arguments, raised before any request
"""


class CourtAPIError(Exception):
    """Base exception for backend API errors."""

    default_code = "API_ERROR"

    def __init__(self, message: str, code: str = None, status: int = 500, response: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status
        self.response = response

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code!r}, status={self.status}, message={self.message!r})"


class NetworkError(CourtAPIError):
    default_code = "NETWORK_ERROR"

    def __init__(self, message: str = "Network error. Please check your connection.", code: str = None):
        super().__init__(message, code=code, status=0)


class RequestError(CourtAPIError):
    default_code = "REQUEST_ERROR"


class ParseError(CourtAPIError):
    default_code = "PARSE_ERROR"


class AuthError(CourtAPIError):
    default_code = "AUTH_REQUIRED"

    def __init__(self, message: str, code: str = None, status: int = 401, response: dict = None):
        super().__init__(message, code=code, status=status, response=response)


class ValidationError(CourtAPIError):
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = None):
        super().__init__(message, status=0)
        self.field = field
