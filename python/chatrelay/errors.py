"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_POLICY_VIOLATION = "E_POLICY_VIOLATION"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CHAT_NOT_FOUND = "E_CHAT_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"
    E_ATTACHMENT_NOT_FOUND = "E_ATTACHMENT_NOT_FOUND"
    E_FILE_NOT_FOUND = "E_FILE_NOT_FOUND"
    E_USER_NOT_FOUND = "E_USER_NOT_FOUND"
    E_KEY_NOT_FOUND = "E_KEY_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_MODEL = "E_INVALID_MODEL"
    E_NO_CREDENTIAL = "E_NO_CREDENTIAL"
    E_UNSUPPORTED_PROVIDER = "E_UNSUPPORTED_PROVIDER"
    E_INVALID_PROVIDER = "E_INVALID_PROVIDER"
    E_INVALID_URL = "E_INVALID_URL"
    E_MESSAGE_NOT_EDITABLE = "E_MESSAGE_NOT_EDITABLE"
    E_INVALID_GRANT = "E_INVALID_GRANT"
    E_FILE_TOO_LARGE = "E_FILE_TOO_LARGE"
    E_USERNAME_TAKEN = "E_USERNAME_TAKEN"

    # Server errors
    E_INTERNAL = "E_INTERNAL"  # 500
    E_UPSTREAM = "E_UPSTREAM"  # 500
    E_STORAGE_ERROR = "E_STORAGE_ERROR"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_POLICY_VIOLATION: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_CHAT_NOT_FOUND: 404,
    ApiErrorCode.E_MESSAGE_NOT_FOUND: 404,
    ApiErrorCode.E_ATTACHMENT_NOT_FOUND: 404,
    ApiErrorCode.E_FILE_NOT_FOUND: 404,
    ApiErrorCode.E_USER_NOT_FOUND: 404,
    ApiErrorCode.E_KEY_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_MODEL: 400,
    ApiErrorCode.E_NO_CREDENTIAL: 400,
    ApiErrorCode.E_UNSUPPORTED_PROVIDER: 400,
    ApiErrorCode.E_INVALID_PROVIDER: 400,
    ApiErrorCode.E_INVALID_URL: 400,
    ApiErrorCode.E_MESSAGE_NOT_EDITABLE: 400,
    ApiErrorCode.E_INVALID_GRANT: 400,
    ApiErrorCode.E_FILE_TOO_LARGE: 400,
    ApiErrorCode.E_USERNAME_TAKEN: 409,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_UPSTREAM: 500,
    ApiErrorCode.E_STORAGE_ERROR: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found or not owned by the viewer."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Malformed or semantically invalid request."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class InvalidModelError(ApiError):
    """Model key is neither in the catalog nor served by a local endpoint."""

    def __init__(self, model_key: str):
        self.model_key = model_key
        super().__init__(ApiErrorCode.E_INVALID_MODEL, f"Invalid model: {model_key}")


class NoCredentialError(ApiError):
    """No personal, shared, aggregator or local credential for a provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(ApiErrorCode.E_NO_CREDENTIAL, f"API key for {provider} not found")


class UnsupportedProviderError(ApiError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(ApiErrorCode.E_UNSUPPORTED_PROVIDER, f"Unsupported provider: {provider}")


class UpstreamError(ApiError):
    """Provider or transport failure, message passed through untranslated."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(ApiErrorCode.E_UPSTREAM, message)


class PolicyViolationError(ApiError):
    def __init__(self, message: str):
        super().__init__(ApiErrorCode.E_POLICY_VIOLATION, message)
