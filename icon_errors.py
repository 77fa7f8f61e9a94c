"""Error taxonomy shared by the HTTP layer, both pipeline stages and the callers.

Every failure a run can surface is an IconServiceError subclass.  Callers show
``exc.user_message()`` to people and use ``exc.kind`` for machine-readable
branching (SSE payloads, DB rows, CLI exit paths).
"""

from __future__ import annotations

from typing import Optional

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


class IconServiceError(Exception):
    """Base class for every error a pipeline run can surface."""

    kind = "unknown"

    def user_message(self) -> str:
        return "An unknown error occurred."


class NetworkError(IconServiceError):
    """Transport-level failure (DNS, timeout, connection reset)."""

    kind = "network"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause

    def user_message(self) -> str:
        return f"Network error: {self.cause}"


class NoDataError(IconServiceError):
    """The server answered with an empty body."""

    kind = "no_data"

    def __init__(self, message: str = "Empty response body") -> None:
        super().__init__(message)

    def user_message(self) -> str:
        return "No data received from the server."


class DecodingError(IconServiceError):
    """The body was not a JSON object."""

    kind = "decoding"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause

    def user_message(self) -> str:
        return f"Error decoding response: {self.cause}"


class ApiError(IconServiceError):
    """Error reported by the provider (``error.message`` or a bad status)."""

    kind = "api"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def user_message(self) -> str:
        return f"API error: {self.message}"


class RateLimitExceeded(ApiError):
    """HTTP 429 from the provider.  Retryable, unlike its parent."""

    kind = "rate_limit"

    def __init__(self, message: str = RATE_LIMIT_MESSAGE, status: Optional[int] = 429) -> None:
        super().__init__(message, status)

    def user_message(self) -> str:
        return RATE_LIMIT_MESSAGE


class ImageDownloadError(IconServiceError):
    """Generated artifact could not be fetched or is not an image."""

    kind = "image_download"

    def __init__(self, message: str = "Generated image could not be downloaded") -> None:
        super().__init__(message)

    def user_message(self) -> str:
        return "Error downloading generated images."


class UnknownError(IconServiceError):
    """Unexpected local failure, e.g. while building a request body."""

    kind = "unknown"


class RunCancelled(Exception):
    """Raised inside a run when the caller abandons it.  Not a failure kind."""
