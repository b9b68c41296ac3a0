from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    RATE_LIMITED = "upstream_rate_limited"
    AUTH = "upstream_auth_error"
    TRANSPORT = "upstream_transport_error"
    UPSTREAM = "upstream_error"
    MALFORMED_RESPONSE = "upstream_malformed_response"
    RESPONSE_VALIDATION = "response_validation_error"


class PipelineError(RuntimeError):
    """Base error for the chat/report pipeline.

    ``message`` is safe to show to the user; ``status_code`` is what the HTTP
    layer answers with.
    """

    kind: ErrorKind = ErrorKind.UPSTREAM
    status_code: int = 500
    default_message = "Failed to process your request. Please try again."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InputValidationError(PipelineError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    default_message = "Invalid request."


class UpstreamError(PipelineError):
    kind = ErrorKind.UPSTREAM
    status_code = 500
    default_message = "Failed to get response from AI service."


class UpstreamRateLimited(UpstreamError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    default_message = "AI service quota exceeded. Please try again later."


class UpstreamAuthError(UpstreamError):
    kind = ErrorKind.AUTH
    status_code = 500
    default_message = "AI service configuration error. Please check API key."


class UpstreamTransportError(UpstreamError):
    kind = ErrorKind.TRANSPORT
    status_code = 500
    default_message = "Network error. Please check your connection and try again."


class UpstreamMalformedResponse(PipelineError, ValueError):
    kind = ErrorKind.MALFORMED_RESPONSE
    status_code = 500
    default_message = "Invalid response format from AI service."


class ResponseValidationError(PipelineError, ValueError):
    kind = ErrorKind.RESPONSE_VALIDATION
    status_code = 500
    default_message = "AI service response is missing required sections."
