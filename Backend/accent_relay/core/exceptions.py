from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class RelayException(Exception):
    """Base exception for the accent relay"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RelayException):
    """Missing credentials or malformed voice/audio configuration"""
    pass


class TranscriptionError(RelayException):
    """Speech-to-text provider errors"""
    pass


class SynthesisError(RelayException):
    """Text-to-speech provider errors"""
    pass


class SynthesisStreamError(SynthesisError):
    """Error raised by a bidirectional synthesis stream.

    ``code`` carries the provider status code (gRPC numbering) when known.
    """

    def __init__(self, message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = code


class TransportError(RelayException):
    """Telephony media channel errors"""
    pass


class SessionNotFoundError(RelayException):
    """No active call session for the given identifier"""
    pass


# HTTP Exceptions for FastAPI
class HTTPNotFoundError(HTTPException):
    """HTTP not found error"""

    def __init__(self, resource: str, identifier: str = None):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"

        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": message, "type": "not_found_error", "resource": resource}
        )


class HTTPInternalServerError(HTTPException):
    """HTTP internal server error"""

    def __init__(self, detail: str = "Internal server error", error_id: str = None):
        error_detail = {"message": detail, "type": "internal_server_error"}
        if error_id:
            error_detail["error_id"] = error_id

        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_detail
        )


class HTTPServiceUnavailableError(HTTPException):
    """HTTP service unavailable error"""

    def __init__(self, detail: str = "Service temporarily unavailable", retry_after: int = 300):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": detail, "type": "service_unavailable_error"},
            headers={"Retry-After": str(retry_after)}
        )


# Exception mapping for consistent error responses
EXCEPTION_MAP = {
    ConfigurationError: HTTPServiceUnavailableError,
    TranscriptionError: HTTPServiceUnavailableError,
    SynthesisError: HTTPServiceUnavailableError,
    SynthesisStreamError: HTTPServiceUnavailableError,
    SessionNotFoundError: HTTPNotFoundError,
    TransportError: HTTPInternalServerError,
}


def map_exception_to_http(exc: RelayException) -> HTTPException:
    """Map application exception to HTTP exception"""
    exception_class = EXCEPTION_MAP.get(type(exc), HTTPInternalServerError)

    if exception_class == HTTPServiceUnavailableError:
        retry_after = exc.details.get('retry_after', 300)
        return exception_class(exc.message, retry_after)
    elif exception_class == HTTPNotFoundError:
        return exception_class("Call session", exc.details.get('call_id'))
    else:
        error_id = exc.details.get('error_id')
        return exception_class(exc.message, error_id)
