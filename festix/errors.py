from typing import Optional


class FestixError(Exception):
    """Base for errors surfaced to the caller with an HTTP-ish status."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(FestixError):
    # bad input or a business rule refusal; never mutates state
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(FestixError):
    status_code = 404
    default_code = "NOT_FOUND"


class GatewayError(FestixError):
    # payment provider unreachable, timed out or rejected the call
    status_code = 502
    default_code = "GATEWAY_ERROR"


class PersistenceError(FestixError):
    status_code = 500
    default_code = "PERSISTENCE_ERROR"


class SignatureError(FestixError):
    status_code = 401
    default_code = "INVALID_SIGNATURE"
