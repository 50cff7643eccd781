from enum import Enum
from pydantic import BaseModel
from typing import Optional

class ErrorCode(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    BAD_RESPONSE = "BAD_RESPONSE"
    POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
    DECODE_ERROR = "DECODE_ERROR"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"

class ErrorResponse(BaseModel):
    error_code: ErrorCode
    message: str  # User-friendly message
    details: Optional[str] = None  # Technical details (only in dev mode)
    retry_after: Optional[int] = None  # Seconds to wait before retry

# Custom Exception Classes
class DlmmViewerError(Exception):
    def __init__(self, code: ErrorCode, user_msg: str, details: str = None):
        self.code = code
        self.user_msg = user_msg
        self.details = details
        super().__init__(user_msg if details is None else f"{user_msg} ({details})")

class RateLimitError(DlmmViewerError):
    def __init__(self, service: str, retry_after: int = 60):
        super().__init__(
            ErrorCode.RATE_LIMITED,
            "API rate limit reached. Please try again later.",
            f"{service} returned HTTP 429"
        )
        self.retry_after = retry_after

class InvalidAddressError(DlmmViewerError):
    def __init__(self, address: str):
        super().__init__(
            ErrorCode.INVALID_ADDRESS,
            "Invalid Solana address format.",
            f"Address {address!r} is not a base58-encoded 32-byte public key"
        )

class ServiceUnavailableError(DlmmViewerError):
    def __init__(self, service: str):
        super().__init__(
            ErrorCode.SERVICE_UNAVAILABLE,
            "Service temporarily unavailable. Please try again.",
            f"{service} is unreachable"
        )

class ResponseShapeError(DlmmViewerError):
    """A third-party response is missing the keys we expect."""
    def __init__(self, service: str, details: str):
        super().__init__(
            ErrorCode.BAD_RESPONSE,
            "Unexpected response from upstream service.",
            f"{service}: {details}"
        )

class PositionDataError(DlmmViewerError):
    def __init__(self, position: str, details: str):
        super().__init__(
            ErrorCode.POSITION_UNAVAILABLE,
            "Position data could not be reconstructed.",
            f"{position}: {details}"
        )
        self.position = position

class MetadataDecodeError(DlmmViewerError):
    def __init__(self, mint: str, details: str):
        super().__init__(
            ErrorCode.DECODE_ERROR,
            "Token metadata could not be decoded.",
            f"{mint}: {details}"
        )

class UnsupportedCurrencyError(DlmmViewerError):
    def __init__(self, currency: str, details: str):
        super().__init__(
            ErrorCode.UNSUPPORTED_CURRENCY,
            "Positions cannot be valued in the requested currency.",
            f"{currency}: {details}"
        )
        self.currency = currency
