"""
SOTE - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the node. Each error has a unique code for logging and for the wire
representation returned to clients and peers.

Author: sote contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all SOTE error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E108_KEY_DERIVATION_FAILED = "E108"

    # Network, Transport and Handshake Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_DELIVERY_FAILED = "E204"
    E205_ADDRESS_RESOLUTION_FAILED = "E205"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E209_HANDSHAKE_FAILED = "E209"
    E210_TRANSPORT_BOOTSTRAP_FAILED = "E210"
    E211_SELF_CONTACT = "E211"
    E212_UNKNOWN_HANDSHAKE = "E212"
    E213_HANDSHAKE_TIMEOUT = "E213"
    E214_DUPLICATE_CONTACT = "E214"
    E215_HANDSHAKE_REJECTED = "E215"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E302_IDENTITY_ALREADY_EXISTS = "E302"
    E305_INVALID_IDENTITY = "E305"
    E306_NOT_AUTHENTICATED = "E306"
    E307_INVALID_CREDENTIALS = "E307"

    # Contact Errors (E400-E499)
    E400_CONTACT_ERROR = "E400"
    E405_CONTACT_NOT_FOUND = "E405"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Server Errors (E800-E899)
    E800_SERVER_ERROR = "E800"
    E801_SERVER_START_FAILED = "E801"
    E804_INVALID_COMMAND = "E804"

    # Persistence Errors (E900-E999)
    E900_PERSISTENCE_ERROR = "E900"
    E901_NOT_FOUND = "E901"
    E902_WRITE_FAILED = "E902"


class SoteError(Exception):
    """Base exception class for all SOTE errors.

    All custom exceptions in SOTE inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (operation, identity, contact)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a SOTE error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SoteError":
        """Rebuild an error received over the wire.

        The most specific subclass for the code's range is used so callers
        can keep catching by category on the client side.
        """
        try:
            code = ErrorCode(data.get("code", ErrorCode.E001_UNKNOWN_ERROR.value))
        except ValueError:
            code = ErrorCode.E001_UNKNOWN_ERROR
        message = data.get("message", "Remote operation failed")
        details = data.get("details") or {}
        error_class = _CODE_RANGES.get(code.value[1], SoteError)
        if code in _TRANSPORT_CODES:
            error_class = TransportError
        elif code in _PROTOCOL_CODES:
            error_class = ProtocolError
        return error_class(code, message, details)


class CryptoError(SoteError):
    """Exception raised for cryptographic operation failures.

    This includes encryption, decryption, key parsing and key derivation.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NetworkError(SoteError):
    """Exception raised for framing and request validation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransportError(NetworkError):
    """Exception raised when the routing overlay cannot move bytes.

    Delivery failures, address resolution failures and bootstrap failures
    of the onion service all land here. They are never retried internally.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E204_DELIVERY_FAILED,
        message: str = "Delivery failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(SoteError):
    """Exception raised for contact exchange failures.

    Self-contact, duplicate contact and rejection are outcomes rather than
    failures and are reported through result values; only timeouts and
    unknown handshake ids are raised.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E209_HANDSHAKE_FAILED,
        message: str = "Contact exchange failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityError(SoteError):
    """Exception raised for identity creation and authentication failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ContactError(SoteError):
    """Exception raised for contact lookup failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_CONTACT_ERROR,
        message: str = "Contact operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(SoteError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ServerError(SoteError):
    """Exception raised for node server failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_SERVER_ERROR,
        message: str = "Server operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PersistenceError(SoteError):
    """Exception raised by the record store."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E900_PERSISTENCE_ERROR,
        message: str = "Persistence operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


# Leading digit of the numeric part -> error category
_CODE_RANGES = {
    "0": SoteError,
    "1": CryptoError,
    "2": NetworkError,
    "3": IdentityError,
    "4": ContactError,
    "7": ConfigError,
    "8": ServerError,
    "9": PersistenceError,
}

_TRANSPORT_CODES = {
    ErrorCode.E201_CONNECTION_FAILED,
    ErrorCode.E202_CONNECTION_TIMEOUT,
    ErrorCode.E203_CONNECTION_CLOSED,
    ErrorCode.E204_DELIVERY_FAILED,
    ErrorCode.E205_ADDRESS_RESOLUTION_FAILED,
    ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED,
}

_PROTOCOL_CODES = {
    ErrorCode.E209_HANDSHAKE_FAILED,
    ErrorCode.E211_SELF_CONTACT,
    ErrorCode.E212_UNKNOWN_HANDSHAKE,
    ErrorCode.E213_HANDSHAKE_TIMEOUT,
    ErrorCode.E214_DUPLICATE_CONTACT,
    ErrorCode.E215_HANDSHAKE_REJECTED,
}
