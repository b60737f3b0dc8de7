"""
SOTE - Decentralized Peer-to-Peer Encrypted Messaging

Every user runs a node reachable through an anonymizing overlay. Contacts
are added through an approved handshake and messages are end-to-end
encrypted, with an archival copy kept under the sender's password.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    ContactError,
    CryptoError,
    ErrorCode,
    IdentityError,
    NetworkError,
    PersistenceError,
    ProtocolError,
    ServerError,
    SoteError,
    TransportError,
)

__all__ = [
    "APP_NAME",
    "VERSION",
    "Config",
    "ConfigError",
    "ContactError",
    "CryptoError",
    "ErrorCode",
    "IdentityError",
    "NetworkError",
    "PersistenceError",
    "ProtocolError",
    "ServerError",
    "SoteError",
    "TransportError",
    "__license__",
    "__version__",
]
