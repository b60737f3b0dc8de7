"""
SOTE - Global Constants and Configuration Values

This module defines all constants used throughout the SOTE node.
All magic numbers and configuration defaults are centralized here.

Author: sote contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "SOTE"

# Network Constants
DEFAULT_NODE_PORT = 18080
DEFAULT_HOST = "127.0.0.1"
LOCALHOST = "127.0.0.1"

# Connection Timeouts (seconds)
CONNECTION_TIMEOUT = 60
REQUEST_TIMEOUT = 120
CLIENT_IDLE_TIMEOUT = 60

# Handshake Constants
APPROVAL_TIMEOUT = 300  # 5 minutes for the remote human to decide
MAX_PENDING_INTRODUCTIONS = 100

# Message Limits
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MB frame payload
MAX_TEXT_MESSAGE_SIZE = 100 * 1024  # 100 KB plaintext
MAX_USERNAME_LENGTH = 64
MIN_PASSWORD_LENGTH = 1

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256 / X25519
NONCE_SIZE = 12  # 96 bits for AES-GCM and ChaCha20-Poly1305
TAG_SIZE = 16  # 128-bit AEAD tag
AUTH_HASH_ROUNDS = 21  # SHA-256 rounds for the password verifier
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
SYMMETRIC_KEY_SALT = b"sote-symmetric-key-v1"
TRANSIT_KEY_INFO = b"sote-transit-message-key-v1"
SEALED_BOX_VERSION = 1

# Tor Constants
TOR_BINARY = "tor"
TOR_SOCKS_HOST = "127.0.0.1"
TOR_SOCKS_PORT = 9060
TOR_CONTROL_PORT = 9061
TOR_BOOTSTRAP_TIMEOUT = 120  # seconds to wait for the hostname file
TOR_POLL_INTERVAL = 1.0
TORRC_FILENAME = "torrc"
PROVISION_TORRC_FILENAME = "torrc.provision"  # publishes the hostname only, no SOCKS or control port
TOR_HOSTNAME_FILENAME = "hostname"
ONION_SUFFIX = ".onion"

# File Paths
DEFAULT_DATA_DIR = "~/.sote"
DATABASE_FILENAME = "sote.db"
CONFIG_FILENAME = "config.toml"
HIDDEN_SERVICE_DIR = "hidden_services"
LOGS_DIR = "logs"
LOG_FILENAME = "sote.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Protocol Version
PROTOCOL_VERSION = 1
