"""
SOTE - Utility functions.

Provides logging setup, validation helpers for usernames and network
addresses, and timestamp formatting.
"""

import logging
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Tuple

from rich.logging import RichHandler

from .constants import (
    DEFAULT_NODE_PORT,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
    MAX_USERNAME_LENGTH,
)

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
HOSTNAME_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def setup_logging(
    level: str = "INFO",
    data_dir: Optional[Path] = None,
    console_logging: bool = True,
    file_logging: bool = True,
) -> None:
    """
    Configure the root logger for a node or CLI process.

    Console output goes through rich; file output is rotated under
    ``<data_dir>/logs``. Calling this twice replaces the earlier handlers.

    Args:
        level: Logging level name
        data_dir: Data directory holding the logs directory
        console_logging: Whether to log to the terminal
        file_logging: Whether to log to a rotating file (needs data_dir)
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if console_logging:
        console = RichHandler(rich_tracebacks=True, show_path=False)
        console.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(console)

    if file_logging and data_dir is not None:
        log_dir = Path(data_dir) / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        root.addHandler(file_handler)


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with microseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def format_timestamp(iso_timestamp: str, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format an ISO timestamp to a human-readable string.

    Args:
        iso_timestamp: ISO 8601 timestamp string
        format_str: strftime format string

    Returns:
        Formatted timestamp string, or original if parsing fails
    """
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
        return dt.strftime(format_str)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Failed to parse timestamp '{iso_timestamp}': {e}")
        return iso_timestamp


def validate_username(username: str) -> bool:
    """
    Validate a username.

    Usernames are 1 to MAX_USERNAME_LENGTH characters of letters, digits,
    dot, dash and underscore.
    """
    if not isinstance(username, str):
        return False
    if not 0 < len(username) <= MAX_USERNAME_LENGTH:
        return False
    return bool(USERNAME_PATTERN.match(username))


def validate_port(port: int) -> bool:
    """
    Validate a port number.

    Args:
        port: Port number to validate

    Returns:
        True if valid, False otherwise
    """
    return 1 <= port <= 65535


def validate_hostname(hostname: str) -> bool:
    """
    Validate a hostname.

    Args:
        hostname: Hostname string

    Returns:
        True if valid hostname, False otherwise
    """
    if not hostname or len(hostname) > 255:
        return False

    if hostname[-1] == ".":
        hostname = hostname[:-1]

    if not hostname:
        return False

    return bool(HOSTNAME_PATTERN.match(hostname))


def parse_network_address(address: str, default_port: int = DEFAULT_NODE_PORT) -> Tuple[str, int]:
    """
    Split a network address into host and port.

    Accepts ``host``, ``host:port`` and onion addresses with or without a
    port. Surrounding whitespace is stripped (hostname files end in a
    newline).

    Raises:
        ValueError: If the address is malformed
    """
    if not isinstance(address, str):
        raise ValueError("Network address must be a string")

    cleaned = address.strip()
    host, sep, port_text = cleaned.rpartition(":")
    if not sep:
        host, port = cleaned, default_port
    else:
        try:
            port = int(port_text)
        except ValueError:
            raise ValueError(f"Invalid port in network address: {address!r}") from None

    if not validate_hostname(host):
        raise ValueError(f"Invalid host in network address: {address!r}")
    if not validate_port(port):
        raise ValueError(f"Invalid port in network address: {address!r}")

    return host, port


def normalize_network_address(address: str) -> str:
    """Canonical ``host:port`` form used for comparisons."""
    host, port = parse_network_address(address)
    return f"{host.lower()}:{port}"


def format_fingerprint(fingerprint: str) -> str:
    """
    Format a fingerprint for display with spaces every 4 characters.

    Args:
        fingerprint: Hex fingerprint string

    Returns:
        Formatted fingerprint
    """
    return " ".join(fingerprint[i : i + 4] for i in range(0, len(fingerprint), 4))


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix
