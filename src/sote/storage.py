"""
SOTE - Record store.

Defines the PersistenceGateway interface used by the core components and
SQLiteStore, the shipped implementation.

Layout:
- identities: one row per local user, username unique
- contacts: keyed by (owner_username, contact_username)
- messages: append-only, ordered by (timestamp, id)
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import List, Optional, Union

from .contact import Contact
from .errors import ErrorCode, IdentityError, PersistenceError
from .identity import Identity
from .message import Message
from .utils import utc_now_iso

logger = logging.getLogger(__name__)


class PersistenceGateway(ABC):
    """Interface between the core components and the record store."""

    @abstractmethod
    def save_identity(self, identity: Identity) -> None:
        """Persist a new identity; raises IdentityError(E302) on duplicates."""

    @abstractmethod
    def get_identity(self, username: str) -> Identity:
        """Look up an identity; raises PersistenceError(E901) if unknown."""

    @abstractmethod
    def has_identity(self, username: str) -> bool:
        """Return True if an identity with this username exists."""

    @abstractmethod
    def insert_contact(self, contact: Contact) -> bool:
        """Insert a contact unless one exists for the pair; True if inserted."""

    @abstractmethod
    def find_contact(self, owner_username: str, contact_username: str) -> Optional[Contact]:
        """Return the contact for the pair, or None."""

    @abstractmethod
    def list_contacts(self, owner_username: str) -> List[Contact]:
        """All contacts of an owner, oldest first."""

    @abstractmethod
    def append_message(self, sender: str, receiver: str, ciphertext: bytes) -> Message:
        """Append a message row and return it with its id and timestamp."""

    @abstractmethod
    def list_conversation(self, username: str, peer: str) -> List[Message]:
        """Rows between the two users in either direction, oldest first."""

    def get_contact(self, owner_username: str, contact_username: str) -> Contact:
        """Look up a contact; raises PersistenceError(E901) if unknown."""
        contact = self.find_contact(owner_username, contact_username)
        if contact is None:
            raise PersistenceError(
                ErrorCode.E901_NOT_FOUND,
                f"Contact not found: {contact_username}",
                {"operation": "get_contact", "owner": owner_username, "contact": contact_username},
            )
        return contact

    def close(self) -> None:
        """Release any resources held by the store."""


class SQLiteStore(PersistenceGateway):
    """SQLite-backed record store.

    A single connection is shared and every access is serialised with a
    lock. Message timestamps are assigned under the same lock so they never
    go backwards in insertion order, even if the wall clock does.

    Attributes:
        db_path: Path to the database file, or ":memory:"
        conn: SQLite connection
    """

    def __init__(self, db_path: Union[str, Path]):
        """Open (and create if needed) the database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"

        Raises:
            PersistenceError: If the database cannot be opened
        """
        self.db_path = str(db_path)
        self._lock = Lock()
        self._last_timestamp = ""

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._create_tables()
            self._last_timestamp = self._load_last_timestamp()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(
                ErrorCode.E900_PERSISTENCE_ERROR,
                f"Failed to open database: {e}",
                {"operation": "open", "path": self.db_path},
            ) from e

        logger.info(f"Record store opened: {self.db_path}")

    def _create_tables(self) -> None:
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS identities (
                username TEXT PRIMARY KEY,
                password_verifier TEXT NOT NULL,
                encrypted_private_key BLOB NOT NULL,
                public_key BLOB NOT NULL,
                network_address TEXT NOT NULL,
                transport_config_ref TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_username TEXT NOT NULL,
                contact_username TEXT NOT NULL,
                contact_network_address TEXT NOT NULL,
                contact_public_key BLOB NOT NULL,
                added_at TEXT NOT NULL,
                UNIQUE (owner_username, contact_username)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender TEXT NOT NULL,
                receiver TEXT NOT NULL,
                ciphertext BLOB NOT NULL,
                timestamp TEXT NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_messages_pair
            ON messages(sender, receiver, timestamp)
        """
        )

        self.conn.commit()

    def _load_last_timestamp(self) -> str:
        row = self.conn.execute("SELECT MAX(timestamp) AS ts FROM messages").fetchone()
        return row["ts"] or ""

    def _next_timestamp(self) -> str:
        # Caller holds the lock.
        now = utc_now_iso()
        self._last_timestamp = max(now, self._last_timestamp)
        return self._last_timestamp

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        return Identity(
            username=row["username"],
            password_verifier=row["password_verifier"],
            encrypted_private_key=bytes(row["encrypted_private_key"]),
            public_key=bytes(row["public_key"]),
            network_address=row["network_address"],
            transport_config_ref=row["transport_config_ref"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> Contact:
        return Contact(
            owner_username=row["owner_username"],
            contact_username=row["contact_username"],
            contact_network_address=row["contact_network_address"],
            contact_public_key=bytes(row["contact_public_key"]),
            added_at=row["added_at"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            message_id=row["id"],
            sender=row["sender"],
            receiver=row["receiver"],
            ciphertext=bytes(row["ciphertext"]),
            timestamp=row["timestamp"],
        )

    def save_identity(self, identity: Identity) -> None:
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO identities
                    (username, password_verifier, encrypted_private_key, public_key,
                     network_address, transport_config_ref, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        identity.username,
                        identity.password_verifier,
                        identity.encrypted_private_key,
                        identity.public_key,
                        identity.network_address,
                        identity.transport_config_ref,
                        identity.created_at,
                    ),
                )
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise IdentityError(
                    ErrorCode.E302_IDENTITY_ALREADY_EXISTS,
                    f"Username already exists: {identity.username}",
                    {"operation": "save_identity", "username": identity.username},
                ) from e
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(
                    ErrorCode.E902_WRITE_FAILED,
                    f"Failed to save identity: {e}",
                    {"operation": "save_identity", "username": identity.username},
                ) from e

        logger.debug(f"Saved identity: {identity.username}")

    def get_identity(self, username: str) -> Identity:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM identities WHERE username = ?", (username,)
            ).fetchone()

        if row is None:
            raise PersistenceError(
                ErrorCode.E901_NOT_FOUND,
                f"Identity not found: {username}",
                {"operation": "get_identity", "username": username},
            )
        return self._row_to_identity(row)

    def has_identity(self, username: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM identities WHERE username = ?", (username,)
            ).fetchone()
        return row is not None

    def insert_contact(self, contact: Contact) -> bool:
        with self._lock:
            try:
                cursor = self.conn.execute(
                    """
                    INSERT OR IGNORE INTO contacts
                    (owner_username, contact_username, contact_network_address,
                     contact_public_key, added_at)
                    VALUES (?, ?, ?, ?, ?)
                """,
                    (
                        contact.owner_username,
                        contact.contact_username,
                        contact.contact_network_address,
                        contact.contact_public_key,
                        contact.added_at,
                    ),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(
                    ErrorCode.E902_WRITE_FAILED,
                    f"Failed to save contact: {e}",
                    {
                        "operation": "insert_contact",
                        "owner": contact.owner_username,
                        "contact": contact.contact_username,
                    },
                ) from e

        return cursor.rowcount == 1

    def find_contact(self, owner_username: str, contact_username: str) -> Optional[Contact]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM contacts WHERE owner_username = ? AND contact_username = ?",
                (owner_username, contact_username),
            ).fetchone()
        return self._row_to_contact(row) if row else None

    def list_contacts(self, owner_username: str) -> List[Contact]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM contacts WHERE owner_username = ? ORDER BY id",
                (owner_username,),
            ).fetchall()
        return [self._row_to_contact(row) for row in rows]

    def append_message(self, sender: str, receiver: str, ciphertext: bytes) -> Message:
        with self._lock:
            timestamp = self._next_timestamp()
            try:
                cursor = self.conn.execute(
                    "INSERT INTO messages (sender, receiver, ciphertext, timestamp) VALUES (?, ?, ?, ?)",
                    (sender, receiver, ciphertext, timestamp),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(
                    ErrorCode.E902_WRITE_FAILED,
                    f"Failed to store message: {e}",
                    {"operation": "append_message", "sender": sender, "receiver": receiver},
                ) from e

        return Message(
            message_id=cursor.lastrowid,
            sender=sender,
            receiver=receiver,
            ciphertext=bytes(ciphertext),
            timestamp=timestamp,
        )

    def list_conversation(self, username: str, peer: str) -> List[Message]:
        with self._lock:
            try:
                rows = self.conn.execute(
                    """
                    SELECT * FROM messages
                    WHERE (sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?)
                    ORDER BY timestamp ASC, id ASC
                """,
                    (username, peer, peer, username),
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(
                    ErrorCode.E900_PERSISTENCE_ERROR,
                    f"Failed to read messages: {e}",
                    {"operation": "list_conversation", "username": username, "contact": peer},
                ) from e
        return [self._row_to_message(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self.conn.close()
        logger.debug(f"Record store closed: {self.db_path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
