"""Credential, challenge and login-session storage backends."""
from __future__ import annotations

import abc
import itertools
import json
import logging
import os
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import DuplicateCredential, StoreUnavailable, UsernameTaken
from .models import ChallengeSession, Credential, DeviceCategory, LoginSession, Purpose, User

__all__ = [
    "CredentialStore",
    "MemoryStore",
    "SqliteStore",
    "create_store",
    "utcnow",
]

LOGGER = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_timestamp(value: datetime) -> str:
    # Fixed width so that SQL string comparison orders timestamps correctly.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _coerce_transports(transports: Optional[Iterable[str]]) -> Tuple[str, ...]:
    if not transports:
        return ()
    return tuple(transports)


class CredentialStore(abc.ABC):
    """Narrow query contract consumed by the ceremony engine.

    Implementations must make the credential-id uniqueness check and insert a
    single atomic step, and ``pop_challenge_session`` an atomic
    fetch-and-delete.
    """

    # Users

    @abc.abstractmethod
    def create_user(self, username: str, password_hash: Optional[str] = None) -> User:
        ...

    @abc.abstractmethod
    def find_user_by_username(self, username: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        ...

    @abc.abstractmethod
    def delete_user(self, user_id: int) -> int:
        """Delete a user together with its credentials and sessions."""

    # Credentials

    @abc.abstractmethod
    def find_credentials_by_user(self, user_id: int) -> List[Credential]:
        """Return the user's credentials, most recently created first."""

    @abc.abstractmethod
    def find_credential_by_credential_id(self, credential_id: str) -> Optional[Tuple[Credential, User]]:
        ...

    @abc.abstractmethod
    def insert_credential(
        self,
        user_id: int,
        credential_id: str,
        public_key: bytes,
        counter: int,
        device_type: DeviceCategory,
        backed_up: bool,
        transports: Sequence[str],
        *,
        backup_eligible: bool = False,
        now: Optional[datetime] = None,
    ) -> Credential:
        """Persist a credential; raises :class:`DuplicateCredential` on id collision."""

    @abc.abstractmethod
    def update_credential_counter(
        self,
        credential_id: str,
        new_counter: int,
        *,
        expected_counter: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Store ``new_counter`` and refresh ``last_used_at``.

        With ``expected_counter`` the write only happens while the stored
        counter still has that value.
        """

    @abc.abstractmethod
    def delete_credential(self, credential_id: str, owner_user_id: int) -> int:
        """Delete a credential owned by ``owner_user_id``; returns rows affected."""

    # Ceremony challenges

    @abc.abstractmethod
    def create_challenge_session(
        self,
        session_id: str,
        user_id: Optional[int],
        challenge: str,
        expires_at: datetime,
        *,
        purpose: Purpose = Purpose.REGISTRATION,
        now: Optional[datetime] = None,
    ) -> ChallengeSession:
        ...

    @abc.abstractmethod
    def get_challenge_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[ChallengeSession]:
        """Return the session unless it is absent or expired."""

    @abc.abstractmethod
    def delete_challenge_session(self, session_id: str) -> int:
        ...

    @abc.abstractmethod
    def pop_challenge_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[ChallengeSession]:
        """Atomically fetch and delete a session. Expired sessions come back as ``None``."""

    @abc.abstractmethod
    def delete_challenge_sessions(self, user_id: int, purpose: Purpose) -> int:
        ...

    @abc.abstractmethod
    def replace_challenge_session(
        self,
        session_id: str,
        user_id: int,
        challenge: str,
        expires_at: datetime,
        *,
        purpose: Purpose = Purpose.REGISTRATION,
        now: Optional[datetime] = None,
    ) -> Tuple[ChallengeSession, int]:
        """Atomically drop the user's pending ``purpose`` challenges and store a new one.

        Returns the new session and how many sessions it replaced.
        """

    @abc.abstractmethod
    def delete_expired_challenge_sessions(self, *, now: Optional[datetime] = None) -> int:
        ...

    # Login sessions

    @abc.abstractmethod
    def create_login_session(
        self,
        session_id: str,
        user_id: int,
        method: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> LoginSession:
        ...

    @abc.abstractmethod
    def get_login_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[LoginSession]:
        ...

    @abc.abstractmethod
    def delete_login_session(self, session_id: str) -> int:
        ...

    @abc.abstractmethod
    def delete_expired_login_sessions(self, *, now: Optional[datetime] = None) -> int:
        ...

    @abc.abstractmethod
    def ping(self) -> None:
        """Raise :class:`StoreUnavailable` when the backend cannot answer."""

    def find_credential(self, credential_id: str) -> Optional[Tuple[Credential, User]]:
        return self.find_credential_by_credential_id(credential_id)

    def close(self) -> None:
        pass


class MemoryStore(CredentialStore):
    """Dictionary-backed store for tests and single-process demos."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._user_ids = itertools.count(1)
        self._credential_row_ids = itertools.count(1)
        self._users: Dict[int, User] = {}
        self._credentials: Dict[str, Credential] = {}
        self._challenges: Dict[str, ChallengeSession] = {}
        self._login_sessions: Dict[str, Tuple[int, str, datetime, datetime]] = {}

    def create_user(self, username: str, password_hash: Optional[str] = None) -> User:
        with self._lock:
            if any(user.username == username for user in self._users.values()):
                raise UsernameTaken(username)
            user = User(
                id=next(self._user_ids),
                username=username,
                password_hash=password_hash,
                created_at=utcnow(),
            )
            self._users[user.id] = user
            return user

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.username == username:
                    return user
        return None

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def delete_user(self, user_id: int) -> int:
        with self._lock:
            if self._users.pop(user_id, None) is None:
                return 0
            for key in [k for k, c in self._credentials.items() if c.user_id == user_id]:
                del self._credentials[key]
            for key in [k for k, s in self._challenges.items() if s.user_id == user_id]:
                del self._challenges[key]
            for key in [k for k, s in self._login_sessions.items() if s[0] == user_id]:
                del self._login_sessions[key]
            return 1

    def find_credentials_by_user(self, user_id: int) -> List[Credential]:
        with self._lock:
            owned = [c for c in self._credentials.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.id, reverse=True)

    def find_credential_by_credential_id(self, credential_id: str) -> Optional[Tuple[Credential, User]]:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None:
                return None
            user = self._users.get(credential.user_id)
            if user is None:
                return None
            return credential, user

    def insert_credential(
        self,
        user_id: int,
        credential_id: str,
        public_key: bytes,
        counter: int,
        device_type: DeviceCategory,
        backed_up: bool,
        transports: Sequence[str],
        *,
        backup_eligible: bool = False,
        now: Optional[datetime] = None,
    ) -> Credential:
        with self._lock:
            if user_id not in self._users:
                raise ValueError(f"unknown user {user_id}")
            if credential_id in self._credentials:
                raise DuplicateCredential()
            credential = Credential(
                id=next(self._credential_row_ids),
                user_id=user_id,
                credential_id=credential_id,
                public_key=bytes(public_key),
                counter=int(counter),
                device_type=DeviceCategory(device_type),
                backup_eligible=bool(backup_eligible),
                backed_up=bool(backed_up),
                transports=_coerce_transports(transports),
                created_at=now or utcnow(),
            )
            self._credentials[credential_id] = credential
            return credential

    def update_credential_counter(
        self,
        credential_id: str,
        new_counter: int,
        *,
        expected_counter: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None:
                return False
            if expected_counter is not None and credential.counter != expected_counter:
                return False
            self._credentials[credential_id] = replace(
                credential, counter=int(new_counter), last_used_at=now or utcnow()
            )
            return True

    def delete_credential(self, credential_id: str, owner_user_id: int) -> int:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None or credential.user_id != owner_user_id:
                return 0
            del self._credentials[credential_id]
            return 1

    def create_challenge_session(
        self,
        session_id: str,
        user_id: Optional[int],
        challenge: str,
        expires_at: datetime,
        *,
        purpose: Purpose = Purpose.REGISTRATION,
        now: Optional[datetime] = None,
    ) -> ChallengeSession:
        session = ChallengeSession(
            id=session_id,
            user_id=user_id,
            purpose=Purpose(purpose),
            challenge=challenge,
            created_at=now or utcnow(),
            expires_at=expires_at,
        )
        with self._lock:
            self._challenges[session_id] = session
        return session

    def get_challenge_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[ChallengeSession]:
        with self._lock:
            session = self._challenges.get(session_id)
        if session is None or session.is_expired(now or utcnow()):
            return None
        return session

    def delete_challenge_session(self, session_id: str) -> int:
        with self._lock:
            return 1 if self._challenges.pop(session_id, None) is not None else 0

    def pop_challenge_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[ChallengeSession]:
        with self._lock:
            session = self._challenges.pop(session_id, None)
        if session is None or session.is_expired(now or utcnow()):
            return None
        return session

    def delete_challenge_sessions(self, user_id: int, purpose: Purpose) -> int:
        with self._lock:
            doomed = [
                key
                for key, session in self._challenges.items()
                if session.user_id == user_id and session.purpose == purpose
            ]
            for key in doomed:
                del self._challenges[key]
            return len(doomed)

    def replace_challenge_session(
        self,
        session_id: str,
        user_id: int,
        challenge: str,
        expires_at: datetime,
        *,
        purpose: Purpose = Purpose.REGISTRATION,
        now: Optional[datetime] = None,
    ) -> Tuple[ChallengeSession, int]:
        with self._lock:
            replaced = self.delete_challenge_sessions(user_id, purpose)
            session = self.create_challenge_session(
                session_id, user_id, challenge, expires_at, purpose=purpose, now=now
            )
        return session, replaced

    def delete_expired_challenge_sessions(self, *, now: Optional[datetime] = None) -> int:
        reference = now or utcnow()
        with self._lock:
            doomed = [k for k, s in self._challenges.items() if s.is_expired(reference)]
            for key in doomed:
                del self._challenges[key]
            return len(doomed)

    def create_login_session(
        self,
        session_id: str,
        user_id: int,
        method: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> LoginSession:
        created_at = now or utcnow()
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise ValueError(f"unknown user {user_id}")
            self._login_sessions[session_id] = (user_id, method, created_at, expires_at)
        return LoginSession(session_id, user_id, user.username, method, created_at, expires_at)

    def get_login_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[LoginSession]:
        with self._lock:
            row = self._login_sessions.get(session_id)
            if row is None:
                return None
            user_id, method, created_at, expires_at = row
            user = self._users.get(user_id)
        if user is None:
            return None
        session = LoginSession(session_id, user_id, user.username, method, created_at, expires_at)
        if session.is_expired(now or utcnow()):
            return None
        return session

    def delete_login_session(self, session_id: str) -> int:
        with self._lock:
            return 1 if self._login_sessions.pop(session_id, None) is not None else 0

    def delete_expired_login_sessions(self, *, now: Optional[datetime] = None) -> int:
        reference = now or utcnow()
        with self._lock:
            doomed = [k for k, row in self._login_sessions.items() if reference >= row[3]]
            for key in doomed:
                del self._login_sessions[key]
            return len(doomed)

    def ping(self) -> None:
        return None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    password_hash TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS passkeys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    credential_id TEXT UNIQUE NOT NULL,
    public_key BLOB NOT NULL,
    counter INTEGER NOT NULL DEFAULT 0,
    device_type TEXT NOT NULL,
    backup_eligible INTEGER NOT NULL DEFAULT 0,
    backed_up INTEGER NOT NULL DEFAULT 0,
    transports TEXT,
    created_at TEXT NOT NULL,
    last_used_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS webauthn_challenges (
    id TEXT PRIMARY KEY,
    user_id INTEGER,
    purpose TEXT NOT NULL,
    challenge TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS login_sessions (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    method TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS ix_passkeys_user_id ON passkeys (user_id);
CREATE INDEX IF NOT EXISTS ix_webauthn_challenges_owner ON webauthn_challenges (user_id, purpose);
"""


class SqliteStore(CredentialStore):
    """Embedded SQLite store.

    A single connection is shared and every statement runs under a lock, so
    multi-statement operations such as ``pop_challenge_session`` are atomic
    with respect to other callers of the same store.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        if path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open credential database {path!r}: {exc}") from exc

    def _execute(self, sql: str, params: Sequence[object] = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            LOGGER.error("SQLite statement failed: %s", exc)
            raise StoreUnavailable(str(exc)) from exc

    @staticmethod
    def _user_from_row(row: sqlite3.Row, prefix: str = "") -> User:
        return User(
            id=row[f"{prefix}id"],
            username=row[f"{prefix}username"],
            password_hash=row[f"{prefix}password_hash"],
            created_at=_from_db_timestamp(row[f"{prefix}created_at"]),
        )

    @staticmethod
    def _credential_from_row(row: sqlite3.Row) -> Credential:
        transports = json.loads(row["transports"]) if row["transports"] else []
        return Credential(
            id=row["id"],
            user_id=row["user_id"],
            credential_id=row["credential_id"],
            public_key=bytes(row["public_key"]),
            counter=row["counter"],
            device_type=DeviceCategory(row["device_type"]),
            backup_eligible=bool(row["backup_eligible"]),
            backed_up=bool(row["backed_up"]),
            transports=tuple(transports),
            created_at=_from_db_timestamp(row["created_at"]),
            last_used_at=_from_db_timestamp(row["last_used_at"]),
        )

    @staticmethod
    def _challenge_from_row(row: sqlite3.Row) -> ChallengeSession:
        return ChallengeSession(
            id=row["id"],
            user_id=row["user_id"],
            purpose=Purpose(row["purpose"]),
            challenge=row["challenge"],
            created_at=_from_db_timestamp(row["created_at"]),
            expires_at=_from_db_timestamp(row["expires_at"]),
        )

    def create_user(self, username: str, password_hash: Optional[str] = None) -> User:
        created_at = utcnow()
        with self._lock:
            try:
                cursor = self._execute(
                    "INSERT INTO users (username, password_hash, created_at) VALUES (?, ?, ?)",
                    (username, password_hash, _to_db_timestamp(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise UsernameTaken(username) from exc
        return User(cursor.lastrowid, username, password_hash, created_at)

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            row = self._execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            row = self._execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: int) -> int:
        with self._lock:
            return self._execute("DELETE FROM users WHERE id = ?", (user_id,)).rowcount

    def find_credentials_by_user(self, user_id: int) -> List[Credential]:
        with self._lock:
            rows = self._execute(
                "SELECT * FROM passkeys WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._credential_from_row(row) for row in rows]

    def find_credential_by_credential_id(self, credential_id: str) -> Optional[Tuple[Credential, User]]:
        with self._lock:
            row = self._execute(
                """
                SELECT p.*, u.id AS u_id, u.username AS u_username,
                       u.password_hash AS u_password_hash, u.created_at AS u_created_at
                FROM passkeys p JOIN users u ON p.user_id = u.id
                WHERE p.credential_id = ?
                """,
                (credential_id,),
            ).fetchone()
        if row is None:
            return None
        return self._credential_from_row(row), self._user_from_row(row, prefix="u_")

    def insert_credential(
        self,
        user_id: int,
        credential_id: str,
        public_key: bytes,
        counter: int,
        device_type: DeviceCategory,
        backed_up: bool,
        transports: Sequence[str],
        *,
        backup_eligible: bool = False,
        now: Optional[datetime] = None,
    ) -> Credential:
        created_at = now or utcnow()
        transports_value = json.dumps(list(transports)) if transports else None
        with self._lock:
            try:
                cursor = self._execute(
                    """
                    INSERT INTO passkeys (
                        user_id, credential_id, public_key, counter, device_type,
                        backup_eligible, backed_up, transports, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        credential_id,
                        sqlite3.Binary(bytes(public_key)),
                        int(counter),
                        DeviceCategory(device_type).value,
                        int(bool(backup_eligible)),
                        int(bool(backed_up)),
                        transports_value,
                        _to_db_timestamp(created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    raise DuplicateCredential() from exc
                raise ValueError(f"unknown user {user_id}") from exc
        return Credential(
            id=cursor.lastrowid,
            user_id=user_id,
            credential_id=credential_id,
            public_key=bytes(public_key),
            counter=int(counter),
            device_type=DeviceCategory(device_type),
            backup_eligible=bool(backup_eligible),
            backed_up=bool(backed_up),
            transports=_coerce_transports(transports),
            created_at=created_at,
        )

    def update_credential_counter(
        self,
        credential_id: str,
        new_counter: int,
        *,
        expected_counter: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        sql = "UPDATE passkeys SET counter = ?, last_used_at = ? WHERE credential_id = ?"
        params: List[object] = [int(new_counter), _to_db_timestamp(now or utcnow()), credential_id]
        if expected_counter is not None:
            sql += " AND counter = ?"
            params.append(int(expected_counter))
        with self._lock:
            return self._execute(sql, params).rowcount == 1

    def delete_credential(self, credential_id: str, owner_user_id: int) -> int:
        with self._lock:
            return self._execute(
                "DELETE FROM passkeys WHERE credential_id = ? AND user_id = ?",
                (credential_id, owner_user_id),
            ).rowcount

    def create_challenge_session(
        self,
        session_id: str,
        user_id: Optional[int],
        challenge: str,
        expires_at: datetime,
        *,
        purpose: Purpose = Purpose.REGISTRATION,
        now: Optional[datetime] = None,
    ) -> ChallengeSession:
        created_at = now or utcnow()
        with self._lock:
            self._execute(
                """
                INSERT OR REPLACE INTO webauthn_challenges
                    (id, user_id, purpose, challenge, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    user_id,
                    Purpose(purpose).value,
                    challenge,
                    _to_db_timestamp(created_at),
                    _to_db_timestamp(expires_at),
                ),
            )
        return ChallengeSession(session_id, user_id, Purpose(purpose), challenge, created_at, expires_at)

    def get_challenge_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[ChallengeSession]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM webauthn_challenges WHERE id = ? AND expires_at > ?",
                (session_id, _to_db_timestamp(now or utcnow())),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def delete_challenge_session(self, session_id: str) -> int:
        with self._lock:
            return self._execute(
                "DELETE FROM webauthn_challenges WHERE id = ?", (session_id,)
            ).rowcount

    def pop_challenge_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[ChallengeSession]:
        reference = now or utcnow()
        with self._lock:
            row = self._execute(
                "SELECT * FROM webauthn_challenges WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                return None
            deleted = self._execute(
                "DELETE FROM webauthn_challenges WHERE id = ?", (session_id,)
            ).rowcount
        if deleted != 1:
            # Another connection consumed it between the read and the delete.
            return None
        session = self._challenge_from_row(row)
        if session.is_expired(reference):
            return None
        return session

    def delete_challenge_sessions(self, user_id: int, purpose: Purpose) -> int:
        with self._lock:
            return self._execute(
                "DELETE FROM webauthn_challenges WHERE user_id = ? AND purpose = ?",
                (user_id, Purpose(purpose).value),
            ).rowcount

    def replace_challenge_session(
        self,
        session_id: str,
        user_id: int,
        challenge: str,
        expires_at: datetime,
        *,
        purpose: Purpose = Purpose.REGISTRATION,
        now: Optional[datetime] = None,
    ) -> Tuple[ChallengeSession, int]:
        created_at = now or utcnow()
        purpose = Purpose(purpose)
        with self._lock:
            try:
                # One transaction for both statements.
                with self._conn:
                    replaced = self._conn.execute(
                        "DELETE FROM webauthn_challenges WHERE user_id = ? AND purpose = ?",
                        (user_id, purpose.value),
                    ).rowcount
                    self._conn.execute(
                        """
                        INSERT INTO webauthn_challenges
                            (id, user_id, purpose, challenge, created_at, expires_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            session_id,
                            user_id,
                            purpose.value,
                            challenge,
                            _to_db_timestamp(created_at),
                            _to_db_timestamp(expires_at),
                        ),
                    )
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                LOGGER.error("SQLite statement failed: %s", exc)
                raise StoreUnavailable(str(exc)) from exc
        session = ChallengeSession(session_id, user_id, purpose, challenge, created_at, expires_at)
        return session, replaced

    def delete_expired_challenge_sessions(self, *, now: Optional[datetime] = None) -> int:
        with self._lock:
            return self._execute(
                "DELETE FROM webauthn_challenges WHERE expires_at <= ?",
                (_to_db_timestamp(now or utcnow()),),
            ).rowcount

    def create_login_session(
        self,
        session_id: str,
        user_id: int,
        method: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> LoginSession:
        created_at = now or utcnow()
        with self._lock:
            user = self.get_user(user_id)
            if user is None:
                raise ValueError(f"unknown user {user_id}")
            self._execute(
                """
                INSERT INTO login_sessions (id, user_id, method, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, user_id, method, _to_db_timestamp(created_at), _to_db_timestamp(expires_at)),
            )
        return LoginSession(session_id, user_id, user.username, method, created_at, expires_at)

    def get_login_session(
        self, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[LoginSession]:
        with self._lock:
            row = self._execute(
                """
                SELECT s.*, u.username FROM login_sessions s
                JOIN users u ON s.user_id = u.id
                WHERE s.id = ? AND s.expires_at > ?
                """,
                (session_id, _to_db_timestamp(now or utcnow())),
            ).fetchone()
        if row is None:
            return None
        return LoginSession(
            id=row["id"],
            user_id=row["user_id"],
            username=row["username"],
            method=row["method"],
            created_at=_from_db_timestamp(row["created_at"]),
            expires_at=_from_db_timestamp(row["expires_at"]),
        )

    def delete_login_session(self, session_id: str) -> int:
        with self._lock:
            return self._execute("DELETE FROM login_sessions WHERE id = ?", (session_id,)).rowcount

    def delete_expired_login_sessions(self, *, now: Optional[datetime] = None) -> int:
        with self._lock:
            return self._execute(
                "DELETE FROM login_sessions WHERE expires_at <= ?",
                (_to_db_timestamp(now or utcnow()),),
            ).rowcount

    def ping(self) -> None:
        with self._lock:
            row = self._execute("SELECT 1").fetchone()
        if row is None:
            raise StoreUnavailable("database query failed")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_store(database: Optional[str]) -> CredentialStore:
    """Build the store named by the ``PASSKEY_DATABASE`` setting."""

    if not database or database == ":memory:":
        return MemoryStore()
    return SqliteStore(database)
