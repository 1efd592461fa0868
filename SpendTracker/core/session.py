"""
Session storage for tokens, store identity and cached records.

Two scopes are kept:

- the tab scope holds the access token and its expiry. It lives in process memory and
  is lost when the application exits.
- the durable scope holds the store id, the cached records, the login hint and the
  numeric sheet id. It is a key-value table in a local SQLite file.

No other component performs raw persistence I/O.
"""
import dataclasses
import json
import logging
import pathlib
import sqlite3
import time
from typing import Any, Dict, List, Optional, Tuple

from .records import Record
from ..settings import lib
from ..status import status

TABLE = 'storage'

# Tab scope keys
ACCESS_TOKEN_KEY = 'access_token'
TOKEN_EXPIRES_AT_KEY = 'token_expires_at'

# Durable scope keys
STORE_ID_KEY = 'store_id'
RECORDS_KEY = 'records'
LOGIN_HINT_KEY = 'login_hint'
NUMERIC_SHEET_ID_KEY = 'numeric_sheet_id'

DURABLE_KEYS = (STORE_ID_KEY, RECORDS_KEY, LOGIN_HINT_KEY, NUMERIC_SHEET_ID_KEY)

#: Seconds before expiry at which a token is already treated as expired.
TOKEN_EXPIRY_MARGIN = 60


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclasses.dataclass
class StoredSession:
    """A consistent snapshot of both storage scopes."""
    token: Optional[str]
    store_id: Optional[str]
    records: List[Record]
    login_hint: str
    token_expired: bool
    numeric_sheet_id: Optional[int] = None


def _decode_records(value: Optional[str]) -> List[Record]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except (ValueError, TypeError) as ex:
        logging.warning(f'Cached records are malformed, ignoring them: {ex}')
        return []
    if not isinstance(data, list):
        logging.warning('Cached records are not a list, ignoring them.')
        return []

    records = []
    for item in data:
        record = Record.from_dict(item)
        if record is None:
            logging.debug(f'Skipping malformed cached record: {item}')
            continue
        records.append(record)
    return records


def _decode_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        logging.warning(f'Invalid numeric sheet id in storage: {value}')
        return None


class SessionStore:
    """Owns both storage scopes of the application session."""

    def __init__(self, db_path: Optional[str] = None, expiry_margin: Optional[int] = None) -> None:
        self.db_path = db_path or lib.settings.db_path
        if expiry_margin is None:
            expiry_margin = lib.settings.get_section('auth').get('expiry_margin', TOKEN_EXPIRY_MARGIN)
        self.expiry_margin: int = expiry_margin

        self._tab: Dict[str, Any] = {}
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the session database."""
        path = pathlib.Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(path), timeout=2.0)

    def _initialize_schema_if_needed(self, _retry: bool = True) -> None:
        """Create the storage table, recreating the database file if it is unusable.

        Raises:
            status.CacheInvalidException: If the database cannot be recovered.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            cursor = conn.execute(f'PRAGMA table_info({TABLE})')
            columns = {row[1] for row in cursor.fetchall()}
            if columns and columns != {'key', 'value'}:
                logging.warning(f'Storage table schema is invalid ({columns}). Recreating.')
                conn.execute(f'DROP TABLE IF EXISTS {TABLE}')
            conn.execute(f'CREATE TABLE IF NOT EXISTS {TABLE} (key TEXT PRIMARY KEY, value TEXT)')
            conn.commit()
        except sqlite3.Error as ex:
            logging.error(f'SQLite error during session schema initialization: {ex}')
            if conn:
                conn.close()
                conn = None
            if not _retry:
                raise status.CacheInvalidException(f'Unrecoverable session database error: {ex}') from ex
            try:
                pathlib.Path(self.db_path).unlink(missing_ok=True)
            except OSError as unlink_ex:
                raise status.CacheInvalidException(
                    f'Could not remove the session database: {unlink_ex}'
                ) from unlink_ex
            self._initialize_schema_if_needed(_retry=False)
        finally:
            if conn:
                conn.close()

    def _read(self, *keys: str) -> Dict[str, Optional[str]]:
        conn = self.connection()
        try:
            placeholders = ', '.join('?' for _ in keys)
            cursor = conn.execute(
                f'SELECT key, value FROM {TABLE} WHERE key IN ({placeholders})', keys
            )
            return {row[0]: row[1] for row in cursor.fetchall()}
        except sqlite3.Error as ex:
            raise status.CacheInvalidException(f'Failed to read session storage: {ex}') from ex
        finally:
            conn.close()

    def _write(self, values: Dict[str, str], delete: Tuple[str, ...] = ()) -> None:
        conn = self.connection()
        try:
            with conn:
                for key, value in values.items():
                    conn.execute(
                        f'INSERT OR REPLACE INTO {TABLE} (key, value) VALUES (?, ?)', (key, value)
                    )
                for key in delete:
                    conn.execute(f'DELETE FROM {TABLE} WHERE key=?', (key,))
        except sqlite3.Error as ex:
            raise status.CacheInvalidException(f'Failed to write session storage: {ex}') from ex
        finally:
            conn.close()

    def _get(self, key: str) -> Optional[str]:
        return self._read(key).get(key)

    # Tab scope

    def save_token(self, token: str, expires_at: int) -> None:
        """Store an access token and its expiry in epoch milliseconds."""
        self._tab[ACCESS_TOKEN_KEY] = token
        self._tab[TOKEN_EXPIRES_AT_KEY] = int(expires_at)
        logging.debug(f'Access token stored, expires at {expires_at}.')

    def clear_token(self) -> None:
        self._tab.pop(ACCESS_TOKEN_KEY, None)
        self._tab.pop(TOKEN_EXPIRES_AT_KEY, None)

    def get_token(self) -> Optional[str]:
        return self._tab.get(ACCESS_TOKEN_KEY)

    def get_token_expires_at(self) -> Optional[int]:
        return self._tab.get(TOKEN_EXPIRES_AT_KEY)

    def is_token_expired(self) -> bool:
        """Return True unless a token is stored and outside the expiry margin."""
        token = self.get_token()
        expires_at = self.get_token_expires_at()
        if not token or expires_at is None:
            return True
        return now_ms() >= expires_at - self.expiry_margin * 1000

    # Durable scope

    def save_store_id(self, store_id: str) -> None:
        """Store the spreadsheet id. A different id drops the cached numeric sheet id."""
        current = self.get_store_id()
        delete = (NUMERIC_SHEET_ID_KEY,) if current != store_id else ()
        self._write({STORE_ID_KEY: store_id}, delete=delete)
        logging.debug(f'Store id saved: {store_id}')

    def get_store_id(self) -> Optional[str]:
        return self._get(STORE_ID_KEY) or None

    def clear_store_id(self) -> None:
        self._write({}, delete=(STORE_ID_KEY, NUMERIC_SHEET_ID_KEY))

    def save_records(self, records: List[Record]) -> None:
        value = json.dumps([r.to_dict() for r in records], ensure_ascii=False)
        self._write({RECORDS_KEY: value})

    def get_records(self) -> List[Record]:
        """Return the cached records. Missing or malformed data yields an empty list."""
        try:
            return _decode_records(self._get(RECORDS_KEY))
        except status.CacheInvalidException as ex:
            logging.error(f'Could not read cached records: {ex}')
            return []

    def save_login_hint(self, login_hint: str) -> None:
        self._write({LOGIN_HINT_KEY: login_hint})

    def get_login_hint(self) -> str:
        return self._get(LOGIN_HINT_KEY) or ''

    def save_numeric_sheet_id(self, sheet_id: int) -> None:
        self._write({NUMERIC_SHEET_ID_KEY: str(int(sheet_id))})

    def get_numeric_sheet_id(self) -> Optional[int]:
        return _decode_int(self._get(NUMERIC_SHEET_ID_KEY))

    def clear_numeric_sheet_id(self) -> None:
        self._write({}, delete=(NUMERIC_SHEET_ID_KEY,))

    def clear_all(self) -> None:
        """Wipe every key of both scopes. Safe to call repeatedly."""
        self._tab.clear()
        self._write({}, delete=DURABLE_KEYS)
        logging.debug('Session storage cleared.')

    def get_stored_session(self) -> StoredSession:
        """Return a snapshot of the session, reading the durable scope once."""
        values = self._read(*DURABLE_KEYS)
        return StoredSession(
            token=self.get_token(),
            store_id=values.get(STORE_ID_KEY) or None,
            records=_decode_records(values.get(RECORDS_KEY)),
            login_hint=values.get(LOGIN_HINT_KEY) or '',
            token_expired=self.is_token_expired(),
            numeric_sheet_id=_decode_int(values.get(NUMERIC_SHEET_ID_KEY)),
        )
