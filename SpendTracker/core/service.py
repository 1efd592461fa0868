"""Google Sheets and Drive operations against the remote store.

The store is a single spreadsheet found by its display name. Every request is built
from a bare access token, executed in a worker thread and awaited on the event loop.
Google errors are translated into status exceptions:

- HTTP 401 and 403 raise :class:`status.NotAuthorizedException`.
- HTTP 404 raises :class:`status.SpreadsheetNotFoundException`.
- any other HTTP, network, timeout or SSL error raises :class:`status.ServiceUnavailableException`.
"""
import asyncio
import dataclasses
import logging
import socket
import ssl
from typing import Any, Callable, Dict, List, Optional

import google.auth.exceptions
import google.oauth2.credentials
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from . import provider
from .records import (
    HEADER,
    Record,
    a1_range,
    build_delete_row_request,
    find_row_index,
    record_to_row,
    rows_to_records,
)
from .session import SessionStore
from ..settings import lib
from ..status import status

SPREADSHEET_MIME_TYPE: str = 'application/vnd.google-apps.spreadsheet'
DEFAULT_ROW_LIMIT: int = 1000


@dataclasses.dataclass
class StoreResolution:
    store_id: str
    is_new: bool


def _config() -> Dict[str, Any]:
    return lib.settings.get_section('spreadsheet')


def store_title() -> str:
    return _config().get('title', 'SpendTracker')


def sheet_name() -> str:
    return _config().get('sheet', 'spends')


def row_limit() -> int:
    return lib.settings.get_section('data').get('row_limit', DEFAULT_ROW_LIMIT)


def get_service(token: str, api: str = 'sheets', version: str = 'v4') -> Any:
    """Build a Google API resource authorized with a bare access token.

    A resource is built per request because the underlying http client is not thread-safe.
    """
    creds = google.oauth2.credentials.Credentials(token)
    try:
        return build(api, version, credentials=creds, cache_discovery=False)
    except Exception as ex:
        raise status.ServiceUnavailableException(f'Could not create the {api} client: {ex}') from ex


def translate_error(ex: Exception) -> status.BaseStatusException:
    """Return the status exception matching a Google client error."""
    if isinstance(ex, HttpError):
        code: Optional[int] = ex.resp.status if ex.resp else None
        if code in (401, 403):
            return status.NotAuthorizedException(f'HTTP {code}: {ex.reason}', status_code=code)
        if code == 404:
            return status.SpreadsheetNotFoundException(f'HTTP 404: {ex.reason}')
        return status.ServiceUnavailableException(f'HTTP {code}: {ex.reason}')
    if isinstance(ex, google.auth.exceptions.RefreshError):
        # A bare token cannot be refreshed, so Google's 401 surfaces here
        return status.NotAuthorizedException(str(ex), status_code=401)
    if isinstance(ex, (socket.timeout, TimeoutError)):
        return status.ServiceUnavailableException(f'Timeout error: {ex}')
    if isinstance(ex, ssl.SSLError):
        return status.ServiceUnavailableException(f'SSL error: {ex}')
    return status.ServiceUnavailableException(f'Network error: {ex}')


async def execute(token: str, make_request: Callable[[Any], Any], api: str = 'sheets',
                  version: str = 'v4') -> Dict[str, Any]:
    """Build and execute a request in a worker thread.

    Args:
        token: The access token.
        make_request: Called with the API resource, returns the request to execute.
        api: The Google API name.
        version: The Google API version.

    Returns:
        The decoded response body.
    """

    def _run() -> Dict[str, Any]:
        service = get_service(token, api, version)
        try:
            return make_request(service).execute() or {}
        finally:
            service.close()

    try:
        return await asyncio.to_thread(_run)
    except (HttpError, google.auth.exceptions.RefreshError, google.auth.exceptions.TransportError,
            httplib2.HttpLib2Error, OSError) as ex:
        raise translate_error(ex) from ex


async def verify_store(token: str, store_id: str) -> None:
    """Check that a spreadsheet is reachable."""
    await execute(token, lambda s: s.spreadsheets().get(spreadsheetId=store_id, fields='spreadsheetId'))


def _search_query(title: str) -> str:
    escaped = title.replace('\\', '\\\\').replace("'", "\\'")
    return f"name='{escaped}' and mimeType='{SPREADSHEET_MIME_TYPE}' and trashed=false"


async def find_store(token: str, title: str) -> Optional[str]:
    """Search the user's Drive for a spreadsheet with the exact title.

    Returns:
        The id of the first match, or None.
    """
    result = await execute(
        token,
        lambda s: s.files().list(q=_search_query(title), fields='files(id,name)', pageSize=1, spaces='drive'),
        api='drive',
        version='v3',
    )
    files: List[Dict[str, Any]] = result.get('files', [])
    return files[0]['id'] if files else None


async def create_store(token: str, title: str, sheet: str) -> str:
    """Create a spreadsheet with a single sheet and write the header row.

    Returns:
        The new spreadsheet id.
    """
    body = {
        'properties': {'title': title},
        'sheets': [{'properties': {'title': sheet}}],
    }
    result = await execute(token, lambda s: s.spreadsheets().create(body=body, fields='spreadsheetId'))
    store_id = result['spreadsheetId']
    logging.info(f'Created spreadsheet "{title}" ({store_id}).')

    await execute(token, lambda s: s.spreadsheets().values().update(
        spreadsheetId=store_id,
        range=a1_range(sheet, 1, 1),
        valueInputOption='RAW',
        body={'values': [HEADER]},
    ))
    return store_id


async def resolve_store(token: str, session: SessionStore) -> StoreResolution:
    """Return the user's store: the saved one if reachable, else an existing match, else a new one.

    Authorization errors during verification propagate and leave the saved id alone.
    Any other verification failure clears it. The resolved id is saved.
    """
    store_id = session.get_store_id()
    if store_id:
        try:
            await verify_store(token, store_id)
            logging.debug(f'Saved store {store_id} is reachable.')
            return StoreResolution(store_id, False)
        except status.NotAuthorizedException:
            raise
        except status.BaseStatusException as ex:
            logging.warning(f'Saved store {store_id} is not reachable, clearing it: {ex}')
            session.clear_store_id()

    title = store_title()
    found = await find_store(token, title)
    if found:
        logging.info(f'Adopting existing spreadsheet "{title}" ({found}).')
        session.save_store_id(found)
        return StoreResolution(found, False)

    created = await create_store(token, title, sheet_name())
    session.save_store_id(created)
    return StoreResolution(created, True)


async def load_records(token: str, store_id: str) -> List[Record]:
    """Read the record window and return the valid records."""
    result = await execute(token, lambda s: s.spreadsheets().values().get(
        spreadsheetId=store_id,
        range=a1_range(sheet_name(), 2, row_limit()),
        valueRenderOption='UNFORMATTED_VALUE',
        dateTimeRenderOption='FORMATTED_STRING',
    ))
    rows = result.get('values', [])
    records = rows_to_records(rows)
    logging.debug(f'Loaded {len(records)} records from {len(rows)} rows.')
    return records


async def append_record(token: str, store_id: str, record: Record) -> None:
    """Append one record after the last row of the sheet."""
    await execute(token, lambda s: s.spreadsheets().values().append(
        spreadsheetId=store_id,
        range=a1_range(sheet_name()),
        valueInputOption='RAW',
        insertDataOption='INSERT_ROWS',
        body={'values': [record_to_row(record)]},
    ))
    logging.debug(f'Appended record {record.id}.')


async def _read_ids(token: str, store_id: str) -> List[List[Any]]:
    result = await execute(token, lambda s: s.spreadsheets().values().get(
        spreadsheetId=store_id,
        range=a1_range(sheet_name(), 2, row_limit(), columns=1),
    ))
    return result.get('values', [])


async def _read_numeric_sheet_id(token: str, store_id: str) -> int:
    result = await execute(token, lambda s: s.spreadsheets().get(
        spreadsheetId=store_id,
        fields='sheets.properties',
    ))
    sheets = result.get('sheets', [])
    if not sheets:
        raise status.SpreadsheetNotFoundException(f'Spreadsheet {store_id} has no sheets.')

    name = sheet_name()
    sheet = next((s for s in sheets if s.get('properties', {}).get('title') == name), sheets[0])
    return int(sheet['properties'].get('sheetId', 0))


async def delete_record(token: str, store_id: str, record_id: str, session: SessionStore) -> bool:
    """Delete the row holding a record.

    The identity column is read right before deleting. When the numeric sheet id is not
    cached, it is fetched alongside and cached for later deletes.

    Returns:
        True if a row was deleted, False if the record was not found.
    """
    sheet_id = session.get_numeric_sheet_id()
    if sheet_id is None:
        id_rows, sheet_id = await asyncio.gather(
            _read_ids(token, store_id),
            _read_numeric_sheet_id(token, store_id),
        )
        session.save_numeric_sheet_id(sheet_id)
    else:
        id_rows = await _read_ids(token, store_id)

    row_index = find_row_index(id_rows, record_id)
    if row_index is None:
        logging.debug(f'Record {record_id} not found remotely, nothing to delete.')
        return False

    await execute(token, lambda s: s.spreadsheets().batchUpdate(
        spreadsheetId=store_id,
        body={'requests': [build_delete_row_request(sheet_id, row_index)]},
    ))
    logging.debug(f'Deleted record {record_id} at row index {row_index}.')
    return True


async def fetch_profile(token: str) -> Optional[Dict[str, Any]]:
    """Fetch the signed-in user's profile, or None on failure."""
    return await provider.fetch_user_profile(token)
