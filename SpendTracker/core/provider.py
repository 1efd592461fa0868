"""
Google identity provider adapter.

Wraps google-auth and google-auth-oauthlib behind a callback-based token client:
:meth:`TokenClient.request_access_token` starts one authorization attempt and answers
through exactly one of the success or error callbacks, always on the event loop thread.

The provider session is the authorized-user file at ``settings.creds_path``. A silent
request refreshes it without any user interaction; an interactive request runs the
installed-app flow in the browser and saves the result.
"""
import asyncio
import datetime
import functools
import json
import logging
import os
import pathlib
import time
import urllib.parse
from typing import Any, Callable, Dict, List, Optional, Tuple

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
from oauthlib.oauth2.rfc6749.errors import AccessDeniedError, OAuth2Error

from ..settings import lib

# Google adds 'openid' to the granted scopes when profile scopes are requested
os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')

REVOKE_URL: str = 'https://oauth2.googleapis.com/revoke'
USERINFO_URL: str = 'https://www.googleapis.com/oauth2/v3/userinfo'

DEFAULT_SCOPES: List[str] = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/drive.file',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/userinfo.email',
]

DEFAULT_EXPIRES_IN: int = 3600
INTERACTIVE_TIMEOUT: int = 300
REQUEST_TIMEOUT: int = 10

BENIGN_ERRORS = frozenset({'access_denied'})
BENIGN_TYPES = frozenset({'popup_closed'})

TokenResponse = Dict[str, Any]
ErrorResponse = Dict[str, Any]


def is_benign_auth_error(err: Optional[ErrorResponse]) -> bool:
    """Return True if the user dismissed the consent screen or refused access."""
    if not err:
        return False
    return err.get('error') in BENIGN_ERRORS or err.get('type') in BENIGN_TYPES


def format_auth_error(err: Optional[ErrorResponse]) -> str:
    """Return a readable message for a provider error response."""
    if not err:
        return 'Unknown authorization error.'
    return str(err.get('message') or err.get('error') or err.get('type') or 'Unknown authorization error.')


def _expires_in(creds: google.oauth2.credentials.Credentials) -> int:
    if not creds.expiry:
        return DEFAULT_EXPIRES_IN
    # google-auth keeps expiry as a naive UTC datetime
    now = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
    return max(0, int((creds.expiry - now).total_seconds()))


def _token_response(creds: google.oauth2.credentials.Credentials) -> TokenResponse:
    return {'access_token': creds.token, 'expires_in': _expires_in(creds)}


def save_session(creds: google.oauth2.credentials.Credentials, creds_path: pathlib.Path) -> None:
    """Save the provider session to the authorized-user file."""
    creds_path.parent.mkdir(parents=True, exist_ok=True)
    with open(creds_path, 'w', encoding='utf-8') as token_file:
        token_file.write(creds.to_json())
    logging.debug(f'Provider session saved to {creds_path}.')


def forget_session(creds_path: Optional[pathlib.Path] = None) -> None:
    """Remove the provider session so the next silent request needs consent again."""
    creds_path = pathlib.Path(creds_path or lib.settings.creds_path)
    if creds_path.exists():
        logging.debug(f'Deleting {creds_path}...')
        creds_path.unlink()
    else:
        logging.debug('No provider session found. No action taken.')


class TokenClient:
    """Callback-based access token client.

    Args:
        client_config: The OAuth client configuration (``installed`` or ``web`` section).
        scopes: The scopes to request.
        callback: Called with ``{'access_token', 'expires_in', 'request_id'}`` on success.
        error_callback: Called with ``{'error' | 'type', 'message', 'request_id'}`` on failure.
        creds_path: Path of the provider session file.
    """

    def __init__(
            self,
            client_config: Dict[str, Any],
            scopes: List[str],
            callback: Callable[[TokenResponse], None],
            error_callback: Callable[[ErrorResponse], None],
            creds_path: pathlib.Path,
    ) -> None:
        self.client_config = client_config
        self.scopes = list(scopes)
        self.callback = callback
        self.error_callback = error_callback
        self.creds_path = pathlib.Path(creds_path)
        self._request_id = 0

    def request_access_token(self, prompt: str = '', login_hint: str = '') -> int:
        """Start an authorization attempt.

        ``prompt='none'`` runs the silent flow, anything else the interactive one.
        Must be called from a running event loop.

        Returns:
            The id of the request. Its answer carries the same ``request_id``.
        """
        self._request_id += 1
        request_id = self._request_id
        loop = asyncio.get_running_loop()
        if prompt == 'none':
            func = self._refresh_session
        else:
            func = functools.partial(self._run_consent_flow, prompt, login_hint)

        logging.debug(f'Requesting access token (prompt="{prompt}", login_hint="{login_hint}")')
        future = loop.run_in_executor(None, func)
        future.add_done_callback(functools.partial(self._deliver, request_id))
        return request_id

    def _deliver(self, request_id: int, future: 'asyncio.Future[Tuple[bool, Dict[str, Any]]]') -> None:
        if future.cancelled():
            return
        ex = future.exception()
        if ex is not None:
            logging.error(f'Token request failed unexpectedly: {ex}')
            self.error_callback({'error': 'server_error', 'message': str(ex), 'request_id': request_id})
            return

        ok, payload = future.result()
        payload = dict(payload, request_id=request_id)
        if ok:
            self.callback(payload)
        else:
            self.error_callback(payload)

    def _refresh_session(self) -> Tuple[bool, Dict[str, Any]]:
        """Refresh the saved provider session without user interaction."""
        if not self.creds_path.exists():
            return False, {'error': 'interaction_required', 'message': 'No active provider session.'}

        try:
            creds = google.oauth2.credentials.Credentials.from_authorized_user_file(str(self.creds_path))
        except (ValueError, json.JSONDecodeError) as ex:
            logging.error(f'Provider session is invalid, removing it: {ex}')
            self.creds_path.unlink(missing_ok=True)
            return False, {'error': 'invalid_grant', 'message': str(ex)}

        if not creds.refresh_token:
            return False, {'error': 'interaction_required', 'message': 'Provider session cannot be refreshed.'}

        try:
            creds.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.RefreshError as ex:
            logging.debug(f'Provider session refresh rejected: {ex}')
            return False, {'error': 'invalid_grant', 'message': str(ex)}
        except google.auth.exceptions.TransportError as ex:
            return False, {'error': 'network_error', 'message': str(ex)}

        save_session(creds, self.creds_path)
        return True, _token_response(creds)

    def _run_consent_flow(self, prompt: str, login_hint: str) -> Tuple[bool, Dict[str, Any]]:
        """Run the installed-app flow in the user's browser."""
        flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(
            self.client_config, scopes=self.scopes
        )
        kwargs: Dict[str, str] = {'prompt': prompt or 'consent'}
        if login_hint:
            kwargs['login_hint'] = login_hint

        started = time.monotonic()
        try:
            creds = flow.run_local_server(port=0, timeout_seconds=INTERACTIVE_TIMEOUT, **kwargs)
        except AccessDeniedError as ex:
            return False, {'error': 'access_denied', 'message': ex.description or str(ex)}
        except OAuth2Error as ex:
            return False, {'error': ex.error, 'message': ex.description or str(ex)}
        except Exception as ex:
            # The local server gives up without a redirect once the timeout passes
            if time.monotonic() - started >= INTERACTIVE_TIMEOUT:
                logging.debug(f'Consent screen abandoned: {ex}')
                return False, {'type': 'popup_closed', 'message': 'Sign-in did not complete.'}
            logging.error(f'OAuth flow error: {ex}')
            return False, {'error': 'server_error', 'message': f'Sign-in failed: {ex}'}

        if not creds or not creds.token:
            return False, {'type': 'popup_closed', 'message': 'Sign-in did not complete.'}

        save_session(creds, self.creds_path)
        return True, _token_response(creds)


def init_token_client(config: Dict[str, Any]) -> TokenClient:
    """Create a token client.

    Args:
        config: ``client_config``, ``scopes``, ``callback`` and ``error_callback``, plus an
            optional ``creds_path`` that defaults to the configured provider session path.
    """
    return TokenClient(
        client_config=config['client_config'],
        scopes=config.get('scopes') or DEFAULT_SCOPES,
        callback=config['callback'],
        error_callback=config['error_callback'],
        creds_path=config.get('creds_path') or lib.settings.creds_path,
    )


def _revoke(token: str) -> None:
    request = google.auth.transport.requests.Request()
    try:
        response = request(
            url=f'{REVOKE_URL}?{urllib.parse.urlencode({"token": token})}',
            method='POST',
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=REQUEST_TIMEOUT,
        )
    except google.auth.exceptions.TransportError as ex:
        logging.debug(f'Token revocation failed: {ex}')
        return
    logging.debug(f'Token revocation returned HTTP {response.status}.')


async def revoke_token(token: str) -> None:
    """Revoke a token with Google. Errors are logged and swallowed."""
    if not token:
        return
    await asyncio.to_thread(_revoke, token)


def _fetch_profile(token: str) -> Optional[Dict[str, Any]]:
    request = google.auth.transport.requests.Request()
    try:
        response = request(
            url=USERINFO_URL,
            method='GET',
            headers={'Authorization': f'Bearer {token}'},
            timeout=REQUEST_TIMEOUT,
        )
    except google.auth.exceptions.TransportError as ex:
        logging.debug(f'Profile request failed: {ex}')
        return None

    if response.status != 200:
        logging.debug(f'Profile request returned HTTP {response.status}.')
        return None
    try:
        data = json.loads(response.data)
    except (ValueError, TypeError) as ex:
        logging.debug(f'Profile response is not valid JSON: {ex}')
        return None
    return data if isinstance(data, dict) else None


async def fetch_user_profile(token: str) -> Optional[Dict[str, Any]]:
    """Fetch the signed-in user's profile.

    Returns:
        The userinfo payload (``name``, ``email``, ``picture``...), or None on any failure.
    """
    return await asyncio.to_thread(_fetch_profile, token)
