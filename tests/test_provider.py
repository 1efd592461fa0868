"""
Tests for SpendTracker.core.provider.

Run:
    python -m unittest tests.test_provider
"""
import asyncio
import datetime
import json
from unittest import mock

import google.auth.exceptions
from oauthlib.oauth2.rfc6749.errors import AccessDeniedError

from SpendTracker.core import provider
from SpendTracker.settings import lib
from tests.base import BaseAsyncTestCase, CLIENT_SECRET


def _creds(token='fresh', refresh_token='refresh', expires_in=3600):
    creds = mock.MagicMock()
    creds.token = token
    creds.refresh_token = refresh_token
    creds.expiry = (
            datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
            + datetime.timedelta(seconds=expires_in)
    )
    creds.to_json.return_value = json.dumps({'token': token, 'refresh_token': refresh_token})
    return creds


class ErrorHelperTests(BaseAsyncTestCase):

    def test_benign_errors(self):
        self.assertTrue(provider.is_benign_auth_error({'error': 'access_denied'}))
        self.assertTrue(provider.is_benign_auth_error({'type': 'popup_closed'}))
        self.assertFalse(provider.is_benign_auth_error({'error': 'interaction_required'}))
        self.assertFalse(provider.is_benign_auth_error({'type': 'timeout'}))
        self.assertFalse(provider.is_benign_auth_error(None))

    def test_format_auth_error(self):
        self.assertEqual(provider.format_auth_error({'message': 'm', 'error': 'e', 'type': 't'}), 'm')
        self.assertEqual(provider.format_auth_error({'error': 'e', 'type': 't'}), 'e')
        self.assertEqual(provider.format_auth_error({'type': 't'}), 't')
        self.assertTrue(provider.format_auth_error({}))


class TokenClientTests(BaseAsyncTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.responses = []
        self.errors = []
        self.client = provider.init_token_client({
            'client_config': CLIENT_SECRET,
            'scopes': lib.settings.get_section('auth')['scopes'],
            'callback': self.responses.append,
            'error_callback': self.errors.append,
        })

    async def _request(self, **kwargs) -> None:
        self.client.request_access_token(**kwargs)
        for _ in range(200):
            if self.responses or self.errors:
                return
            await asyncio.sleep(0.01)
        self.fail('The token client never answered.')

    def test_defaults_to_configured_session_path(self):
        self.assertEqual(self.client.creds_path, lib.settings.creds_path)

    async def test_silent_without_session(self):
        await self._request(prompt='none')
        self.assertEqual(self.errors[0]['error'], 'interaction_required')
        self.assertEqual(self.responses, [])

    async def test_silent_refresh_success(self):
        lib.settings.creds_path.write_text('{}', encoding='utf-8')
        creds = _creds()
        with mock.patch('google.oauth2.credentials.Credentials.from_authorized_user_file', return_value=creds):
            await self._request(prompt='none', login_hint='user@example.com')

        creds.refresh.assert_called_once()
        self.assertEqual(self.responses[0]['access_token'], 'fresh')
        self.assertTrue(3500 < self.responses[0]['expires_in'] <= 3600)
        self.assertEqual(json.loads(lib.settings.creds_path.read_text(encoding='utf-8'))['token'], 'fresh')

    async def test_silent_refresh_rejected(self):
        lib.settings.creds_path.write_text('{}', encoding='utf-8')
        creds = _creds()
        creds.refresh.side_effect = google.auth.exceptions.RefreshError('revoked')
        with mock.patch('google.oauth2.credentials.Credentials.from_authorized_user_file', return_value=creds):
            await self._request(prompt='none')

        self.assertEqual(self.errors[0]['error'], 'invalid_grant')

    async def test_silent_session_without_refresh_token(self):
        lib.settings.creds_path.write_text('{}', encoding='utf-8')
        with mock.patch('google.oauth2.credentials.Credentials.from_authorized_user_file',
                        return_value=_creds(refresh_token=None)):
            await self._request(prompt='none')

        self.assertEqual(self.errors[0]['error'], 'interaction_required')

    async def test_invalid_session_file_is_removed(self):
        lib.settings.creds_path.write_text('not json', encoding='utf-8')
        await self._request(prompt='none')

        self.assertEqual(self.errors[0]['error'], 'invalid_grant')
        self.assertFalse(lib.settings.creds_path.exists())

    async def test_interactive_success(self):
        flow = mock.MagicMock()
        flow.run_local_server.return_value = _creds(token='interactive')
        with mock.patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow):
            await self._request(prompt='', login_hint='user@example.com')

        kwargs = flow.run_local_server.call_args.kwargs
        self.assertEqual(kwargs['login_hint'], 'user@example.com')
        self.assertEqual(kwargs['prompt'], 'consent')
        self.assertEqual(self.responses[0]['access_token'], 'interactive')
        self.assertTrue(lib.settings.creds_path.exists())

    async def test_interactive_access_denied(self):
        flow = mock.MagicMock()
        flow.run_local_server.side_effect = AccessDeniedError()
        with mock.patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow):
            await self._request()

        self.assertTrue(provider.is_benign_auth_error(self.errors[0]))
        self.assertEqual(self.errors[0]['error'], 'access_denied')

    async def test_interactive_unexpected_error(self):
        flow = mock.MagicMock()
        flow.run_local_server.side_effect = RuntimeError('browser gone')
        with mock.patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow):
            await self._request()

        self.assertIn('browser gone', provider.format_auth_error(self.errors[0]))
        self.assertEqual(self.errors[0]['error'], 'server_error')
        self.assertFalse(provider.is_benign_auth_error(self.errors[0]))

    async def test_interactive_port_in_use_is_an_error(self):
        flow = mock.MagicMock()
        flow.run_local_server.side_effect = OSError('Address already in use')
        with mock.patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow):
            await self._request()

        self.assertFalse(provider.is_benign_auth_error(self.errors[0]))
        self.assertIn('Address already in use', provider.format_auth_error(self.errors[0]))

    async def test_interactive_timeout_is_a_dismissal(self):
        flow = mock.MagicMock()
        flow.run_local_server.side_effect = AttributeError('no redirect received')
        with mock.patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow), \
                mock.patch('SpendTracker.core.provider.INTERACTIVE_TIMEOUT', 0):
            await self._request()

        self.assertEqual(self.errors[0]['type'], 'popup_closed')
        self.assertTrue(provider.is_benign_auth_error(self.errors[0]))

    async def test_interactive_without_credentials_is_a_dismissal(self):
        flow = mock.MagicMock()
        flow.run_local_server.return_value = None
        with mock.patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow):
            await self._request()

        self.assertTrue(provider.is_benign_auth_error(self.errors[0]))

    async def test_answers_carry_request_id(self):
        first = self.client.request_access_token(prompt='none')
        second = self.client.request_access_token(prompt='none')
        self.assertEqual(second, first + 1)

        for _ in range(200):
            if len(self.errors) == 2:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(sorted(e['request_id'] for e in self.errors), [first, second])


class RemoteCallTests(BaseAsyncTestCase):

    async def test_revoke_token(self):
        request = mock.MagicMock()
        request.return_value.status = 200
        with mock.patch('google.auth.transport.requests.Request', return_value=request):
            await provider.revoke_token('tok/en')

        kwargs = request.call_args.kwargs
        self.assertEqual(kwargs['method'], 'POST')
        self.assertEqual(kwargs['url'], f'{provider.REVOKE_URL}?token=tok%2Fen')

    async def test_revoke_token_swallows_errors(self):
        request = mock.MagicMock(side_effect=google.auth.exceptions.TransportError('offline'))
        with mock.patch('google.auth.transport.requests.Request', return_value=request):
            await provider.revoke_token('tok')

    async def test_fetch_user_profile(self):
        request = mock.MagicMock()
        request.return_value.status = 200
        request.return_value.data = json.dumps({'email': 'user@example.com', 'name': 'User'}).encode('utf-8')
        with mock.patch('google.auth.transport.requests.Request', return_value=request):
            profile = await provider.fetch_user_profile('tok')

        self.assertEqual(profile['email'], 'user@example.com')
        self.assertEqual(request.call_args.kwargs['headers']['Authorization'], 'Bearer tok')

    async def test_fetch_user_profile_failures(self):
        request = mock.MagicMock()
        request.return_value.status = 401
        with mock.patch('google.auth.transport.requests.Request', return_value=request):
            self.assertIsNone(await provider.fetch_user_profile('tok'))

        request = mock.MagicMock(side_effect=google.auth.exceptions.TransportError('offline'))
        with mock.patch('google.auth.transport.requests.Request', return_value=request):
            self.assertIsNone(await provider.fetch_user_profile('tok'))

    def test_forget_session(self):
        lib.settings.creds_path.write_text('{}', encoding='utf-8')
        provider.forget_session()
        self.assertFalse(lib.settings.creds_path.exists())
        provider.forget_session()
