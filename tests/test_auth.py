"""
Tests for SpendTracker.core.auth.

Run:
    python -m unittest tests.test_auth
"""
import asyncio
from unittest import mock

import google.auth.exceptions

from SpendTracker.core.auth import AuthState, FlowKind, TokenLifecycleManager
from SpendTracker.core.session import SessionStore, now_ms
from SpendTracker.settings import lib
from SpendTracker.status import status
from tests.base import BaseAsyncTestCase, FakeTokenClientFactory, SignalRecorder


class TokenLifecycleManagerTests(BaseAsyncTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.write_client_secret()
        self.session = SessionStore()
        self.factory = FakeTokenClientFactory()
        self.manager = TokenLifecycleManager(self.session, silent_timeout=0.05, client_factory=self.factory)

        self.states = SignalRecorder(self.manager.stateChanged)
        self.tokens = SignalRecorder(self.manager.tokenReceived)
        self.silent_failures = SignalRecorder(self.manager.silentFailed)
        self.errors = SignalRecorder(self.manager.errorOccurred)
        self.dismissals = SignalRecorder(self.manager.dismissed)
        self.sign_outs = SignalRecorder(self.manager.signedOut)

    def tearDown(self) -> None:
        self.manager.dispose()
        super().tearDown()

    def test_init(self):
        ready = SignalRecorder(self.manager.ready)
        self.assertTrue(self.manager.init())
        self.assertEqual(self.manager.state, AuthState.Ready)
        self.assertEqual(ready.count, 1)
        self.assertEqual(self.states.values, ['ready'])

        config = self.factory.client.config
        self.assertEqual(config['client_config'], lib.settings.get_section('client_secret'))
        self.assertEqual(config['scopes'], lib.settings.get_section('auth')['scopes'])

        # Already initialized
        self.assertTrue(self.manager.init())
        self.assertEqual(len(self.factory.clients), 1)

    def test_init_without_client_secret(self):
        lib.settings.revert_section('client_secret')
        self.assertFalse(self.manager.init())
        self.assertEqual(self.manager.state, AuthState.Uninitialized)
        self.assertEqual(self.errors.count, 1)
        self.assertEqual(self.factory.clients, [])

    async def test_sign_in_before_ready(self):
        self.manager.sign_in()
        self.assertEqual(self.errors.count, 1)
        self.assertEqual(self.factory.clients, [])

    async def test_sign_in_success(self):
        self.manager.init()
        self.manager.sign_in()
        self.assertEqual(self.manager.state, AuthState.InteractivePending)
        self.assertEqual(self.manager.pending_flow, FlowKind.Interactive)
        self.assertEqual(self.factory.client.requests, [('', '')])

        self.factory.client.succeed('tok', 3600)
        self.assertEqual(self.tokens.values, ['tok'])
        self.assertEqual(self.session.get_token(), 'tok')
        self.assertFalse(self.session.is_token_expired())
        self.assertEqual(self.manager.state, AuthState.Ready)
        self.assertIsNone(self.manager.pending_flow)

    async def test_sign_in_while_pending(self):
        self.manager.init()
        self.manager.silent_refresh()
        self.manager.sign_in()
        self.assertEqual(self.errors.count, 1)
        self.assertEqual(len(self.factory.client.requests), 1)

    async def test_interactive_error_is_surfaced(self):
        self.manager.init()
        self.manager.sign_in()
        self.factory.client.fail(error='server_error', message='Boom')

        self.assertEqual(self.errors.values, ['Boom'])
        self.assertEqual(self.silent_failures.count, 0)
        self.assertEqual(self.dismissals.count, 0)
        self.assertEqual(self.states.values, ['ready', 'interactive-pending', 'failed-interactive', 'ready'])

    async def test_interactive_dismissal_is_soft(self):
        self.manager.init()
        for err in ({'error': 'access_denied'}, {'type': 'popup_closed'}):
            with self.subTest(err=err):
                self.manager.sign_in()
                self.factory.client.fail(**err)
        self.assertEqual(self.dismissals.count, 2)
        self.assertEqual(self.errors.count, 0)

    async def test_silent_refresh_uses_login_hint(self):
        self.session.save_login_hint('user@example.com')
        self.manager.init()
        self.manager.silent_refresh()
        self.assertEqual(self.factory.client.requests, [('none', 'user@example.com')])
        self.assertEqual(self.manager.state, AuthState.SilentPending)

    async def test_silent_refresh_is_noop_while_pending(self):
        self.manager.init()
        self.manager.silent_refresh()
        self.manager.silent_refresh()
        self.assertEqual(len(self.factory.client.requests), 1)

    async def test_silent_errors_are_never_surfaced(self):
        self.manager.init()
        for err in ({'error': 'interaction_required'}, {'error': 'access_denied'}, {'type': 'popup_closed'}):
            with self.subTest(err=err):
                self.manager.silent_refresh()
                self.factory.client.fail(**err)
        self.assertEqual(self.silent_failures.count, 3)
        self.assertEqual(self.errors.count, 0)
        self.assertEqual(self.dismissals.count, 0)
        self.assertIn('failed-silent', self.states.values)
        self.assertEqual(self.manager.state, AuthState.Ready)

    async def test_fallback_timer_fires_silent_failure(self):
        self.manager.init()
        self.manager.silent_refresh()
        await asyncio.sleep(0.15)

        self.assertEqual(self.silent_failures.count, 1)
        self.assertIsNone(self.manager.pending_flow)
        self.assertEqual(self.manager.state, AuthState.Ready)

    async def test_timer_cancelled_by_response(self):
        self.manager.init()
        self.manager.silent_refresh()
        self.factory.client.succeed('tok')
        await asyncio.sleep(0.15)

        self.assertEqual(self.silent_failures.count, 0)
        self.assertEqual(self.tokens.values, ['tok'])

    async def test_late_success_is_accepted(self):
        self.manager.init()
        self.manager.silent_refresh()
        await asyncio.sleep(0.15)
        self.assertEqual(self.silent_failures.count, 1)

        self.factory.client.succeed('late')
        self.assertEqual(self.tokens.values, ['late'])
        self.assertEqual(self.session.get_token(), 'late')

    async def test_late_error_is_ignored(self):
        self.manager.init()
        self.manager.silent_refresh()
        await asyncio.sleep(0.15)

        self.factory.client.fail(error='interaction_required')
        self.assertEqual(self.silent_failures.count, 1)
        self.assertEqual(self.errors.count, 0)

    async def test_wait_for_token_with_cached_token(self):
        self.manager.init()
        self.session.save_token('cached', now_ms() + 3600 * 1000)

        future = self.manager.wait_for_token()
        self.assertTrue(future.done())
        self.assertEqual(await future, 'cached')
        self.assertEqual(self.factory.client.requests, [])

    async def test_concurrent_waiters_share_one_refresh(self):
        self.manager.init()
        futures = [self.manager.wait_for_token() for _ in range(5)]
        self.assertEqual(len(self.factory.client.requests), 1)

        self.factory.client.succeed('shared')
        results = await asyncio.gather(*futures)
        self.assertEqual(results, ['shared'] * 5)
        self.assertEqual(self.tokens.count, 1)

    async def test_concurrent_waiters_share_one_rejection(self):
        self.manager.init()
        futures = [self.manager.wait_for_token() for _ in range(3)]
        self.factory.client.fail(error='interaction_required')

        results = await asyncio.gather(*futures, return_exceptions=True)
        self.assertEqual(len(self.factory.client.requests), 1)
        self.assertTrue(all(isinstance(r, status.SilentAuthError) for r in results))
        self.assertIs(results[0], results[1])

    async def test_waiters_rejected_on_timeout(self):
        self.manager.init()
        future = self.manager.wait_for_token()
        with self.assertRaises(status.SilentAuthError):
            await future

    async def test_waiters_join_interactive_flow(self):
        self.manager.init()
        self.manager.sign_in()
        future = self.manager.wait_for_token()
        self.assertEqual(len(self.factory.client.requests), 1)

        self.factory.client.fail(error='server_error', message='Boom')
        with self.assertRaises(status.AuthenticationExceptionException):
            await future

    async def test_wait_for_token_before_init(self):
        with self.assertRaises(status.SilentAuthError):
            await self.manager.wait_for_token()
        self.assertEqual(self.silent_failures.count, 1)

    async def test_sign_out(self):
        self.manager.init()
        self.session.save_token('tok', now_ms() + 3600 * 1000)
        lib.settings.creds_path.write_text('{}', encoding='utf-8')

        with mock.patch('SpendTracker.core.provider.revoke_token', new=mock.AsyncMock()) as revoke:
            await self.manager.sign_out()

        revoke.assert_awaited_once_with('tok')
        self.assertIsNone(self.session.get_token())
        self.assertFalse(lib.settings.creds_path.exists())
        self.assertEqual(self.sign_outs.count, 1)

    async def test_sign_out_survives_revocation_failure(self):
        self.manager.init()
        self.session.save_token('tok', now_ms() + 3600 * 1000)

        request = mock.MagicMock(side_effect=google.auth.exceptions.TransportError('down'))
        with mock.patch('google.auth.transport.requests.Request', return_value=request):
            await self.manager.sign_out()

        self.assertIsNone(self.session.get_token())
        self.assertEqual(self.sign_outs.count, 1)

    async def test_sign_out_discards_late_tokens(self):
        self.manager.init()
        self.manager.silent_refresh()
        with mock.patch('SpendTracker.core.provider.revoke_token', new=mock.AsyncMock()):
            await self.manager.sign_out()

        self.factory.client.succeed('late')
        self.assertEqual(self.tokens.count, 0)
        self.assertIsNone(self.session.get_token())

    async def test_dispose_cancels_waiters(self):
        self.manager.init()
        future = self.manager.wait_for_token()
        self.manager.dispose()

        self.assertTrue(future.cancelled())
        self.assertEqual(self.manager.state, AuthState.Uninitialized)
        await asyncio.sleep(0.15)
        self.assertEqual(self.silent_failures.count, 0)

    async def test_stale_silent_error_keeps_interactive_flow(self):
        self.manager.init()
        self.manager.silent_refresh()
        await asyncio.sleep(0.15)
        self.manager.sign_in()

        self.factory.client.fail(request_id=1, error='server_error', message='late silent error')
        self.assertEqual(self.errors.count, 0)
        self.assertEqual(self.dismissals.count, 0)
        self.assertEqual(self.manager.pending_flow, FlowKind.Interactive)
        self.assertEqual(self.manager.state, AuthState.InteractivePending)

        self.factory.client.succeed('tok', request_id=2)
        self.assertEqual(self.tokens.values, ['tok'])
        self.assertIsNone(self.manager.pending_flow)
        self.assertEqual(self.manager.state, AuthState.Ready)

    async def test_stale_silent_token_during_interactive_flow(self):
        self.manager.init()
        self.manager.silent_refresh()
        await asyncio.sleep(0.15)
        self.manager.sign_in()
        future = self.manager.wait_for_token()

        self.factory.client.succeed('late', request_id=1)
        self.assertEqual(await future, 'late')
        self.assertEqual(self.tokens.values, ['late'])
        self.assertEqual(self.manager.pending_flow, FlowKind.Interactive)
        self.assertEqual(self.manager.state, AuthState.InteractivePending)

    async def test_token_requested_before_sign_out_is_ignored(self):
        self.manager.init()
        self.manager.silent_refresh()
        with mock.patch('SpendTracker.core.provider.revoke_token', new=mock.AsyncMock()):
            await self.manager.sign_out()
        self.manager.sign_in()

        self.factory.client.succeed('old', request_id=1)
        self.assertEqual(self.tokens.count, 0)
        self.assertIsNone(self.session.get_token())
        self.assertEqual(self.manager.pending_flow, FlowKind.Interactive)
