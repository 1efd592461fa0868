"""
Access token lifecycle management.

:class:`TokenLifecycleManager` owns the provider's token client and runs interactive and
silent authorization flows. Every other component asks it for a valid token through
:meth:`TokenLifecycleManager.wait_for_token`. Concurrent callers share one refresh.

Failures are routed by the kind of flow that produced them:

- interactive errors emit ``errorOccurred``, dismissals emit ``dismissed``.
- silent errors, dismissals and timeouts emit ``silentFailed`` and are never shown.

The provider does not always answer a silent request when there is no active session,
so silent flows arm a fallback timer that fails the flow itself.
"""
import asyncio
import dataclasses
import enum
import logging
from typing import Any, Callable, Dict, List, Optional

from PySide6 import QtCore

from . import provider
from .session import SessionStore, now_ms
from ..settings import lib
from ..status import status

#: Seconds to wait for an answer to a silent request.
SILENT_TIMEOUT: float = 5.0


class AuthState(enum.StrEnum):
    """States of the token lifecycle."""
    Uninitialized = 'uninitialized'
    Ready = 'ready'
    InteractivePending = 'interactive-pending'
    SilentPending = 'silent-pending'
    FailedInteractive = 'failed-interactive'
    FailedSilent = 'failed-silent'


class FlowKind(enum.StrEnum):
    Interactive = 'interactive'
    Silent = 'silent'


@dataclasses.dataclass(eq=False)
class Flow:
    """One authorization attempt in flight."""
    kind: FlowKind
    timer: Optional[asyncio.TimerHandle] = None
    settled: bool = False
    request_id: Optional[int] = None


class TokenLifecycleManager(QtCore.QObject):
    """Acquire, cache, renew and invalidate access tokens.

    Signals:
        stateChanged (str): Emitted with the new :class:`AuthState` value.
        ready (): Emitted once the token client is initialized.
        tokenReceived (str): Emitted with every newly acquired token.
        silentFailed (): Emitted when a silent flow fails, is interrupted or times out.
        errorOccurred (str): Emitted with a message when an interactive flow fails.
        dismissed (): Emitted when the user dismisses an interactive flow.
        signedOut (): Emitted after sign-out.
    """
    stateChanged = QtCore.Signal(str)
    ready = QtCore.Signal()
    tokenReceived = QtCore.Signal(str)
    silentFailed = QtCore.Signal()
    errorOccurred = QtCore.Signal(str)
    dismissed = QtCore.Signal()
    signedOut = QtCore.Signal()

    def __init__(
            self,
            session: SessionStore,
            silent_timeout: Optional[float] = None,
            client_factory: Callable[[Dict[str, Any]], Any] = provider.init_token_client,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)
        self.session = session
        self._silent_timeout = silent_timeout
        self._client_factory = client_factory

        self._client: Any = None
        self._state: AuthState = AuthState.Uninitialized
        self._flow: Optional[Flow] = None
        self._waiters: List[asyncio.Future] = []
        self._accept_late_tokens: bool = False
        self._last_request_id: int = 0
        # Answers to requests up to this id were asked for before the last sign-out
        self._request_floor: int = 0

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def pending_flow(self) -> Optional[FlowKind]:
        return self._flow.kind if self._flow else None

    def _set_state(self, state: AuthState) -> None:
        if state == self._state:
            return
        logging.debug(f'Auth state: {self._state.value} -> {state.value}')
        self._state = state
        self.stateChanged.emit(state.value)

    def init(self) -> bool:
        """Load the OAuth client and create the provider's token client.

        Returns:
            True if the manager is ready, False if the client could not be created.
        """
        if self._client is not None:
            return True

        try:
            client_config = lib.settings.load_client_secret()
            config = lib.settings.get_section('auth')
            self._client = self._client_factory({
                'client_config': client_config,
                'scopes': config.get('scopes') or provider.DEFAULT_SCOPES,
                'callback': self._on_token_response,
                'error_callback': self._on_token_error,
                'creds_path': lib.settings.creds_path,
            })
        except (status.BaseStatusException, KeyError, ValueError) as ex:
            logging.error(f'Failed to initialize the token client: {ex}')
            self.errorOccurred.emit(str(ex))
            return False

        if self._silent_timeout is None:
            self._silent_timeout = float(lib.settings.get_section('auth').get('silent_timeout', SILENT_TIMEOUT))

        self._set_state(AuthState.Ready)
        self.ready.emit()
        return True

    def dispose(self) -> None:
        """Cancel any pending flow and waiters and release the token client."""
        if self._flow:
            self._settle(self._flow)
        self._accept_late_tokens = False

        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.cancel()

        self._client = None
        self._last_request_id = self._request_floor = 0
        self._set_state(AuthState.Uninitialized)

    def sign_in(self) -> None:
        """Start an interactive flow. Only valid while ready."""
        if self._state != AuthState.Ready or self._flow is not None:
            msg = f'Cannot sign in while {self._state.value}.'
            logging.error(msg)
            self.errorOccurred.emit(msg)
            return
        self._start_flow(FlowKind.Interactive, prompt='')

    def silent_refresh(self) -> None:
        """Start a background flow using the stored login hint.

        A no-op while another flow is in flight.
        """
        if self._flow is not None:
            logging.debug(f'A {self._flow.kind.value} flow is already in flight.')
            return

        if self._client is None:
            logging.debug('Silent refresh requested before initialization.')
            self._reject_waiters(status.SilentAuthError('The token client is not initialized.'))
            self.silentFailed.emit()
            return

        self._start_flow(FlowKind.Silent, prompt='none')

    def wait_for_token(self) -> 'asyncio.Future[str]':
        """Return a future resolving to a valid access token.

        The future is already resolved when an unexpired token is cached. Otherwise it
        joins the waiters of the flow in flight, starting a silent refresh if needed.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if not self.session.is_token_expired():
            future.set_result(self.session.get_token())
            return future

        self._waiters.append(future)
        if self._flow is None:
            self.silent_refresh()
        return future

    async def sign_out(self) -> None:
        """Revoke the token, clear the token state and forget the provider session."""
        token = self.session.get_token()
        if self._flow:
            self._settle(self._flow)
            if self._client is not None:
                self._set_state(AuthState.Ready)
        self._accept_late_tokens = False
        self._request_floor = self._last_request_id
        self._reject_waiters(status.AuthenticationExceptionException('Signed out.'))

        self.session.clear_token()
        try:
            provider.forget_session(lib.settings.creds_path)
        except OSError as ex:
            logging.error(f'Failed to remove the provider session: {ex}')

        if token:
            await provider.revoke_token(token)

        logging.debug('Signed out.')
        self.signedOut.emit()

    def _start_flow(self, kind: FlowKind, prompt: str) -> None:
        flow = Flow(kind)
        self._flow = flow
        self._accept_late_tokens = True

        if kind == FlowKind.Silent:
            loop = asyncio.get_running_loop()
            flow.timer = loop.call_later(self._silent_timeout or SILENT_TIMEOUT, self._on_timeout, flow)
            self._set_state(AuthState.SilentPending)
        else:
            self._set_state(AuthState.InteractivePending)

        logging.debug(f'Starting {kind.value} flow.')
        flow.request_id = self._client.request_access_token(
            prompt=prompt, login_hint=self.session.get_login_hint()
        )
        if flow.request_id is not None:
            self._last_request_id = max(self._last_request_id, flow.request_id)

    def _settle(self, flow: Flow) -> None:
        flow.settled = True
        if flow.timer is not None:
            flow.timer.cancel()
            flow.timer = None
        if self._flow is flow:
            self._flow = None

    def _resolve_waiters(self, token: str) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(token)

    def _reject_waiters(self, ex: Exception) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_exception(ex)

    def _current_flow(self, payload: Dict[str, Any]) -> Optional[Flow]:
        """Return the flow in flight if ``payload`` answers its request, else None."""
        flow = self._flow
        if flow is None:
            return None
        request_id = payload.get('request_id')
        if request_id is not None and flow.request_id is not None and request_id != flow.request_id:
            return None
        return flow

    def _on_token_response(self, response: Dict[str, Any]) -> None:
        """Success channel of the token client."""
        token = response.get('access_token')
        if not token:
            self._on_token_error({
                'error': 'invalid_response',
                'message': 'No access token in response.',
                'request_id': response.get('request_id'),
            })
            return

        request_id = response.get('request_id')
        if request_id is not None and request_id <= self._request_floor:
            logging.debug('Ignoring a token requested before sign-out.')
            return

        flow = self._current_flow(response)
        if flow is None:
            if not self._accept_late_tokens:
                logging.debug('Ignoring a token that arrived after sign-out.')
                return
            logging.debug('Accepting a token from an earlier request.')
        else:
            self._settle(flow)

        try:
            expires_in = int(response.get('expires_in') or provider.DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = provider.DEFAULT_EXPIRES_IN
        self.session.save_token(token, now_ms() + expires_in * 1000)

        if self._client is not None and self._flow is None:
            self._set_state(AuthState.Ready)
        self._resolve_waiters(token)
        self.tokenReceived.emit(token)

    def _on_token_error(self, err: Dict[str, Any]) -> None:
        """Error channel of the token client."""
        flow = self._current_flow(err)
        if flow is None:
            logging.debug(f'Ignoring a provider error for a request that is no longer pending: {err}')
            return
        self._fail(flow, err)

    def _on_timeout(self, flow: Flow) -> None:
        if flow.settled or flow is not self._flow:
            return
        flow.timer = None
        logging.debug(f'Silent flow timed out after {self._silent_timeout}s.')
        self._fail(flow, {'type': 'timeout', 'message': 'Silent authorization timed out.'})

    def _fail(self, flow: Flow, err: Dict[str, Any]) -> None:
        self._settle(flow)
        message = provider.format_auth_error(err)
        benign = provider.is_benign_auth_error(err)

        if flow.kind == FlowKind.Silent:
            logging.debug(f'Silent flow failed: {message}')
            self._set_state(AuthState.FailedSilent)
            self._set_state(AuthState.Ready)
            self._reject_waiters(status.SilentAuthError(message))
            self.silentFailed.emit()
            return

        self._set_state(AuthState.FailedInteractive)
        self._set_state(AuthState.Ready)
        self._reject_waiters(status.AuthenticationExceptionException(message))
        if benign:
            logging.debug(f'Interactive flow dismissed: {message}')
            self.dismissed.emit()
        else:
            logging.error(f'Interactive flow failed: {message}')
            self.errorOccurred.emit(message)
