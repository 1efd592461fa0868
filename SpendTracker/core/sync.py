"""Session restoration and optimistic synchronization with the remote store.

:class:`SyncController` owns the local record cache. Mutations are applied to the cache
and persisted first, then confirmed against the spreadsheet. A failed remote write is
reported but never rolled back locally. The spreadsheet wins whenever a reconciliation
load succeeds.
"""
import asyncio
import enum
import logging
from typing import Any, Coroutine, List, Optional, Set

from PySide6 import QtCore

from . import service
from .auth import AuthState, TokenLifecycleManager
from .records import Record, RecordDraft, create_record
from .session import SessionStore
from ..status import status


class SessionStatus(enum.StrEnum):
    """Authentication and session status shown to the presentation layer."""
    Unknown = 'unknown'
    Restoring = 'restoring'
    Ready = 'ready'
    Unauthenticated = 'unauthenticated'


class NotificationLevel(enum.StrEnum):
    Success = 'success'
    Error = 'error'
    Info = 'info'


LOADING_MESSAGE = 'Loading your expenses...'
SIGN_IN_CANCELLED_MESSAGE = 'Sign-in was cancelled.'
RECORD_SAVED_MESSAGE = 'Expense saved.'
RECORD_REMOVED_MESSAGE = 'Expense removed.'
STORE_CREATED_MESSAGE = 'A new spreadsheet was created in your Google Drive.'


def _user_message(ex: Exception) -> str:
    if isinstance(ex, status.BaseStatusException):
        return ex.status_message
    return status.get_message(status.Status.NotAuthenticated)


class SyncController(QtCore.QObject):
    """Orchestrates startup, reconciliation and record mutations.

    Signals:
        statusChanged (str): Emitted with the new :class:`SessionStatus` value.
        recordsChanged (list): Emitted with the current list of records.
        loading (str): Emitted with a message while records are being fetched for the first time.
        signInEnabled (bool): Whether the presentation layer should offer sign-in.
        profileChanged (object): Emitted with the user profile dict, or None after sign-out.
        notification (str, str): Emitted with a message and a :class:`NotificationLevel` value.
    """
    statusChanged = QtCore.Signal(str)
    recordsChanged = QtCore.Signal(object)
    loading = QtCore.Signal(str)
    signInEnabled = QtCore.Signal(bool)
    profileChanged = QtCore.Signal(object)
    notification = QtCore.Signal(str, str)

    def __init__(
            self,
            auth: TokenLifecycleManager,
            session: SessionStore,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)
        self.auth = auth
        self.session = session

        self._status: SessionStatus = SessionStatus.Unknown
        self._records: List[Record] = []
        self._profile_loaded: bool = False
        self._tasks: Set[asyncio.Task] = set()
        # Bumped on sign-out; loads started for an older session are dropped
        self._generation: int = 0

        self._connect_signals()

    def _connect_signals(self) -> None:
        self.auth.tokenReceived.connect(self.on_token_received)
        self.auth.silentFailed.connect(self.on_silent_failed)
        self.auth.errorOccurred.connect(self.on_auth_error)
        self.auth.dismissed.connect(self.on_auth_dismissed)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def records(self) -> List[Record]:
        return list(self._records)

    def _set_status(self, value: SessionStatus) -> None:
        if value == self._status:
            return
        logging.debug(f'Session status: {self._status.value} -> {value.value}')
        self._status = value
        self.statusChanged.emit(value.value)

    def _notify(self, message: str, level: NotificationLevel) -> None:
        if level == NotificationLevel.Error:
            logging.error(message)
        self.notification.emit(message, level.value)

    def _set_records(self, records: List[Record]) -> None:
        self._records = list(records)
        self.session.save_records(self._records)
        self.recordsChanged.emit(self.records)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logging.error(f'Background task failed: {ex}', exc_info=ex)

    async def join(self) -> None:
        """Wait for all background tasks, including ones started while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def start(self) -> None:
        """Restore the session. Must be called from a running event loop."""
        if not self.auth.init():
            self._set_status(SessionStatus.Unauthenticated)
            self.signInEnabled.emit(False)
            return

        snapshot = self.session.get_stored_session()
        if not snapshot.store_id:
            self._set_status(SessionStatus.Unauthenticated)
            self.signInEnabled.emit(True)
            return

        self._set_status(SessionStatus.Restoring)
        self.signInEnabled.emit(False)

        self._records = list(snapshot.records)
        if self._records:
            self.recordsChanged.emit(self.records)
        else:
            self.loading.emit(LOADING_MESSAGE)

        # A locally unexpired token may already be revoked
        self.auth.silent_refresh()

    def sign_in(self) -> None:
        """Start an interactive sign-in."""
        self.signInEnabled.emit(False)
        self.auth.sign_in()

    @QtCore.Slot(str)
    def on_token_received(self, token: str) -> None:
        self._spawn(self._on_authorized(token, self._generation))

    @QtCore.Slot()
    def on_silent_failed(self) -> None:
        self.session.clear_token()
        self._set_status(SessionStatus.Unauthenticated)
        self.signInEnabled.emit(True)

    @QtCore.Slot(str)
    def on_auth_error(self, message: str) -> None:
        self._notify(message, NotificationLevel.Error)
        if self._status != SessionStatus.Ready:
            self.signInEnabled.emit(self.auth.state != AuthState.Uninitialized)

    @QtCore.Slot()
    def on_auth_dismissed(self) -> None:
        self._notify(SIGN_IN_CANCELLED_MESSAGE, NotificationLevel.Info)
        if self._status != SessionStatus.Ready:
            self.signInEnabled.emit(True)

    def _is_stale(self, generation: int) -> bool:
        if generation == self._generation:
            return False
        logging.debug('Dropping the result of a load started before sign-out.')
        return True

    async def _load_profile(self, token: str, generation: int) -> None:
        if self._profile_loaded:
            return
        self._profile_loaded = True

        profile = await service.fetch_profile(token)
        if self._is_stale(generation):
            return
        if not profile:
            logging.debug('Profile could not be loaded.')
            return
        email = profile.get('email')
        if email:
            self.session.save_login_hint(email)
        self.profileChanged.emit(profile)

    async def _on_authorized(self, token: str, generation: int) -> None:
        await self._load_profile(token, generation)
        if self._is_stale(generation):
            return

        if not self.session.get_store_id():
            await self._initial_load(token, generation)
            return
        await self._reconcile(token, generation)

    async def _initial_load(self, token: str, generation: int) -> None:
        self.loading.emit(LOADING_MESSAGE)
        try:
            resolution = await service.resolve_store(token, self.session)
            if self._is_stale(generation):
                return
            records = await service.load_records(token, resolution.store_id)
        except status.BaseStatusException as ex:
            if self._is_stale(generation):
                return
            self._notify(_user_message(ex), NotificationLevel.Error)
            self._set_status(SessionStatus.Unauthenticated)
            self.signInEnabled.emit(True)
            return
        if self._is_stale(generation):
            return

        self._set_records(records)
        self._set_status(SessionStatus.Ready)
        if resolution.is_new:
            self._notify(STORE_CREATED_MESSAGE, NotificationLevel.Info)

    async def _reconcile(self, token: str, generation: int) -> None:
        store_id = self.session.get_store_id()
        try:
            records = await service.load_records(token, store_id)
        except status.BaseStatusException as ex:
            if self._is_stale(generation):
                return
            self._on_reconcile_failed(ex)
            return
        if self._is_stale(generation):
            return

        self._set_records(records)
        self._set_status(SessionStatus.Ready)

    def _on_reconcile_failed(self, ex: 'status.BaseStatusException') -> None:
        if isinstance(ex, status.NotAuthorizedException):
            logging.debug(f'Reconciliation was refused, renewing the token: {ex}')
            self.session.clear_token()
            self.auth.silent_refresh()
            return
        self._notify(_user_message(ex), NotificationLevel.Error)
        self._set_status(SessionStatus.Ready)

    async def add_record(self, draft: RecordDraft) -> Optional[Record]:
        """Validate a draft, cache it and append it to the spreadsheet.

        Returns:
            The new record, or None if the draft was invalid.
        """
        try:
            record = create_record(draft)
        except status.ValidationException as ex:
            self._notify(ex.status_message, NotificationLevel.Error)
            return None

        self._set_records(self._records + [record])

        store_id = self.session.get_store_id()
        if not store_id:
            self._notify(status.get_message(status.Status.NotAuthenticated), NotificationLevel.Error)
            return record

        try:
            token = await self.auth.wait_for_token()
            await service.append_record(token, store_id, record)
        except (status.BaseStatusException, status.SilentAuthError) as ex:
            self._notify(_user_message(ex), NotificationLevel.Error)
            return record

        self._notify(RECORD_SAVED_MESSAGE, NotificationLevel.Success)
        return record

    def remove_record(self, record_id: str) -> Optional[asyncio.Task]:
        """Remove a record from the cache at once and delete it remotely in the background.

        Returns:
            The background delete task, or None if no spreadsheet is known.
        """
        remaining = [r for r in self._records if r.id != record_id]
        if len(remaining) != len(self._records):
            self._set_records(remaining)

        store_id = self.session.get_store_id()
        if not store_id:
            return None
        return self._spawn(self._delete_remote(store_id, record_id))

    async def _delete_remote(self, store_id: str, record_id: str) -> None:
        try:
            token = await self.auth.wait_for_token()
            await service.delete_record(token, store_id, record_id, self.session)
        except (status.BaseStatusException, status.SilentAuthError) as ex:
            self._notify(_user_message(ex), NotificationLevel.Error)
            return
        self._notify(RECORD_REMOVED_MESSAGE, NotificationLevel.Success)

    async def sign_out(self) -> None:
        """Sign out and wipe every stored trace of the session."""
        self._generation += 1
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        await self.auth.sign_out()
        self.session.clear_all()

        self._records = []
        self._profile_loaded = False
        self.recordsChanged.emit([])
        self.profileChanged.emit(None)
        self._set_status(SessionStatus.Unauthenticated)
        self.signInEnabled.emit(True)
