"""
SpendTracker: personal expense tracker that keeps its data in a Google Sheets spreadsheet.

This package provides:

- :mod:`SpendTracker.core` – Token lifecycle, session storage, the remote store client and the sync controller.
- :mod:`SpendTracker.data` – Period and category analytics (:func:`SpendTracker.data.data.filter_records`, :func:`SpendTracker.data.data.category_totals`).
- :mod:`SpendTracker.settings` – Settings management, including schema validation and application paths.
- :mod:`SpendTracker.status` – Status codes and the status exception hierarchy.
- :mod:`SpendTracker.log` – Root logger setup with an in-memory log tank.

Use :func:`SpendTracker.exec_` to restore the session and sync records without a GUI.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('SpendTracker requires Python 3.11 or higher.')

__version__ = '0.1.0'
__description__ = 'SpendTracker: personal expense tracker backed by Google Sheets.'

from .log import log

log.setup_logging()


async def run(interactive: bool = True) -> list:
    """Restore the session, signing in interactively if needed, and return the synced records.

    Args:
        interactive (bool): Start the browser sign-in when there is no usable session.

    Returns:
        list[Record]: The records after synchronization.
    """
    import asyncio
    import logging

    from .core.auth import AuthState, TokenLifecycleManager
    from .core.session import SessionStore
    from .core.sync import SessionStatus, SyncController

    session = SessionStore()
    auth = TokenLifecycleManager(session)
    controller = SyncController(auth, session)

    settled = asyncio.get_running_loop().create_future()
    attempts = []

    def on_status(value: str) -> None:
        if settled.done():
            return
        if value == SessionStatus.Ready:
            settled.set_result(value)
        elif value == SessionStatus.Unauthenticated:
            if interactive and not attempts and auth.state != AuthState.Uninitialized:
                attempts.append(value)
                controller.sign_in()
            else:
                settled.set_result(value)

    def on_sign_in_failed(*args) -> None:
        if not settled.done():
            settled.set_result(SessionStatus.Unauthenticated.value)

    controller.statusChanged.connect(on_status)
    controller.notification.connect(lambda msg, level: logging.info(f'[{level}] {msg}'))
    auth.errorOccurred.connect(on_sign_in_failed)
    auth.dismissed.connect(on_sign_in_failed)

    controller.start()
    await settled
    await controller.join()
    auth.dispose()
    return controller.records


def exec_() -> None:
    """Sync the records once and print them."""
    import asyncio

    from PySide6 import QtCore

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)
    records = asyncio.run(run())
    for record in records:
        print(f'{record.date}\t{record.category}\t{record.amount:.2f}\t{record.comment}')
    app.quit()


if __name__ == '__main__':
    exec_()
