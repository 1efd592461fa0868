"""
Core package for SpendTracker providing authorization and synchronization.

This package includes:

- :mod:`SpendTracker.core.records` – Expense records and their spreadsheet row representation.
- :mod:`SpendTracker.core.session` – Token, store identity and record cache storage.
- :mod:`SpendTracker.core.provider` – Google identity provider adapter with a callback-based token client.
- :mod:`SpendTracker.core.auth` – Access token lifecycle: silent and interactive flows, waiters and sign-out.
- :mod:`SpendTracker.core.service` – Google Sheets and Drive operations against the remote store.
- :mod:`SpendTracker.core.sync` – Session restoration and optimistic record synchronization.
"""
