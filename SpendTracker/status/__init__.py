"""
Status package: user-facing status codes and the exception hierarchy.

This package provides:

- :mod:`SpendTracker.status.status` – The :class:`Status` enum, its messages and the status exceptions raised by the core.
"""
