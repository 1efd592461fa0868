"""
SpendTracker data package: analytics over cached expense records.

This package provides:

- :mod:`SpendTracker.data.data` – Period and category filters and per-category totals built on pandas.
"""
