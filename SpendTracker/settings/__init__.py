"""
Settings package: configuration API and schema validation.

This package provides:

- :mod:`SpendTracker.settings.lib` – Core settings management, application paths and schema validation.
"""
