"""
Logging subsystem for SpendTracker.

Modules:

- :mod:`SpendTracker.log.log` – Root logger setup, the in-memory tank handler and the Qt message bridge.
"""
