"""Reconciliation of the pgBackRest backup subsystem of PostgresClusters."""

__version__ = "1.2.0"
