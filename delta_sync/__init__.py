"""Incremental synchronization of remote collections through delta queries."""

__version__ = "0.1.0"
