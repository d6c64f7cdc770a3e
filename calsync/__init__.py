"""
calsync - multi-account calendar synchronization engine.

Reconciles events from Google Calendar (REST) and CalDAV accounts into a
single locally addressable event set.
"""

__version__ = "0.1.0"
